"""
API request/response schemas for the webhook, checkout and health endpoints.
"""
import uuid
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class CaktoWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    order_id: Optional[str] = None
    strategy_used: Optional[str] = None
    already_paid: Optional[bool] = None
    lyrics_generated: Optional[bool] = None
    notification_status: Optional[str] = None


class QuizPayload(BaseModel):
    about_who: str = Field(min_length=1, max_length=255)
    style: str = Field(min_length=1, max_length=100)
    answers: dict = Field(default_factory=dict)

    @field_validator("about_who", "style")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class CheckoutCreateRequest(BaseModel):
    session_id: uuid.UUID
    quiz: QuizPayload
    customer_email: str = Field(min_length=3, max_length=255)
    customer_whatsapp: str = Field(min_length=8, max_length=30)
    plan: str = "standard"
    amount_cents: int = Field(gt=0)
    provider: str = "cakto"
    source: Optional[str] = None
    # Cakto transaction id when the storefront already has one; lets the webhook match on it
    transaction_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("customer_email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email")
        return v

    @field_validator("transaction_id")
    @classmethod
    def _blank_transaction_id_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("plan")
    @classmethod
    def _known_plan(cls, v: str) -> str:
        if v not in ("standard", "express"):
            raise ValueError("plan must be standard or express")
        return v

    @field_validator("provider")
    @classmethod
    def _cakto_only(cls, v: str) -> str:
        if v != "cakto":
            raise ValueError("provider must be cakto")
        return v


class CheckoutCreateResponse(BaseModel):
    success: bool = True
    quiz_id: str
    order_id: str
    created: bool


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]
    timestamp: str
