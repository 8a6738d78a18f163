"""
Canonical Cakto payment event and order match result.
Every Cakto webhook body is normalized into a PaymentEvent before any lookup.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field

from src.utils.phone import digits_only


class NormalizedStatus:
    """Normalized payment status constants."""
    APPROVED = "approved"
    REFUSED = "refused"
    REFUNDED = "refunded"
    UNCLASSIFIED = "unclassified"


class MatchStrategy(str, Enum):
    """
    How an event was tied to an order, in cascade order.
    Reliable strategies may mutate the order without an identity cross-check.
    """
    ORDER_ID_HINT = "order_id_hint"
    PROVIDER_TRANSACTION_ID = "provider_transaction_id"
    EMAIL_MOST_RECENT_PENDING = "email_most_recent_pending"
    PHONE_MOST_RECENT_PENDING = "phone_most_recent_pending"
    NONE = "none"

    @property
    def is_reliable(self) -> bool:
        return self in _RELIABLE_STRATEGIES


_RELIABLE_STRATEGIES = frozenset({
    MatchStrategy.ORDER_ID_HINT,
    MatchStrategy.PROVIDER_TRANSACTION_ID,
    MatchStrategy.PHONE_MOST_RECENT_PENDING,
})


class PaymentEvent(BaseModel):
    """Canonical form of one Cakto notification."""
    event_type: str = Field(default="", description="Raw vendor event/status string")
    transaction_id: Optional[str] = None
    order_id_hint: Optional[str] = None
    customer_email: str = Field(default="", description="Lowercased, trimmed; '' if absent")
    customer_phone: Optional[str] = Field(default=None, description="As sent by the vendor")
    amount_cents: int = 0
    paid_at: Optional[datetime] = None
    normalized_status: str = NormalizedStatus.UNCLASSIFIED

    @property
    def customer_phone_digits(self) -> str:
        return digits_only(self.customer_phone)

    @property
    def has_identifiers(self) -> bool:
        """At least one of order id hint, transaction id or email is present."""
        return bool(self.order_id_hint or self.transaction_id or self.customer_email)

    @property
    def is_approved(self) -> bool:
        return self.normalized_status == NormalizedStatus.APPROVED


class MatchResult(BaseModel):
    """The order an event refers to (if any) and the strategy that found it."""
    order: Optional[Any] = None
    strategy: MatchStrategy = MatchStrategy.NONE

    @property
    def found(self) -> bool:
        return self.order is not None
