"""
Cakto webhook audit trail - one append-only row per inbound delivery.
Enables debugging and manual replay, and is the evidence the notification
step reads to spot near-simultaneous duplicate deliveries.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from src.database import Base


class CaktoWebhookLog(Base):
    __tablename__ = "cakto_webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    correlation_id = Column(String(64), nullable=True, index=True)
    payload_hash = Column(String(64), nullable=False, index=True)
    webhook_body = Column(JSONB, nullable=False)

    # Derived identifiers
    event_type = Column(String(100), nullable=True)
    status_received = Column(String(30), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    order_id_from_webhook = Column(String(64), nullable=True)
    customer_email = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=True)

    # Outcome
    matched_order_id = Column(UUID(as_uuid=True), nullable=True)
    order_found = Column(Boolean, nullable=False, default=False)
    strategy_used = Column(String(40), nullable=False, default="none")
    outcome = Column(String(30), nullable=False)
    processing_success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_cakto_webhook_logs_order_success", "matched_order_id", "processing_success", "created_at"),
    )
