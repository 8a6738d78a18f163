"""
Email log - customer-facing notifications per order.
The (order_id, email_type) unique constraint is the de-duplication point:
whoever inserts the pending row owns the send.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class EmailStatus:
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


# Statuses meaning the email is sent or in flight
HANDLED_EMAIL_STATUSES = (EmailStatus.SENT, EmailStatus.DELIVERED, EmailStatus.PENDING)

EMAIL_TYPE_ORDER_PAID = "order_paid"


class EmailLog(Base):
    __tablename__ = "email_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True
    )
    email_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EmailStatus.PENDING
    )  # pending, sent, delivered, failed
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("order_id", "email_type", name="uq_email_logs_order_type"),
    )

    def __repr__(self) -> str:
        return f"<EmailLog {self.email_type} order={self.order_id} status={self.status}>"
