"""
Order model - one purchase of a personalized song.
Lifecycle: pending → paid. refused/refunded are recorded by the vendor but
never produced by payment reconciliation; a paid order never regresses.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class OrderStatus:
    """Order status constants."""
    PENDING = "pending"
    PAID = "paid"
    REFUSED = "refused"
    REFUNDED = "refunded"


PROVIDER_CAKTO = "cakto"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    quiz_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("quizzes.id")
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING
    )  # pending, paid, refused, refunded
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Payment linkage
    provider: Mapped[str] = mapped_column(String(30), nullable=False, default=PROVIDER_CAKTO)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    provider_payment_status: Mapped[Optional[str]] = mapped_column(String(30))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Customer identity - matching only, never authorization
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_whatsapp: Mapped[Optional[str]] = mapped_column(String(30))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    quiz: Mapped[Optional["Quiz"]] = relationship(back_populates="orders")

    __table_args__ = (
        Index("ix_orders_provider_status_created", "provider", "status", "created_at"),
        Index("ix_orders_customer_email", "customer_email"),
    )

    def __repr__(self) -> str:
        return f"<Order {self.id} status={self.status}>"
