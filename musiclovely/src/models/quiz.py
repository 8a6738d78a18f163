"""
Quiz model - the personalization answers captured before checkout.
session_id is the client-supplied idempotency key for checkout creation.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class Quiz(Base):
    __tablename__ = "quizzes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), unique=True, nullable=False
    )

    about_who: Mapped[str] = mapped_column(String(255), nullable=False)
    style: Mapped[str] = mapped_column(String(100), nullable=False)
    answers: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Request provenance
    source: Mapped[str] = mapped_column(String(30), default="backend_api")
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    orders: Mapped[list["Order"]] = relationship(back_populates="quiz")

    def __repr__(self) -> str:
        return f"<Quiz {self.id} session={self.session_id}>"
