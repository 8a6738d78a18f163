"""Initial schema - quizzes, orders, Cakto webhook audit and email logs.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Quizzes
    op.create_table(
        "quizzes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("about_who", sa.String(255), nullable=False),
        sa.Column("style", sa.String(100), nullable=False),
        sa.Column("answers", postgresql.JSONB, default={}),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("source", sa.String(30), default="backend_api"),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Orders
    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("quiz_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("quizzes.id")),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("plan", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("provider", sa.String(30), nullable=False, server_default="cakto"),
        sa.Column("provider_transaction_id", sa.String(255), unique=True),
        sa.Column("provider_payment_status", sa.String(30)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("customer_whatsapp", sa.String(30)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'refused', 'refunded')", name="ck_orders_status",
        ),
    )
    op.create_index("ix_orders_provider_status_created", "orders", ["provider", "status", "created_at"])
    op.create_index("ix_orders_customer_email", "orders", ["customer_email"])
    op.create_index("ix_orders_customer_email_lower", "orders", [sa.text("lower(customer_email)")])

    # Cakto webhook audit trail
    op.create_table(
        "cakto_webhook_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("webhook_body", postgresql.JSONB, nullable=False),
        sa.Column("event_type", sa.String(100)),
        sa.Column("status_received", sa.String(30)),
        sa.Column("transaction_id", sa.String(255)),
        sa.Column("order_id_from_webhook", sa.String(64)),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("amount_cents", sa.Integer),
        sa.Column("matched_order_id", postgresql.UUID(as_uuid=True)),
        sa.Column("order_found", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("strategy_used", sa.String(40), nullable=False, server_default="none"),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("processing_success", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text),
        sa.Column("processing_time_ms", sa.Integer),
    )
    op.create_index("ix_cakto_webhook_logs_correlation_id", "cakto_webhook_logs", ["correlation_id"])
    op.create_index("ix_cakto_webhook_logs_payload_hash", "cakto_webhook_logs", ["payload_hash"])
    op.create_index(
        "ix_cakto_webhook_logs_order_success",
        "cakto_webhook_logs",
        ["matched_order_id", "processing_success", "created_at"],
    )

    # Email logs
    op.create_table(
        "email_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("email_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("provider_message_id", sa.String(255)),
        sa.Column("error_message", sa.Text),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="1"),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("order_id", "email_type", name="uq_email_logs_order_type"),
    )
    op.create_index("ix_email_logs_order_id", "email_logs", ["order_id"])


def downgrade() -> None:
    op.drop_table("email_logs")
    op.drop_table("cakto_webhook_logs")
    op.drop_table("orders")
    op.drop_table("quizzes")
