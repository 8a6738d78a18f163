"""
Cakto webhook audit writer.

Every delivery - processed, ignored, rejected or faulted - gets exactly one
append-only cakto_webhook_logs row with the raw body, the derived
identifiers and the outcome, so any delivery can be replayed by hand.
The rows are also read back by the confirmation email step to spot
near-simultaneous duplicate deliveries for the same order.
"""
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.cakto_webhook_log import CaktoWebhookLog
from src.schemas.cakto_events import MatchStrategy, PaymentEvent
from src.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


def elapsed_ms(started_at: float) -> int:
    """Milliseconds since a time.monotonic() reading."""
    return int((time.monotonic() - started_at) * 1000)


# Top-level body keys never persisted (Cakto may echo the shared secret in the body)
_REDACTED_KEYS = frozenset({"secret"})


def _redacted(body) -> dict:
    if not isinstance(body, dict):
        return {}
    return {k: ("[redacted]" if k in _REDACTED_KEYS else v) for k, v in body.items()}


def _derived_fields(event: PaymentEvent) -> dict:
    return {
        "event_type": event.event_type[:100] or None,
        "status_received": event.normalized_status,
        "transaction_id": event.transaction_id,
        "order_id_from_webhook": (event.order_id_hint or "")[:64] or None,
        "customer_email": event.customer_email or None,
        "amount_cents": event.amount_cents,
    }


async def record_webhook_log(
    db: AsyncSession,
    *,
    body: dict,
    payload_hash: str,
    outcome: str,
    started_at: float,
    event: Optional[PaymentEvent] = None,
    order_id: Optional[uuid.UUID] = None,
    strategy: MatchStrategy = MatchStrategy.NONE,
    success: bool = False,
    error_message: Optional[str] = None,
) -> CaktoWebhookLog:
    """Append the audit row for one delivery. Caller owns the commit."""
    derived = _derived_fields(event) if event else {}
    log = CaktoWebhookLog(
        correlation_id=get_correlation_id(),
        payload_hash=payload_hash,
        webhook_body=_redacted(body),
        **derived,
        matched_order_id=order_id,
        order_found=order_id is not None,
        strategy_used=strategy.value,
        outcome=outcome,
        processing_success=success,
        error_message=error_message,
        processing_time_ms=elapsed_ms(started_at),
    )
    db.add(log)
    await db.flush()
    logger.info(
        "Cakto webhook logged: outcome=%s strategy=%s success=%s",
        outcome, strategy.value, success,
        extra={"order_id": str(order_id) if order_id else None, "outcome": outcome},
    )
    return log


async def recent_successful_deliveries(
    db: AsyncSession,
    order_id: uuid.UUID,
    window_seconds: int,
    limit: int = 10,
) -> list[CaktoWebhookLog]:
    """Successfully processed deliveries for an order inside the window, oldest first."""
    since = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)
    result = await db.execute(
        select(CaktoWebhookLog).where(
            CaktoWebhookLog.matched_order_id == order_id,
            CaktoWebhookLog.processing_success.is_(True),
            CaktoWebhookLog.created_at >= since,
        ).order_by(CaktoWebhookLog.created_at.asc(), CaktoWebhookLog.id.asc()).limit(limit)
    )
    return list(result.scalars().all())
