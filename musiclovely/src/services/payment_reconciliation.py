"""
Cakto payment reconciliation - turns one authenticated webhook body into at
most one pending -> paid transition plus its follow-up side effects.

Pipeline: normalize -> match order -> identity cross-check (email matches only)
-> ignore non-approved events -> conditional paid update -> audit row -> commit.
Then, under a separate budget: confirmation email + lyrics trigger.

The two phases are split (apply_cakto_event / complete_payment_side_effects)
so the request timeout never covers the side effects: once the paid
transition is committed, a slow email or lyrics call cannot turn the delivery
into a failure.

Delivery is at-least-once and unordered. Correctness comes from:
- the idempotent short-circuit when the order is already paid,
- a single conditional UPDATE ... WHERE status = 'pending' RETURNING,
- append-only audit rows and the email claim for the side effects.
No in-process locks or shared state.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.order import Order, OrderStatus
from src.schemas.cakto_events import MatchResult, MatchStrategy, PaymentEvent
from src.services.cakto_events import ReconciliationError, normalize_cakto_payload
from src.services.lyrics_generation import trigger_lyrics_generation
from src.services.order_matching import match_order, check_identity
from src.services.payment_notifications import NotificationStatus, send_payment_confirmation_once
from src.services.webhook_audit import record_webhook_log
from src.utils.alerting import send_alert, AlertType

logger = logging.getLogger(__name__)


class WebhookOutcome:
    """Terminal outcomes of one webhook delivery."""
    PROCESSED = "processed"
    IGNORED = "ignored"
    BAD_SIGNATURE = "bad_signature"
    INVALID_BODY = "invalid_body"
    MISSING_IDENTIFIERS = "missing_identifiers"
    ORDER_NOT_FOUND = "order_not_found"
    IDENTITY_MISMATCH = "identity_mismatch"
    INTERNAL_ERROR = "internal_error"


class OrderNotFoundError(ReconciliationError):
    """No strategy matched. Expected for test or malformed traffic - not an incident."""
    http_status = 404
    outcome = WebhookOutcome.ORDER_NOT_FOUND


class OrderTransitionError(Exception):
    """
    The conditional paid update affected no row and the order is not paid.
    Breaks the idempotence invariant - surfaced as 500 and alerted.
    """

    def __init__(
        self,
        message: str,
        event: Optional[PaymentEvent] = None,
        order_id: Optional[uuid.UUID] = None,
        strategy: MatchStrategy = MatchStrategy.NONE,
    ):
        super().__init__(message)
        self.event = event
        self.order_id = order_id
        self.strategy = strategy


class ReconciliationResult(BaseModel):
    outcome: str
    http_status: int
    message: str
    order_id: Optional[str] = None
    strategy: MatchStrategy = MatchStrategy.NONE
    event_status: Optional[str] = None
    already_paid: bool = False
    notification_status: Optional[str] = None
    lyrics_generated: bool = False
    webhook_log_id: Optional[uuid.UUID] = None

    @property
    def success(self) -> bool:
        return self.http_status < 400


async def mark_order_paid(db: AsyncSession, order: Order, event: PaymentEvent) -> bool:
    """
    Transition a matched order to paid.

    Returns True when this call performed the transition, False when the order
    was already paid (before the call, or by a concurrent delivery that won
    the conditional update). Raises OrderTransitionError otherwise.
    """
    if order.status == OrderStatus.PAID:
        logger.info("Order already paid - idempotent short-circuit", extra={"order_id": str(order.id)})
        return False

    now = datetime.now(timezone.utc)
    values = {
        "status": OrderStatus.PAID,
        "provider_payment_status": event.normalized_status,
        "paid_at": event.paid_at or now,
        "updated_at": now,
    }
    if event.transaction_id:
        values["provider_transaction_id"] = event.transaction_id

    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
        .values(**values)
        .returning(Order.id, Order.status, Order.paid_at)
    )
    row = result.first()

    if row is None:
        current = await db.execute(select(Order.status).where(Order.id == order.id))
        current_status = current.scalar_one_or_none()
        if current_status == OrderStatus.PAID:
            logger.warning(
                "Order paid by a concurrent delivery - treating as idempotent",
                extra={"order_id": str(order.id)},
            )
            return False
        raise OrderTransitionError(
            f"Paid update affected no rows (current status={current_status})",
            event=event, order_id=order.id,
        )

    if row.status != OrderStatus.PAID:
        raise OrderTransitionError(
            f"Order not marked paid (status={row.status})", event=event, order_id=order.id,
        )

    logger.info("Order marked as paid", extra={"order_id": str(row.id)})
    return True


async def run_payment_side_effects(
    db: AsyncSession,
    order_id: uuid.UUID,
    own_webhook_log_id: Optional[uuid.UUID],
) -> tuple[str, bool]:
    """
    Confirmation email + lyrics trigger, after the paid transition is committed.

    Each is independent and neither failure escapes: returns
    (notification_status, lyrics_generated). Both share
    PAYMENT_SIDE_EFFECTS_TIMEOUT_SECONDS. The email step is bounded by its own
    SendGrid timeout and is never cancelled mid-claim, so its email_logs row
    always leaves 'pending'. The lyrics trigger gets whatever budget is left.
    """
    settings = get_settings()
    budget = settings.payment_side_effects_timeout_seconds
    deadline = time.monotonic() + budget
    log_extra = {"order_id": str(order_id)}

    try:
        notification_status = await send_payment_confirmation_once(db, order_id, own_webhook_log_id)
    except Exception as e:
        logger.error("Confirmation email step failed: %s", str(e), exc_info=True, extra=log_extra)
        await db.rollback()
        notification_status = NotificationStatus.ERROR

    remaining = deadline - time.monotonic()
    lyrics_generated = False
    if remaining <= 0:
        logger.warning("No side-effect budget left for the lyrics trigger", extra=log_extra)
        await send_alert(
            AlertType.LYRICS_TRIGGER_EXHAUSTED,
            f"Lyrics generation skipped for order {str(order_id)[:8]}: {budget}s side-effect budget spent",
            severity="warning",
            extra=log_extra,
        )
        return notification_status, lyrics_generated

    try:
        lyrics_generated = await asyncio.wait_for(
            trigger_lyrics_generation(str(order_id), deadline=deadline),
            timeout=remaining,
        )
    except asyncio.TimeoutError:
        logger.warning("Lyrics trigger exceeded the side-effect budget (%ss)", budget, extra=log_extra)
        await send_alert(
            AlertType.LYRICS_TRIGGER_EXHAUSTED,
            f"Lyrics generation timed out for order {str(order_id)[:8]} after {budget}s",
            severity="warning",
            extra=log_extra,
        )
    except Exception as e:
        logger.error("Lyrics trigger step failed: %s", str(e), exc_info=True, extra=log_extra)

    return notification_status, lyrics_generated


async def apply_cakto_event(
    db: AsyncSession,
    body: dict,
    payload_hash: str,
    started_at: float,
) -> ReconciliationResult:
    """
    Normalize, match, cross-check and commit the paid transition for one
    authenticated Cakto webhook body. Side effects are not run here.

    Expected rejections come back as a ReconciliationResult with a 4xx status;
    OrderTransitionError and unexpected exceptions propagate to the caller.
    A processed result carries webhook_log_id for complete_payment_side_effects().
    """
    settings = get_settings()
    event: Optional[PaymentEvent] = None
    match = MatchResult()

    try:
        event = normalize_cakto_payload(body, settings.cakto_empty_status_means_approved)
        match = await match_order(db, event)
        if not match.found:
            raise OrderNotFoundError("No order matches the webhook data", event=event)
        if not match.strategy.is_reliable:
            check_identity(match.order, event)
    except ReconciliationError as e:
        event = e.event or event
        matched_id = match.order.id if match.found else None
        await record_webhook_log(
            db, body=body, payload_hash=payload_hash, outcome=e.outcome, started_at=started_at,
            event=event, order_id=matched_id, strategy=match.strategy, error_message=str(e),
        )
        await db.commit()
        logger.warning(
            "Cakto webhook rejected: %s (%s)", e.outcome, str(e),
            extra={"outcome": e.outcome, "strategy": match.strategy.value},
        )
        return ReconciliationResult(
            outcome=e.outcome,
            http_status=e.http_status,
            message=str(e),
            order_id=str(matched_id) if matched_id else None,
            strategy=match.strategy,
            event_status=event.normalized_status if event else None,
        )

    order = match.order
    order_id = order.id
    strategy = match.strategy

    if not event.is_approved:
        await record_webhook_log(
            db, body=body, payload_hash=payload_hash, outcome=WebhookOutcome.IGNORED,
            started_at=started_at, event=event, order_id=order_id, strategy=strategy,
        )
        await db.commit()
        logger.info(
            "Cakto event %r is %s - received, not processed", event.event_type, event.normalized_status,
            extra={"order_id": str(order_id), "outcome": WebhookOutcome.IGNORED},
        )
        return ReconciliationResult(
            outcome=WebhookOutcome.IGNORED,
            http_status=200,
            message="Webhook received but not processed",
            order_id=str(order_id),
            strategy=strategy,
            event_status=event.normalized_status,
        )

    try:
        transitioned = await mark_order_paid(db, order, event)
    except OrderTransitionError as e:
        e.strategy = strategy
        raise

    own_log = await record_webhook_log(
        db, body=body, payload_hash=payload_hash, outcome=WebhookOutcome.PROCESSED,
        started_at=started_at, event=event, order_id=order_id, strategy=strategy, success=True,
    )
    own_log_id = own_log.id
    await db.commit()

    return ReconciliationResult(
        outcome=WebhookOutcome.PROCESSED,
        http_status=200,
        message="Order marked as paid" if transitioned else "Already processed",
        order_id=str(order_id),
        strategy=strategy,
        event_status=event.normalized_status,
        already_paid=not transitioned,
        webhook_log_id=own_log_id,
    )


async def complete_payment_side_effects(db: AsyncSession, result: ReconciliationResult) -> ReconciliationResult:
    """Run the post-commit side effects for a processed result. Never raises."""
    if result.outcome != WebhookOutcome.PROCESSED or not result.order_id:
        return result
    notification_status, lyrics_generated = await run_payment_side_effects(
        db, uuid.UUID(result.order_id), result.webhook_log_id,
    )
    return result.model_copy(
        update={"notification_status": notification_status, "lyrics_generated": lyrics_generated},
    )


async def reconcile_cakto_event(
    db: AsyncSession,
    body: dict,
    payload_hash: str,
    started_at: float,
) -> ReconciliationResult:
    """Process one authenticated Cakto webhook body end to end, side effects included."""
    result = await apply_cakto_event(db, body, payload_hash, started_at)
    return await complete_payment_side_effects(db, result)
