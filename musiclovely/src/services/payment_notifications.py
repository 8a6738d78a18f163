"""
Payment confirmation email - exactly one "order_paid" email per order.

Cakto retries aggressively and often delivers the same approval two or three
times within a second, so every paid delivery reaches this step. Layers, in order:

1. Recent-delivery heuristic: if other successfully processed deliveries for
   the order landed in the last 30s and ours is not the earliest, the earliest
   one owns the email - skip.
2. email_logs check: a sent/delivered/pending row already exists - skip.
3. Short fixed delay, then check email_logs again. This only narrows the race
   window between two near-simultaneous deliveries; it guarantees nothing.
4. Claim: insert the pending email_logs row. The (order_id, email_type) unique
   constraint makes the insert the real de-duplication point - losing the
   insert means another delivery owns the send. A previously failed row is
   taken over with a conditional update instead.

Only the claim owner dispatches. Failures are returned as a status string and
never raised: the order is already paid and must stay paid.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.email_log import (
    EmailLog,
    EmailStatus,
    EMAIL_TYPE_ORDER_PAID,
    HANDLED_EMAIL_STATUSES,
)
from src.models.order import Order
from src.models.quiz import Quiz
from src.services.transactional_email import send_payment_confirmation
from src.services.webhook_audit import recent_successful_deliveries
from src.utils.alerting import send_alert, AlertType
from src.utils.logging import mask_email

logger = logging.getLogger(__name__)


class NotificationStatus:
    """Outcome of the confirmation email step, echoed in the webhook response."""
    SENT = "sent"
    FAILED = "failed"
    SKIPPED_CONCURRENT_DELIVERY = "skipped_concurrent_delivery"
    SKIPPED_ALREADY_HANDLED = "skipped_already_handled"
    SKIPPED_CLAIM_LOST = "skipped_claim_lost"
    SKIPPED_NO_RECIPIENT = "skipped_no_recipient"
    ERROR = "error"


async def find_handled_email(
    db: AsyncSession,
    order_id: uuid.UUID,
    email_type: str = EMAIL_TYPE_ORDER_PAID,
) -> Optional[EmailLog]:
    """Existing sent/delivered/pending email log row for the order, if any."""
    result = await db.execute(
        select(EmailLog).where(
            EmailLog.order_id == order_id,
            EmailLog.email_type == email_type,
            EmailLog.status.in_(HANDLED_EMAIL_STATUSES),
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def claim_email_send(
    db: AsyncSession,
    order_id: uuid.UUID,
    recipient: str,
    email_type: str = EMAIL_TYPE_ORDER_PAID,
) -> Optional[uuid.UUID]:
    """
    Atomically take ownership of sending an email. Returns the email log id
    when this caller owns the send, None when someone else already does.

    Commits (or rolls back) the session: the claim must be visible to
    concurrent deliveries before the dispatch starts.
    """
    log = EmailLog(
        order_id=order_id,
        email_type=email_type,
        status=EmailStatus.PENDING,
        recipient_email=recipient,
    )
    db.add(log)
    try:
        await db.commit()
        return log.id
    except IntegrityError:
        await db.rollback()

    # Row exists. Only a failed previous attempt may be taken over.
    result = await db.execute(
        update(EmailLog)
        .where(
            EmailLog.order_id == order_id,
            EmailLog.email_type == email_type,
            EmailLog.status == EmailStatus.FAILED,
        )
        .values(
            status=EmailStatus.PENDING,
            recipient_email=recipient,
            error_message=None,
            attempts=EmailLog.attempts + 1,
        )
        .returning(EmailLog.id)
    )
    row = result.first()
    await db.commit()
    return row[0] if row else None


async def _mark_email_result(db: AsyncSession, email_log_id: uuid.UUID, result: dict) -> None:
    values = {"provider_message_id": result.get("message_id") or None}
    if result.get("status") == "sent":
        values["status"] = EmailStatus.SENT
        values["sent_at"] = datetime.now(timezone.utc)
    else:
        values["status"] = EmailStatus.FAILED
        values["error_message"] = (result.get("error") or "unknown error")[:1000]
    await db.execute(update(EmailLog).where(EmailLog.id == email_log_id).values(**values))
    await db.commit()


async def _verify_email_logged(db: AsyncSession, email_log_id: uuid.UUID, order_id: uuid.UUID) -> None:
    """Audit confidence only - a missing/unsent row is a warning, not an error."""
    result = await db.execute(select(EmailLog.status).where(EmailLog.id == email_log_id))
    status = result.scalar_one_or_none()
    if status != EmailStatus.SENT:
        logger.warning(
            "Confirmation email not recorded as sent after dispatch (status=%s)", status,
            extra={"order_id": str(order_id)},
        )


async def send_payment_confirmation_once(
    db: AsyncSession,
    order_id: uuid.UUID,
    own_webhook_log_id: Optional[uuid.UUID] = None,
) -> str:
    """Send the order_paid email unless another delivery already owns it. Returns a NotificationStatus."""
    settings = get_settings()
    log_extra = {"order_id": str(order_id)}

    recent = await recent_successful_deliveries(db, order_id, settings.duplicate_webhook_window_seconds)
    if len(recent) >= 2:
        earliest_is_ours = own_webhook_log_id is not None and recent[0].id == own_webhook_log_id
        if not earliest_is_ours:
            logger.info(
                "Skipping confirmation email: %d deliveries processed in the last %ds, earliest owns the send",
                len(recent), settings.duplicate_webhook_window_seconds, extra=log_extra,
            )
            return NotificationStatus.SKIPPED_CONCURRENT_DELIVERY

    existing = await find_handled_email(db, order_id)
    if existing:
        logger.info("Confirmation email already %s, skipping", existing.status, extra=log_extra)
        return NotificationStatus.SKIPPED_ALREADY_HANDLED

    if settings.notification_recheck_delay_ms > 0:
        await asyncio.sleep(settings.notification_recheck_delay_ms / 1000)
        existing = await find_handled_email(db, order_id)
        if existing:
            logger.info("Confirmation email appeared during recheck delay, skipping", extra=log_extra)
            return NotificationStatus.SKIPPED_ALREADY_HANDLED

    # Snapshot plain values: a lost claim rolls the session back and expires ORM state
    order = await db.get(Order, order_id)
    recipient = (order.customer_email or "").strip() if order else ""
    if not recipient:
        logger.warning("Paid order has no customer email, confirmation not sent", extra=log_extra)
        return NotificationStatus.SKIPPED_NO_RECIPIENT
    amount_cents = order.amount_cents
    plan = order.plan
    about_who = None
    if order.quiz_id:
        quiz = await db.get(Quiz, order.quiz_id)
        about_who = quiz.about_who if quiz else None

    email_log_id = await claim_email_send(db, order_id, recipient)
    if email_log_id is None:
        logger.info("Confirmation email claimed by a concurrent delivery, skipping", extra=log_extra)
        return NotificationStatus.SKIPPED_CLAIM_LOST

    logger.info("Sending confirmation email to %s", mask_email(recipient), extra=log_extra)
    result = await send_payment_confirmation(
        to_email=recipient,
        order_id=str(order_id),
        amount_cents=amount_cents,
        plan=plan,
        about_who=about_who,
    )
    await _mark_email_result(db, email_log_id, result)

    if result.get("status") != "sent":
        await send_alert(
            AlertType.CONFIRMATION_EMAIL_FAILED,
            f"Payment confirmation email failed for order {str(order_id)[:8]}: {result.get('error')}",
            extra=log_extra,
        )
        return NotificationStatus.FAILED

    await _verify_email_logged(db, email_log_id, order_id)
    return NotificationStatus.SENT
