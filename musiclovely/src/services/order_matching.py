"""
Order matching - find the one Cakto order a PaymentEvent refers to.

Strategies run in a fixed order, every query scoped to provider = cakto.
A miss falls through to the next strategy; the first hit wins:
1. order_id_hint (UUID from checkout URL / metadata) - by primary key
2. transaction id (>= 6 chars) - by provider_transaction_id
3. email - most recent pending order for that email
4. phone - most recent pending order whose WhatsApp number matches

Email is the only unreliable strategy: two customers can share an inbox
guess but not identity, so an email match must pass check_identity()
before the order may be mutated.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.order import Order, OrderStatus, PROVIDER_CAKTO
from src.schemas.cakto_events import MatchResult, MatchStrategy, PaymentEvent
from src.services.cakto_events import ReconciliationError
from src.utils.logging import mask_email
from src.utils.phone import phones_match

logger = logging.getLogger(__name__)

MIN_TRANSACTION_ID_LENGTH = 6

# Upper bound on pending orders scanned in-process for a phone match
PHONE_SCAN_LIMIT = 500


class IdentityMismatchError(ReconciliationError):
    """Email-matched order whose stored identity disagrees with the event."""
    http_status = 400
    outcome = "identity_mismatch"


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError):
        return None


async def _by_order_id(db: AsyncSession, order_id: uuid.UUID) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(Order.id == order_id, Order.provider == PROVIDER_CAKTO)
    )
    return result.scalar_one_or_none()


async def _by_transaction_id(db: AsyncSession, transaction_id: str) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(
            Order.provider_transaction_id == transaction_id,
            Order.provider == PROVIDER_CAKTO,
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def _most_recent_pending_by_email(db: AsyncSession, email: str) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(
            func.lower(Order.customer_email) == email,
            Order.provider == PROVIDER_CAKTO,
            Order.status == OrderStatus.PENDING,
        ).order_by(Order.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def _most_recent_pending_by_phone(db: AsyncSession, phone: str) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(
            Order.provider == PROVIDER_CAKTO,
            Order.status == OrderStatus.PENDING,
            Order.customer_whatsapp.is_not(None),
        ).order_by(Order.created_at.desc()).limit(PHONE_SCAN_LIMIT)
    )
    for order in result.scalars():
        if phones_match(order.customer_whatsapp, phone):
            return order
    return None


async def match_order(db: AsyncSession, event: PaymentEvent) -> MatchResult:
    """Run the strategy cascade. Returns MatchResult(order=None, strategy=NONE) on no match."""
    hint = _parse_uuid(event.order_id_hint)
    if hint:
        order = await _by_order_id(db, hint)
        if order:
            return MatchResult(order=order, strategy=MatchStrategy.ORDER_ID_HINT)
        logger.info("Order id hint %s has no cakto order, trying next strategy", str(hint)[:8])

    tx_id = event.transaction_id
    if tx_id and len(tx_id) >= MIN_TRANSACTION_ID_LENGTH:
        order = await _by_transaction_id(db, tx_id)
        if order:
            return MatchResult(order=order, strategy=MatchStrategy.PROVIDER_TRANSACTION_ID)

    if event.customer_email:
        order = await _most_recent_pending_by_email(db, event.customer_email)
        if order:
            return MatchResult(order=order, strategy=MatchStrategy.EMAIL_MOST_RECENT_PENDING)

    if event.customer_phone_digits:
        order = await _most_recent_pending_by_phone(db, event.customer_phone_digits)
        if order:
            return MatchResult(order=order, strategy=MatchStrategy.PHONE_MOST_RECENT_PENDING)

    logger.info(
        "No cakto order matched: hint=%s tx=%s email=%s",
        (event.order_id_hint or "")[:8], (tx_id or "")[:8], mask_email(event.customer_email),
    )
    return MatchResult()


def check_identity(order: Order, event: PaymentEvent) -> None:
    """
    Cross-check an unreliable match. Passes when the stored email equals the
    event email, or both phones are present and match. Raises IdentityMismatchError.
    """
    stored_email = (order.customer_email or "").strip().lower()
    if event.customer_email and stored_email == event.customer_email:
        return

    if order.customer_whatsapp and event.customer_phone_digits:
        if phones_match(order.customer_whatsapp, event.customer_phone_digits):
            return
        raise IdentityMismatchError("Email and phone do not match the order", event=event)

    raise IdentityMismatchError("Email does not match the order", event=event)
