"""
Checkout order creation - one quiz + one pending Cakto order per checkout session.

session_id is the client's idempotency key: a double-clicked "pay" button or a
retried request gets the ids created the first time instead of a second order.
The unique constraint on quizzes.session_id settles concurrent duplicates.

When the storefront already knows the Cakto transaction id it is stored as
orders.provider_transaction_id, so the webhook can match on it directly.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.order import Order, OrderStatus, PROVIDER_CAKTO
from src.models.quiz import Quiz
from src.schemas.api_responses import CheckoutCreateRequest
from src.utils.logging import mask_email

logger = logging.getLogger(__name__)


class CheckoutConflictError(Exception):
    """The checkout collides with another session's order (duplicate transaction id)."""


async def find_existing_checkout(db: AsyncSession, session_id: uuid.UUID) -> Optional[dict]:
    """Ids already created for a checkout session, or None."""
    result = await db.execute(select(Quiz.id).where(Quiz.session_id == session_id))
    quiz_id = result.scalar_one_or_none()
    if quiz_id is None:
        return None
    result = await db.execute(
        select(Order.id).where(Order.quiz_id == quiz_id).order_by(Order.created_at.asc()).limit(1)
    )
    order_id = result.scalar_one_or_none()
    if order_id is None:
        return None
    return {"quiz_id": str(quiz_id), "order_id": str(order_id), "created": False}


async def create_order_atomic(
    db: AsyncSession,
    payload: CheckoutCreateRequest,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    """
    Create the quiz and its pending order in one transaction.
    Returns {"quiz_id", "order_id", "created"}.
    """
    existing = await find_existing_checkout(db, payload.session_id)
    if existing:
        logger.info("Checkout session already has an order, returning it", extra={"order_id": existing["order_id"]})
        return existing

    quiz = Quiz(
        session_id=payload.session_id,
        about_who=payload.quiz.about_who,
        style=payload.quiz.style,
        answers=payload.quiz.answers,
        customer_email=payload.customer_email,
        source=payload.source or "backend_api",
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
    )
    try:
        db.add(quiz)
        await db.flush()
        order = Order(
            quiz_id=quiz.id,
            status=OrderStatus.PENDING,
            plan=payload.plan,
            amount_cents=payload.amount_cents,
            provider=PROVIDER_CAKTO,
            customer_email=payload.customer_email,
            customer_whatsapp=payload.customer_whatsapp.strip(),
            provider_transaction_id=payload.transaction_id,
        )
        db.add(order)
        await db.flush()
        quiz_id, order_id = quiz.id, order.id
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find_existing_checkout(db, payload.session_id)
        if existing:
            logger.info("Concurrent checkout for the same session, returning existing order")
            return existing
        if payload.transaction_id:
            raise CheckoutConflictError("transaction_id already belongs to another order")
        raise

    logger.info(
        "Checkout created for %s (plan=%s amount=%d)",
        mask_email(payload.customer_email), payload.plan, payload.amount_cents,
        extra={"order_id": str(order_id), "provider": PROVIDER_CAKTO},
    )
    return {"quiz_id": str(quiz_id), "order_id": str(order_id), "created": True}
