"""
Cakto payment webhook endpoint.

Layers (in order):
1. Authentication (shared secret or internal service key)
2. Reconciliation up to the paid commit, under a hard timeout
3. Side effects (confirmation email, lyrics) under their own budget - they
   never change the response status once the order is paid
4. Audit trail (cakto_webhook_logs) - one row per delivery, whatever the outcome

Cakto retries any non-2xx, so 4xx responses are reserved for deliveries that
can never succeed and 500 for faults worth retrying.
"""
import asyncio
import json
import logging
import time
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db, async_session_factory
from src.schemas.api_responses import CaktoWebhookResponse
from src.schemas.cakto_events import MatchStrategy
from src.services.payment_reconciliation import (
    OrderTransitionError,
    ReconciliationResult,
    WebhookOutcome,
    apply_cakto_event,
    complete_payment_side_effects,
)
from src.services.webhook_audit import record_webhook_log
from src.utils.alerting import send_alert, AlertType
from src.utils.webhook_signatures import SignatureVerdict, verify_cakto_request, compute_payload_hash

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cakto", tags=["cakto"])


def _respond(status_code: int, payload: CaktoWebhookResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


def _parse_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _result_response(result: ReconciliationResult) -> JSONResponse:
    if not result.success:
        return _respond(result.http_status, CaktoWebhookResponse(success=False, error=result.message))
    return _respond(
        result.http_status,
        CaktoWebhookResponse(
            success=True,
            message=result.message,
            order_id=result.order_id,
            strategy_used=result.strategy.value,
            already_paid=result.already_paid,
            lyrics_generated=result.lyrics_generated,
            notification_status=result.notification_status,
        ),
    )


async def _reject_delivery(
    db: AsyncSession,
    verdict: SignatureVerdict,
    body: Any,
    payload_hash: str,
    started_at: float,
    client_ip: str,
) -> JSONResponse:
    """Audit and answer a delivery the verifier refused."""
    is_validation = verdict.error_kind == "validation"
    outcome = WebhookOutcome.INVALID_BODY if is_validation else WebhookOutcome.BAD_SIGNATURE
    status_code = 400 if is_validation else 401

    logger.warning(
        "Cakto webhook rejected: %s ip=%s", verdict.reason, client_ip,
        extra={"outcome": outcome, "error_code": verdict.error_kind},
    )
    await record_webhook_log(
        db, body=body if isinstance(body, dict) else {}, payload_hash=payload_hash,
        outcome=outcome, started_at=started_at, error_message=verdict.reason,
    )
    await db.commit()

    if not get_settings().cakto_webhook_secret:
        await send_alert(
            AlertType.WEBHOOK_SECRET_MISSING,
            "CAKTO_WEBHOOK_SECRET is not configured - every Cakto webhook is being rejected",
            severity="critical",
        )
    elif not is_validation:
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Cakto webhook with invalid signature from {client_ip}",
            severity="warning",
        )

    error = "Invalid request body" if is_validation else "Unauthorized"
    return _respond(status_code, CaktoWebhookResponse(success=False, error=error))


async def _record_fault(
    body: dict,
    payload_hash: str,
    started_at: float,
    error_message: str,
    exc: Optional[Exception] = None,
) -> None:
    """Write the internal_error audit row in a fresh session - the request session is unusable."""
    try:
        async with async_session_factory() as audit_db:
            await record_webhook_log(
                audit_db, body=body, payload_hash=payload_hash,
                outcome=WebhookOutcome.INTERNAL_ERROR, started_at=started_at,
                event=getattr(exc, "event", None),
                order_id=getattr(exc, "order_id", None),
                strategy=getattr(exc, "strategy", MatchStrategy.NONE),
                error_message=error_message[:2000],
            )
            await audit_db.commit()
    except Exception as e:
        logger.error("Failed to write Cakto fault audit row: %s", str(e), exc_info=True)


@router.post("/webhook")
async def cakto_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Cakto payment notification - marks the matching order paid."""
    started_at = time.monotonic()
    settings = get_settings()
    client_ip = request.client.host if request.client else "unknown"

    raw = await request.body()
    payload_hash = compute_payload_hash(raw)
    body = _parse_body(raw)

    verdict = verify_cakto_request(
        settings.cakto_webhook_secret,
        settings.internal_service_key,
        request.headers,
        body,
    )
    if not verdict.accepted:
        return await _reject_delivery(db, verdict, body, payload_hash, started_at, client_ip)

    if verdict.internal_call:
        logger.info("Cakto webhook submitted by internal caller")

    try:
        result = await asyncio.wait_for(
            apply_cakto_event(db, body, payload_hash, started_at),
            timeout=settings.webhook_processing_timeout_seconds,
        )
    except OrderTransitionError as e:
        logger.critical(
            "Cakto order transition conflict: %s", str(e),
            exc_info=True,
            extra={"order_id": str(e.order_id) if e.order_id else None, "outcome": WebhookOutcome.INTERNAL_ERROR},
        )
        await db.rollback()
        await _record_fault(body, payload_hash, started_at, str(e), e)
        await send_alert(
            AlertType.ORDER_TRANSITION_CONFLICT,
            f"Order {str(e.order_id)[:8]} could not be marked paid: {e}",
            severity="critical",
            extra={"order_id": str(e.order_id)},
        )
        return _respond(500, CaktoWebhookResponse(success=False, error="Internal processing error"))
    except Exception as e:
        if isinstance(e, asyncio.TimeoutError):
            error_message = f"Processing exceeded {settings.webhook_processing_timeout_seconds}s"
        else:
            error_message = str(e) or type(e).__name__
        logger.error(
            "Cakto webhook processing error: %s", error_message,
            exc_info=True, extra={"outcome": WebhookOutcome.INTERNAL_ERROR},
        )
        await db.rollback()
        await _record_fault(body, payload_hash, started_at, error_message, e)
        await send_alert(
            AlertType.WEBHOOK_PROCESSING_FAILED,
            f"Cakto webhook processing failed: {error_message[:200]}",
        )
        return _respond(500, CaktoWebhookResponse(success=False, error="Internal processing error"))

    # The transition is committed: from here on the answer is the pipeline's, whatever happens
    try:
        result = await complete_payment_side_effects(db, result)
    except Exception as e:
        logger.error(
            "Payment side effects failed after commit: %s", str(e),
            exc_info=True, extra={"order_id": result.order_id},
        )
    return _result_response(result)
