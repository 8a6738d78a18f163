"""
Operator alerts for payment reconciliation incidents.

Every alert is logged. It is also posted to ALERT_WEBHOOK_URL (Discord/Slack)
when set, and error/critical alerts are emailed to ALERT_RECIPIENT_EMAIL.

Cakto retries a broken delivery many times, so each alert type has a cooldown
(Redis SET NX EX, or a process-local dict while Redis is unreachable).
"""
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

# Scanners hit the webhook URL all day; one signature alert per hour is plenty
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 3600,
    "lyrics_trigger_exhausted": 900,
}

_local_cooldowns: dict[str, float] = {}  # alert_type -> monotonic expiry

_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
}
_EMAILED_SEVERITIES = ("critical", "error")
_WEBHOOK_ICONS = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}


class AlertType:
    ORDER_TRANSITION_CONFLICT = "order_transition_conflict"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    WEBHOOK_SECRET_MISSING = "webhook_secret_missing"
    CONFIRMATION_EMAIL_FAILED = "confirmation_email_failed"
    LYRICS_TRIGGER_EXHAUSTED = "lyrics_trigger_exhausted"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """Fan an alert out to the configured channels. Never raises."""
    if not await _acquire_cooldown(alert_type):
        return

    from src.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    suffix = f" (correlation_id={cid})" if cid else ""
    logger.log(
        _LOG_LEVELS.get(severity, logging.ERROR),
        "ALERT [%s]: %s%s", alert_type, message, suffix,
    )

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    if severity in _EMAILED_SEVERITIES:
        await _send_email_alert(alert_type, message, cid, extra)


async def _acquire_cooldown(alert_type: str) -> bool:
    """True when this alert type is not cooling down (and starts its cooldown)."""
    ttl = ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        return bool(
            await redis.set(f"musiclovely:alert_cooldown:{alert_type}", "1", nx=True, ex=ttl)
        )
    except Exception as e:
        logger.debug("Alert cooldown falling back to memory: %s", str(e))

    now = time.monotonic()
    if _local_cooldowns.get(alert_type, 0) > now:
        return False
    _local_cooldowns[alert_type] = now + ttl
    return True


def _detail_pairs(correlation_id: Optional[str], extra: Optional[dict]) -> list[tuple[str, object]]:
    pairs: list[tuple[str, object]] = []
    if correlation_id:
        pairs.append(("correlation_id", correlation_id))
    pairs.extend((extra or {}).items())
    return pairs


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    try:
        from src.config import get_settings
        url = get_settings().alert_webhook_url
        if not url:
            return

        lines = [f"{_WEBHOOK_ICONS.get(severity, '')} **{alert_type}**", message]
        lines.extend(f"`{key}: {value}`" for key, value in _detail_pairs(correlation_id, extra))

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(url, json={"content": "\n".join(lines)})
    except Exception as e:
        logger.warning("Alert webhook post failed: %s", str(e))


async def _send_email_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    try:
        from src.config import get_settings
        from src.services.transactional_email import send_transactional

        recipient = get_settings().alert_recipient_email
        if not recipient:
            return

        pairs = _detail_pairs(correlation_id, extra)
        details_html = "".join(f"<li><strong>{k}:</strong> {v}</li>" for k, v in pairs)
        html = (
            '<div style="font-family: -apple-system, sans-serif; max-width: 480px; padding: 20px;">'
            f'<h2 style="color: #ef4444; font-size: 18px;">{alert_type}</h2>'
            f'<p style="color: #555; font-size: 14px;">{message}</p>'
            f"<ul>{details_html}</ul>"
            "</div>"
        )
        text = "\n".join([alert_type, "", message, ""] + [f"{k}: {v}" for k, v in pairs])

        await send_transactional(recipient, f"MusicLovely Alert: {alert_type}", html, text)
    except Exception as e:
        logger.warning("Alert email failed: %s", str(e))
