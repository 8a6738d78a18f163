"""
Lyrics generation trigger - kicks off the asynchronous "generate lyrics for
approval" function once an order is paid.

The function is idempotent per order on its side, so re-triggering on a
duplicate delivery is harmless. Attempts are bounded with linear backoff
(attempt x base delay) and each attempt carries its own HTTP timeout. When the
caller passes a deadline, no attempt or backoff sleep runs past it. Never raises.
"""
import asyncio
import logging
import time
from typing import Optional

import httpx

from src.config import get_settings
from src.utils.alerting import send_alert, AlertType

logger = logging.getLogger(__name__)


async def _trigger_once(
    client: httpx.AsyncClient, url: str, order_id: str, token: str, timeout: float,
) -> bool:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    response = await client.post(url, json={"order_id": order_id}, headers=headers, timeout=timeout)
    if response.status_code >= 400:
        logger.warning(
            "Lyrics generation returned HTTP %d: %s",
            response.status_code, response.text[:200],
            extra={"order_id": order_id},
        )
        return False
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    return not (isinstance(payload, dict) and payload.get("success") is False)


def _remaining(deadline: Optional[float]) -> float:
    if deadline is None:
        return float("inf")
    return deadline - time.monotonic()


async def trigger_lyrics_generation(order_id: str, deadline: Optional[float] = None) -> bool:
    """
    Returns True once the function accepted the order, False after exhausting
    attempts or the deadline (a time.monotonic() value).
    """
    settings = get_settings()
    url = settings.lyrics_generation_url
    if not url:
        logger.warning("LYRICS_GENERATION_URL not set - lyrics not triggered", extra={"order_id": order_id})
        return False

    max_attempts = max(settings.lyrics_generation_max_attempts, 1)
    attempts_made = 0
    async with httpx.AsyncClient(timeout=settings.lyrics_generation_timeout_seconds) as client:
        for attempt in range(1, max_attempts + 1):
            remaining = _remaining(deadline)
            if remaining <= 0:
                break
            attempts_made = attempt
            try:
                attempt_timeout = min(settings.lyrics_generation_timeout_seconds, remaining)
                if await _trigger_once(client, url, order_id, settings.internal_service_key, attempt_timeout):
                    logger.info("Lyrics generation triggered (attempt %d)", attempt, extra={"order_id": order_id})
                    return True
            except httpx.HTTPError as e:
                logger.warning(
                    "Lyrics generation attempt %d/%d failed: %s",
                    attempt, max_attempts, str(e) or type(e).__name__,
                    extra={"order_id": order_id},
                )
            if attempt < max_attempts:
                backoff = settings.lyrics_generation_backoff_seconds * attempt
                if backoff >= _remaining(deadline):
                    break
                await asyncio.sleep(backoff)

    await send_alert(
        AlertType.LYRICS_TRIGGER_EXHAUSTED,
        f"Lyrics generation not triggered for order {order_id[:8]} after {attempts_made} attempt(s)",
        severity="warning",
        extra={"order_id": order_id},
    )
    return False
