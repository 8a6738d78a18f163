"""
Replay a stored Cakto delivery from the audit trail.

Re-submits the raw webhook body of a cakto_webhook_logs row to the webhook
endpoint, authenticated with the internal service key. Use after fixing the
cause of an order_not_found / internal_error delivery.

Usage:
    python scripts/replay_cakto_webhook.py <webhook_log_id>
    python scripts/replay_cakto_webhook.py --list-failed
    python scripts/replay_cakto_webhook.py <webhook_log_id> --base-url https://api.musiclovely.com
"""
import argparse
import asyncio
import logging
import uuid

import httpx
from sqlalchemy import select

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def list_failed(limit: int) -> None:
    from src.database import async_session_factory
    from src.models.cakto_webhook_log import CaktoWebhookLog

    async with async_session_factory() as db:
        result = await db.execute(
            select(CaktoWebhookLog)
            .where(CaktoWebhookLog.processing_success.is_(False))
            .order_by(CaktoWebhookLog.created_at.desc())
            .limit(limit)
        )
        for log in result.scalars():
            logger.info(
                "%s  %s  outcome=%s tx=%s email=%s error=%s",
                log.id, log.created_at.isoformat(), log.outcome,
                log.transaction_id or "-", log.customer_email or "-", (log.error_message or "")[:80],
            )


async def replay(webhook_log_id: uuid.UUID, base_url: str) -> None:
    from src.config import get_settings
    from src.database import async_session_factory
    from src.models.cakto_webhook_log import CaktoWebhookLog

    settings = get_settings()
    if not settings.internal_service_key:
        raise SystemExit("INTERNAL_SERVICE_KEY is not set")

    async with async_session_factory() as db:
        log = await db.get(CaktoWebhookLog, webhook_log_id)
        if not log:
            raise SystemExit(f"No cakto_webhook_logs row {webhook_log_id}")
        body = log.webhook_body

    if not body:
        raise SystemExit("Stored delivery has an empty body - nothing to replay")

    async with httpx.AsyncClient(timeout=60) as client:
        resp = await client.post(
            f"{base_url}/api/cakto/webhook",
            json=body,
            headers={
                "Authorization": f"Bearer {settings.internal_service_key}",
                "X-Correlation-ID": f"replay-{webhook_log_id.hex[:16]}",
            },
        )
    logger.info("Replay response: %s %s", resp.status_code, resp.text)


async def main():
    parser = argparse.ArgumentParser(description="Replay a stored Cakto webhook delivery")
    parser.add_argument("webhook_log_id", nargs="?", type=uuid.UUID)
    parser.add_argument("--list-failed", action="store_true")
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    if args.list_failed:
        await list_failed(args.limit)
    elif args.webhook_log_id:
        await replay(args.webhook_log_id, args.base_url)
    else:
        parser.error("webhook_log_id or --list-failed is required")


if __name__ == "__main__":
    asyncio.run(main())
