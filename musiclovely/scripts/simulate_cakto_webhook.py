"""
Send a synthetic Cakto payment webhook to a local server (smoke testing).

Usage:
    python scripts/simulate_cakto_webhook.py --order-id <uuid>
    python scripts/simulate_cakto_webhook.py --email buyer@example.com --amount 47.90
    python scripts/simulate_cakto_webhook.py --order-id <uuid> --event purchase_refused
    python scripts/simulate_cakto_webhook.py --order-id <uuid> --repeat 3
"""
import argparse
import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_payload(args) -> dict:
    """Cakto purchase payload in the current (nested data) shape."""
    data = {
        "id": args.transaction_id or f"tx_{uuid.uuid4().hex[:12]}",
        "status": "paid",
        "amount": args.amount,
        "paidAt": datetime.now(timezone.utc).isoformat(),
        "customer": {"email": args.email, "phone": args.phone},
    }
    if args.order_id:
        data["checkoutUrl"] = f"https://pay.cakto.com.br/checkout/abc?order_id={args.order_id}"
    return {"event": args.event, "data": data}


async def send_webhook(payload: dict, secret: str, base_url: str) -> httpx.Response:
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{base_url}/api/cakto/webhook",
            json=payload,
            headers={"x-cakto-signature": secret},
        )
        logger.info("Cakto webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate a Cakto payment webhook")
    parser.add_argument("--order-id", default="")
    parser.add_argument("--transaction-id", default="")
    parser.add_argument("--email", default="comprador@example.com")
    parser.add_argument("--phone", default="+55 11 98765-4321")
    parser.add_argument("--amount", default="47.90")
    parser.add_argument("--event", default="purchase_approved")
    parser.add_argument("--repeat", type=int, default=1, help="Concurrent duplicate deliveries")
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--secret", default=os.environ.get("CAKTO_WEBHOOK_SECRET", ""))
    args = parser.parse_args()

    if not args.secret:
        parser.error("--secret or CAKTO_WEBHOOK_SECRET is required")

    payload = build_payload(args)
    logger.info("Sending %d x %s for order=%s", args.repeat, args.event, args.order_id or "-")
    await asyncio.gather(*(send_webhook(payload, args.secret, args.base_url) for _ in range(args.repeat)))


if __name__ == "__main__":
    asyncio.run(main())
