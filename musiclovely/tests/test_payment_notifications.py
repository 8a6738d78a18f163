"""
Payment confirmation email tests - the email claim and the de-duplication
layers in front of it. SendGrid is always mocked.
"""
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import select

from src.models.cakto_webhook_log import CaktoWebhookLog
from src.models.email_log import EmailLog, EmailStatus, EMAIL_TYPE_ORDER_PAID
from src.models.order import OrderStatus
from src.schemas.cakto_events import MatchStrategy
from src.services.payment_notifications import (
    NotificationStatus,
    claim_email_send,
    find_handled_email,
    send_payment_confirmation_once,
)
from src.services.webhook_audit import record_webhook_log


async def _success_log(db, order_id, created_at=None) -> CaktoWebhookLog:
    log = await record_webhook_log(
        db, body={"event": "purchase_approved"}, payload_hash="h", outcome="processed",
        started_at=time.monotonic(), order_id=order_id,
        strategy=MatchStrategy.ORDER_ID_HINT, success=True,
    )
    if created_at:
        log.created_at = created_at
    await db.commit()
    return log


async def _email_log(db, order_id, status) -> EmailLog:
    log = EmailLog(
        order_id=order_id, email_type=EMAIL_TYPE_ORDER_PAID,
        status=status, recipient_email="buyer@example.com",
    )
    db.add(log)
    await db.commit()
    return log


class TestClaimEmailSend:
    async def test_first_claim_wins(self, db, make_order):
        order = await make_order(status=OrderStatus.PAID)
        log_id = await claim_email_send(db, order.id, "buyer@example.com")
        assert log_id is not None
        existing = await find_handled_email(db, order.id)
        assert existing.status == EmailStatus.PENDING

    async def test_second_claim_loses(self, db, make_order):
        order = await make_order(status=OrderStatus.PAID)
        order_id = order.id
        assert await claim_email_send(db, order_id, "buyer@example.com") is not None
        assert await claim_email_send(db, order_id, "buyer@example.com") is None

        result = await db.execute(select(EmailLog).where(EmailLog.order_id == order_id))
        assert len(result.scalars().all()) == 1

    async def test_failed_row_is_reclaimed(self, db, make_order):
        order = await make_order(status=OrderStatus.PAID)
        order_id = order.id
        failed = await _email_log(db, order_id, EmailStatus.FAILED)
        failed_id = failed.id

        log_id = await claim_email_send(db, order_id, "buyer@example.com")
        assert log_id == failed_id

        result = await db.execute(
            select(EmailLog.status, EmailLog.attempts).where(EmailLog.id == failed_id)
        )
        status, attempts = result.one()
        assert status == EmailStatus.PENDING
        assert attempts == 2

    async def test_sent_row_is_not_reclaimed(self, db, make_order):
        order = await make_order(status=OrderStatus.PAID)
        order_id = order.id
        await _email_log(db, order_id, EmailStatus.SENT)
        assert await claim_email_send(db, order_id, "buyer@example.com") is None


class TestSendPaymentConfirmationOnce:
    async def test_sends_and_records(self, db, make_order, mock_confirmation_email):
        order = await make_order(status=OrderStatus.PAID)
        status = await send_payment_confirmation_once(db, order.id)

        assert status == NotificationStatus.SENT
        call = mock_confirmation_email.call_args.kwargs
        assert call["to_email"] == "buyer@example.com"
        assert call["about_who"] == "Maria"
        log = await find_handled_email(db, order.id)
        assert log.status == EmailStatus.SENT
        assert log.provider_message_id == "sg_msg_123"
        assert log.sent_at is not None

    async def test_skips_when_email_already_sent(self, db, make_order, mock_confirmation_email):
        order = await make_order(status=OrderStatus.PAID)
        await _email_log(db, order.id, EmailStatus.SENT)
        status = await send_payment_confirmation_once(db, order.id)
        assert status == NotificationStatus.SKIPPED_ALREADY_HANDLED
        mock_confirmation_email.assert_not_awaited()

    async def test_skips_when_send_in_flight(self, db, make_order, mock_confirmation_email):
        order = await make_order(status=OrderStatus.PAID)
        await _email_log(db, order.id, EmailStatus.PENDING)
        status = await send_payment_confirmation_once(db, order.id)
        assert status == NotificationStatus.SKIPPED_ALREADY_HANDLED

    async def test_later_of_two_recent_deliveries_skips(self, db, make_order, mock_confirmation_email):
        order = await make_order(status=OrderStatus.PAID)
        now = datetime.now(timezone.utc)
        await _success_log(db, order.id, created_at=now - timedelta(seconds=1))
        ours = await _success_log(db, order.id, created_at=now)

        status = await send_payment_confirmation_once(db, order.id, ours.id)
        assert status == NotificationStatus.SKIPPED_CONCURRENT_DELIVERY
        mock_confirmation_email.assert_not_awaited()

    async def test_earliest_of_two_recent_deliveries_sends(self, db, make_order, mock_confirmation_email):
        """The heuristic never makes both deliveries skip."""
        order = await make_order(status=OrderStatus.PAID)
        now = datetime.now(timezone.utc)
        ours = await _success_log(db, order.id, created_at=now - timedelta(seconds=1))
        await _success_log(db, order.id, created_at=now)

        status = await send_payment_confirmation_once(db, order.id, ours.id)
        assert status == NotificationStatus.SENT

    async def test_claim_lost_during_race(self, db, make_order, mock_confirmation_email):
        """Another delivery inserts the claim between our checks and our insert."""
        order = await make_order(status=OrderStatus.PAID)
        order_id = order.id
        with patch(
            "src.services.payment_notifications.claim_email_send",
            new_callable=AsyncMock,
            return_value=None,
        ):
            status = await send_payment_confirmation_once(db, order_id)
        assert status == NotificationStatus.SKIPPED_CLAIM_LOST
        mock_confirmation_email.assert_not_awaited()

    async def test_failed_dispatch_marks_row_and_alerts(self, db, make_order, mock_confirmation_email):
        order = await make_order(status=OrderStatus.PAID)
        mock_confirmation_email.return_value = {"message_id": None, "status": "error", "error": "SendGrid 503"}
        with patch("src.services.payment_notifications.send_alert", new_callable=AsyncMock) as mock_alert:
            status = await send_payment_confirmation_once(db, order.id)

        assert status == NotificationStatus.FAILED
        mock_alert.assert_awaited_once()
        result = await db.execute(select(EmailLog).where(EmailLog.order_id == order.id))
        log = result.scalar_one()
        assert log.status == EmailStatus.FAILED
        assert log.error_message == "SendGrid 503"

    async def test_no_recipient(self, db, make_order, mock_confirmation_email):
        order = await make_order(status=OrderStatus.PAID, customer_email="  ")
        status = await send_payment_confirmation_once(db, order.id)
        assert status == NotificationStatus.SKIPPED_NO_RECIPIENT
        mock_confirmation_email.assert_not_awaited()

    async def test_recheck_delay_comes_from_settings(self, db, make_order, mock_confirmation_email):
        settings = MagicMock(duplicate_webhook_window_seconds=30, notification_recheck_delay_ms=250)
        order = await make_order(status=OrderStatus.PAID)
        with (
            patch("src.services.payment_notifications.get_settings", return_value=settings),
            patch("src.services.payment_notifications.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            status = await send_payment_confirmation_once(db, order.id)

        assert status == NotificationStatus.SENT
        mock_sleep.assert_awaited_once_with(0.25)
