"""
Alerting tests - cooldowns (Redis and in-memory fallback) and channel fan-out.
"""
from unittest.mock import AsyncMock, MagicMock, patch

from src.utils.alerting import AlertType, send_alert, _acquire_cooldown


class TestCooldown:
    async def test_redis_set_nx_acquires(self, mock_redis):
        assert await _acquire_cooldown(AlertType.WEBHOOK_PROCESSING_FAILED) is True
        args, kwargs = mock_redis.set.call_args
        assert args[0] == "musiclovely:alert_cooldown:webhook_processing_failed"
        assert kwargs["nx"] is True
        assert kwargs["ex"] == 300

    async def test_redis_key_exists_suppresses(self, mock_redis):
        mock_redis.set.return_value = None
        assert await _acquire_cooldown(AlertType.WEBHOOK_PROCESSING_FAILED) is False

    async def test_signature_alerts_have_longer_cooldown(self, mock_redis):
        await _acquire_cooldown(AlertType.WEBHOOK_SIGNATURE_INVALID)
        assert mock_redis.set.call_args.kwargs["ex"] == 3600

    async def test_in_memory_fallback_when_redis_down(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("redis down")
        assert await _acquire_cooldown(AlertType.ORDER_TRANSITION_CONFLICT) is True
        assert await _acquire_cooldown(AlertType.ORDER_TRANSITION_CONFLICT) is False


class TestSendAlert:
    async def test_suppressed_alert_sends_nothing(self, mock_redis):
        mock_redis.set.return_value = None
        with (
            patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as mock_hook,
            patch("src.utils.alerting._send_email_alert", new_callable=AsyncMock) as mock_email,
        ):
            await send_alert(AlertType.WEBHOOK_PROCESSING_FAILED, "boom")
        mock_hook.assert_not_awaited()
        mock_email.assert_not_awaited()

    async def test_warning_skips_email(self):
        with (
            patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as mock_hook,
            patch("src.utils.alerting._send_email_alert", new_callable=AsyncMock) as mock_email,
        ):
            await send_alert(AlertType.LYRICS_TRIGGER_EXHAUSTED, "lyrics down", severity="warning")
        mock_hook.assert_awaited_once()
        mock_email.assert_not_awaited()

    async def test_critical_fans_out(self):
        with (
            patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as mock_hook,
            patch("src.utils.alerting._send_email_alert", new_callable=AsyncMock) as mock_email,
        ):
            await send_alert(
                AlertType.ORDER_TRANSITION_CONFLICT, "stuck order",
                correlation_id="cid-1", severity="critical", extra={"order_id": "abc"},
            )
        mock_hook.assert_awaited_once()
        mock_email.assert_awaited_once()
        assert mock_email.call_args.args[2] == "cid-1"

    async def test_webhook_channel_posts_content(self, monkeypatch):
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.example.com/alerts")
        from src.config import get_settings
        get_settings.cache_clear()

        client = AsyncMock()
        client.post = AsyncMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with (
            patch("httpx.AsyncClient", return_value=client),
            patch("src.utils.alerting._send_email_alert", new_callable=AsyncMock),
        ):
            await send_alert(
                AlertType.WEBHOOK_PROCESSING_FAILED, "db timeout",
                correlation_id="corr-xyz", extra={"order_id": "ord-1"},
            )

        content = client.post.call_args.kwargs["json"]["content"]
        assert "webhook_processing_failed" in content
        assert "corr-xyz" in content
        assert "ord-1" in content

    async def test_email_channel_uses_transactional_email(self, monkeypatch):
        monkeypatch.setenv("ALERT_RECIPIENT_EMAIL", "ops@musiclovely.com")
        from src.config import get_settings
        get_settings.cache_clear()

        with (
            patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock),
            patch(
                "src.services.transactional_email.send_transactional",
                new_callable=AsyncMock,
                return_value={"status": "sent"},
            ) as mock_send,
        ):
            await send_alert(AlertType.CONFIRMATION_EMAIL_FAILED, "SendGrid down")

        mock_send.assert_awaited_once()
        assert mock_send.call_args.args[0] == "ops@musiclovely.com"

    async def test_channel_failure_never_raises(self, monkeypatch):
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.example.com/alerts")
        from src.config import get_settings
        get_settings.cache_clear()

        with patch("httpx.AsyncClient", side_effect=RuntimeError("network")):
            await send_alert(AlertType.WEBHOOK_PROCESSING_FAILED, "still fine", severity="warning")
