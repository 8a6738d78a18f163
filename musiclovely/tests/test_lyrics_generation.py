"""
Lyrics generation trigger tests - bounded retries, per-attempt failures, alerting.
"""
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.config import get_settings
from src.services.lyrics_generation import trigger_lyrics_generation

ORDER_ID = "6f1c2b3a-1d2e-4f5a-8b9c-0d1e2f3a4b5c"


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = "body"
    resp.json.return_value = payload if payload is not None else {"success": True}
    return resp


def _client(*responses):
    client = AsyncMock()
    client.post = AsyncMock(side_effect=list(responses))
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


@pytest.fixture
def lyrics_url(monkeypatch):
    monkeypatch.setenv("LYRICS_GENERATION_URL", "https://functions.example.com/generate-lyrics")
    get_settings.cache_clear()


class TestTriggerLyricsGeneration:
    async def test_no_url_configured(self):
        assert await trigger_lyrics_generation(ORDER_ID) is False

    async def test_first_attempt_succeeds(self, lyrics_url):
        client = _client(_response())
        with patch("httpx.AsyncClient", return_value=client):
            assert await trigger_lyrics_generation(ORDER_ID) is True

        client.post.assert_awaited_once()
        kwargs = client.post.call_args.kwargs
        assert kwargs["json"] == {"order_id": ORDER_ID}
        assert kwargs["headers"]["Authorization"] == "Bearer internal_test_key"

    async def test_retries_after_http_error_then_succeeds(self, lyrics_url):
        client = _client(_response(503), httpx.ConnectError("refused"), _response())
        with patch("httpx.AsyncClient", return_value=client):
            assert await trigger_lyrics_generation(ORDER_ID) is True
        assert client.post.await_count == 3

    async def test_success_false_in_body_counts_as_failure(self, lyrics_url):
        client = _client(_response(200, {"success": False}), _response())
        with patch("httpx.AsyncClient", return_value=client):
            assert await trigger_lyrics_generation(ORDER_ID) is True
        assert client.post.await_count == 2

    async def test_exhausted_attempts_alert(self, lyrics_url):
        client = _client(_response(500), _response(500), _response(500))
        with (
            patch("httpx.AsyncClient", return_value=client),
            patch("src.services.lyrics_generation.send_alert", new_callable=AsyncMock) as mock_alert,
        ):
            assert await trigger_lyrics_generation(ORDER_ID) is False

        assert client.post.await_count == 3
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args.kwargs["severity"] == "warning"

    async def test_linear_backoff(self, lyrics_url, monkeypatch):
        monkeypatch.setenv("LYRICS_GENERATION_BACKOFF_SECONDS", "1.5")
        get_settings.cache_clear()
        client = _client(_response(500), _response(500), _response(500))
        with (
            patch("httpx.AsyncClient", return_value=client),
            patch("src.services.lyrics_generation.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
            patch("src.services.lyrics_generation.send_alert", new_callable=AsyncMock),
        ):
            await trigger_lyrics_generation(ORDER_ID)

        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.5, 3.0]

    async def test_non_json_success_response(self, lyrics_url):
        resp = _response()
        resp.json.side_effect = ValueError("not json")
        client = _client(resp)
        with patch("httpx.AsyncClient", return_value=client):
            assert await trigger_lyrics_generation(ORDER_ID) is True


class TestDeadline:
    async def test_expired_deadline_makes_no_attempt(self, lyrics_url):
        client = _client(_response())
        with (
            patch("httpx.AsyncClient", return_value=client),
            patch("src.services.lyrics_generation.send_alert", new_callable=AsyncMock) as mock_alert,
        ):
            assert await trigger_lyrics_generation(ORDER_ID, deadline=time.monotonic() - 1) is False

        client.post.assert_not_awaited()
        mock_alert.assert_awaited_once()

    async def test_attempt_timeout_capped_by_deadline(self, lyrics_url):
        client = _client(_response())
        with patch("httpx.AsyncClient", return_value=client):
            assert await trigger_lyrics_generation(ORDER_ID, deadline=time.monotonic() + 2) is True

        assert client.post.call_args.kwargs["timeout"] <= 2

    async def test_no_backoff_sleep_past_deadline(self, lyrics_url, monkeypatch):
        monkeypatch.setenv("LYRICS_GENERATION_BACKOFF_SECONDS", "5")
        get_settings.cache_clear()
        client = _client(_response(500), _response(500), _response(500))
        with (
            patch("httpx.AsyncClient", return_value=client),
            patch("src.services.lyrics_generation.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
            patch("src.services.lyrics_generation.send_alert", new_callable=AsyncMock) as mock_alert,
        ):
            assert await trigger_lyrics_generation(ORDER_ID, deadline=time.monotonic() + 3) is False

        assert client.post.await_count == 1
        mock_sleep.assert_not_awaited()
        assert "1 attempt" in mock_alert.call_args.args[1]
