"""Tests for alert sinks."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from ortenberg.alerts import Alert, CompositeAlertSink, LoggingAlertSink, create_alert_sink
from ortenberg.alerts.telegram import TelegramAlertSink
from ortenberg.alerts.webhook import WebhookAlertSink
from ortenberg.config import Settings


def make_alert(**details):
    return Alert(
        title="Multi-Sig Withdrawal Job Failed",
        details=details or {"job_id": 3, "database_id": 7, "attempts": 5, "error": "boom"},
    )


class TestWebhookAlertSink:
    """Tests for the webhook sink."""

    @pytest.mark.asyncio
    async def test_posts_json_payload(self):
        """Test the alert is POSTed with title, details and Slack text."""
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = WebhookAlertSink("https://hooks.example/alert", http_client=client)

        assert await sink.send_alert(make_alert())

        payload = received[0]
        assert payload["title"] == "Multi-Sig Withdrawal Job Failed"
        assert payload["details"]["database_id"] == 7
        assert payload["text"] == ":rotating_light: Multi-Sig Withdrawal Job Failed"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rejected_returns_false(self):
        """Test an error status is reported as not delivered."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        sink = WebhookAlertSink("https://hooks.example/alert", http_client=client)

        assert await sink.send_alert(make_alert()) is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self):
        """Test a connection failure does not raise."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = WebhookAlertSink("https://hooks.example/alert", http_client=client)

        assert await sink.send_alert(make_alert()) is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_client_open(self):
        """Test the sink only closes a client it created."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        sink = WebhookAlertSink("https://hooks.example/alert", http_client=client)

        await sink.close()

        assert not client.is_closed
        await client.aclose()


class TestTelegramAlertSink:
    """Tests for the Telegram sink."""

    def test_requires_bot_or_token(self):
        """Test construction without credentials fails."""
        with pytest.raises(ValueError):
            TelegramAlertSink([1])

    def test_format_escapes_html(self):
        """Test details are rendered as escaped code spans."""
        text = TelegramAlertSink.format_alert(
            Alert(title="Job <x> Failed", details={"error": "a < b & c"})
        )

        assert text.startswith("<b>Job &lt;x&gt; Failed</b>")
        assert "error: <code>a &lt; b &amp; c</code>" in text

    @pytest.mark.asyncio
    async def test_sends_to_every_chat(self):
        """Test each configured chat receives the alert."""
        bot = AsyncMock()
        sink = TelegramAlertSink([100, 200], bot=bot)

        assert await sink.send_alert(make_alert())

        assert [c.kwargs["chat_id"] for c in bot.send_message.await_args_list] == [100, 200]
        assert bot.send_message.await_args.kwargs["parse_mode"] == "HTML"

    @pytest.mark.asyncio
    async def test_failing_chat_does_not_stop_others(self):
        """Test one unreachable chat does not block delivery to the rest."""
        bot = AsyncMock()
        bot.send_message.side_effect = [RuntimeError("chat not found"), None]
        sink = TelegramAlertSink([100, 200], bot=bot)

        assert await sink.send_alert(make_alert())
        assert bot.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_all_chats_failing_returns_false(self):
        """Test no delivery is reported when every chat fails."""
        bot = AsyncMock()
        bot.send_message.side_effect = RuntimeError("down")
        sink = TelegramAlertSink([100], bot=bot)

        assert await sink.send_alert(make_alert()) is False


class TestCompositeAlertSink:
    """Tests for the fan-out sink."""

    @pytest.mark.asyncio
    async def test_one_failing_sink_does_not_block_others(self):
        """Test an exception in one sink still delivers through the rest."""
        broken = AsyncMock()
        broken.send_alert.side_effect = RuntimeError("sink down")
        working = AsyncMock()
        working.send_alert.return_value = True
        sink = CompositeAlertSink([broken, working])

        assert await sink.send_alert(make_alert())
        working.send_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_logging_sink_always_delivers(self, caplog):
        """Test the log sink writes at CRITICAL."""
        with caplog.at_level("CRITICAL"):
            assert await LoggingAlertSink().send_alert(make_alert())

        assert "[CRITICAL ALERT] Multi-Sig Withdrawal Job Failed" in caplog.text


class TestAlertFactory:
    """Tests for building the configured sinks."""

    def test_logging_only_by_default(self):
        """Test an unconfigured service still logs alerts."""
        sink = create_alert_sink(Settings(alerting_webhook_url=None, telegram_bot_token=""))

        assert [type(s) for s in sink.sinks] == [LoggingAlertSink]

    @pytest.mark.asyncio
    async def test_webhook_and_telegram_enabled(self):
        """Test configured channels are added after the log sink."""
        sink = create_alert_sink(
            Settings(
                alerting_webhook_url="https://hooks.example/alert",
                telegram_bot_token="123456:TEST",
                alert_chat_ids="100, 200",
            )
        )

        assert [type(s) for s in sink.sinks] == [
            LoggingAlertSink,
            WebhookAlertSink,
            TelegramAlertSink,
        ]
        assert sink.sinks[2].chat_ids == [100, 200]
        await sink.close()

    def test_telegram_without_chats_disabled(self):
        """Test a token without chat ids adds no Telegram sink."""
        sink = create_alert_sink(Settings(telegram_bot_token="123456:TEST", alert_chat_ids=""))

        assert TelegramAlertSink not in [type(s) for s in sink.sinks]
