"""Factory for the configured alert sink."""

import logging

from ortenberg.alerts.base import AlertSink, CompositeAlertSink, LoggingAlertSink
from ortenberg.config import Settings

logger = logging.getLogger(__name__)


def create_alert_sink(settings: Settings) -> AlertSink:
    """Build the alert fan-out: log always, plus webhook and Telegram when configured."""
    sinks: list[AlertSink] = [LoggingAlertSink()]

    if settings.alerting_webhook_url:
        from ortenberg.alerts.webhook import WebhookAlertSink

        sinks.append(WebhookAlertSink(settings.alerting_webhook_url))

    if settings.telegram_bot_token and settings.alert_chats:
        from ortenberg.alerts.telegram import TelegramAlertSink

        sinks.append(TelegramAlertSink(settings.alert_chats, token=settings.telegram_bot_token))
    elif settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN set but ALERT_CHAT_IDS empty - Telegram alerts disabled")

    return CompositeAlertSink(sinks)
