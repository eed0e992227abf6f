"""Telegram alert sink.

Sends terminal-failure alerts to the operator chats listed in
ALERT_CHAT_IDS using an aiogram Bot.
"""

import html
import logging
from typing import Optional, Sequence

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from ortenberg.alerts.base import Alert, AlertSink

logger = logging.getLogger(__name__)


class TelegramAlertSink(AlertSink):
    """Service for sending alerts to operator Telegram chats."""

    def __init__(
        self,
        chat_ids: Sequence[int],
        bot: Optional[Bot] = None,
        token: Optional[str] = None,
    ):
        """Initialize with a bot instance or a token to create one."""
        if bot is None and not token:
            raise ValueError("TelegramAlertSink needs a bot or a token")
        self.chat_ids = list(chat_ids)
        self._bot = bot or Bot(token=token)
        self._owns_bot = bot is None

    @staticmethod
    def format_alert(alert: Alert) -> str:
        """Render an alert as Telegram HTML."""
        lines = [f"<b>{html.escape(alert.title)}</b>", ""]
        for key, value in alert.details.items():
            lines.append(f"{html.escape(str(key))}: <code>{html.escape(str(value))}</code>")
        return "\n".join(lines)

    async def send_alert(self, alert: Alert) -> bool:
        """Send to every chat; True if at least one accepted it."""
        message = self.format_alert(alert)
        delivered = False

        for chat_id in self.chat_ids:
            try:
                await self._bot.send_message(chat_id=chat_id, text=message, parse_mode="HTML")
                delivered = True
            except TelegramForbiddenError:
                logger.warning(f"Alert chat {chat_id} has blocked the bot")
            except TelegramBadRequest as e:
                logger.error(f"Bad request sending alert to {chat_id}: {e}")
            except Exception as e:
                logger.error(f"Failed to send alert to {chat_id}: {e}")

        return delivered

    async def close(self) -> None:
        """Close the bot session (call on shutdown)."""
        if self._owns_bot:
            await self._bot.session.close()
