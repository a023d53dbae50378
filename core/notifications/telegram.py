"""Telegram notifier for trigger order outcomes."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from telegram import Bot, LinkPreviewOptions

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Sends chat notifications through python-telegram-bot.

    Fire-and-forget: failures are logged and reported as False, never raised,
    so a notification problem can never stall the scheduler.
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        *,
        parse_mode: str = "Markdown",
        bot: Optional[Any] = None,
    ) -> None:
        """Initialize the notifier.

        Args:
            bot_token: Telegram bot token. If not provided, reads from TELEGRAM_BOT_TOKEN env var.
            parse_mode: Parse mode for message formatting ("Markdown" or "HTML")
            bot: Pre-built bot object exposing an async `send_message` (tests)
        """
        self.bot_token = bot_token or os.environ.get("TELEGRAM_BOT_TOKEN")
        self.parse_mode = parse_mode
        self._bot = bot

        if self._bot is None and not self.bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not configured")

    def _get_bot(self) -> Optional[Any]:
        if self._bot is None and self.bot_token:
            self._bot = Bot(token=self.bot_token)
        return self._bot

    async def notify(self, chat_id: int, message: str) -> bool:
        """Send `message` to `chat_id`. Returns True if it was delivered."""
        bot = self._get_bot()
        if bot is None:
            logger.error("Cannot send Telegram message: bot token not configured")
            return False

        try:
            await bot.send_message(
                chat_id=chat_id,
                text=message,
                parse_mode=self.parse_mode,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except Exception as exc:
            logger.error("Failed to send Telegram message to chat %s: %s", chat_id, exc)
            return False

        logger.info("Telegram message sent to chat %s", chat_id)
        return True
