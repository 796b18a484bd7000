"""Notification transports: Telegram Bot API over httpx, and a no-op sink."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE_URL = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_CHARS = 4096
DEFAULT_TIMEOUT_SECONDS = 10.0


class NotificationTransport(Protocol):
    """Protocol implemented by message transports."""

    max_message_chars: int

    async def send(self, text: str) -> bool:
        """Deliver one message; return False on failure instead of raising."""


class TelegramTransport:
    """Send HTML messages to one chat through the Bot API ``sendMessage`` method."""

    max_message_chars = TELEGRAM_MAX_MESSAGE_CHARS

    def __init__(
        self,
        *,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = TELEGRAM_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not bot_token or not chat_id:
            raise ValueError("Telegram transport requires bot token and chat id.")
        self.chat_id = chat_id
        self._url = f"{base_url.rstrip('/')}/bot{bot_token}/sendMessage"
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def send(self, text: str) -> bool:
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(self._url, json=payload)
        except httpx.TimeoutException:
            logger.warning("Timeout sending Telegram notification")
            return False
        except httpx.HTTPError as exc:
            logger.warning("HTTP error sending Telegram notification: %s", exc)
            return False

        if not response.is_success:
            logger.warning("Telegram API rejected notification: HTTP %s", response.status_code)
            return False
        return True


class NullTransport:
    """Transport used when alerts are disabled; records nothing, sends nothing."""

    max_message_chars = TELEGRAM_MAX_MESSAGE_CHARS

    async def send(self, text: str) -> bool:  # noqa: ARG002
        return True
