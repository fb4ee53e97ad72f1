"""Bridge for posting messages to a Telegram chat via the Bot API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


class TelegramBridge:
    """Simple HTTP bridge to the Telegram ``sendMessage`` endpoint."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.telegram_bot_token or not settings.telegram_chat_id:
            raise ValueError("Telegram bot token and chat id are not configured.")
        self._endpoint = f"{settings.telegram_api_base.rstrip('/')}/bot{settings.telegram_bot_token}/sendMessage"
        self._chat_id = settings.telegram_chat_id

    async def send_message(self, text: str, *, parse_mode: str = "Markdown") -> int | None:
        if not text.strip():
            raise ValueError("Message text cannot be empty.")

        payload: dict[str, Any] = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        async with httpx.AsyncClient(timeout=30) as client:
            response = await client.post(self._endpoint, json=payload)
        try:
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.error("Telegram message dispatch failed: %s", exc)
            raise
        return (response.json().get("result") or {}).get("message_id")
