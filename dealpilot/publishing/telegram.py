"""Telegram delivery helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


@dataclass(slots=True)
class DealMessage:
    text: str
    url: str
    button_text: str = "🛒 Vai all'offerta"


@dataclass(slots=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class TelegramDelivery:
    def __init__(self, provider: str | None = None, session: httpx.AsyncClient | None = None) -> None:
        self.provider = provider or os.environ.get("DELIVERY_PROVIDER", "telegram")
        self.timeout = float(os.environ.get("TELEGRAM_TIMEOUT_SECONDS", 15.0))
        self.session = session

    async def send(self, chat_id: str, bot_token: str, message: DealMessage) -> DeliveryResult:
        if self.provider == "log":
            logger.info("Telegram (log) → %s: %s", chat_id, message.text.splitlines()[0] if message.text else "")
            return DeliveryResult(success=True)
        try:
            return await self._send_telegram(chat_id, bot_token, message)
        except httpx.HTTPError as exc:
            logger.warning("Telegram request to %s failed: %s", chat_id, exc)
            return DeliveryResult(success=False, error=f"Telegram request failed: {exc}")

    async def _send_telegram(self, chat_id: str, bot_token: str, message: DealMessage) -> DeliveryResult:
        url = f"{TELEGRAM_API}/bot{bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": message.text,
            "parse_mode": "HTML",
            "reply_markup": {"inline_keyboard": [[{"text": message.button_text, "url": message.url}]]},
        }
        if self.session is not None:
            response = await self.session.post(url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_success and body.get("ok"):
            return DeliveryResult(success=True, message_id=str(body["result"]["message_id"]))
        error = body.get("description") or f"HTTP {response.status_code}"
        logger.warning("Telegram rejected message to %s: %s", chat_id, error)
        return DeliveryResult(success=False, error=error)
