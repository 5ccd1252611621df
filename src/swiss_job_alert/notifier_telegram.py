from __future__ import annotations

import httpx

API_BASE_URL = "https://api.telegram.org"


class NotificationError(RuntimeError):
    pass


class TelegramChannel:
    """Sends HTML-formatted text messages through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        *,
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bot_token = bot_token
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def send_url(self) -> str:
        return f"{API_BASE_URL}/bot{self.bot_token}/sendMessage"

    async def send_message(self, chat_id: str, message_text: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(
                self.send_url,
                json={
                    "chat_id": chat_id,
                    "text": message_text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
            )
        response.raise_for_status()
        payload = response.json()
        if not payload.get("ok", False):
            raise NotificationError(payload.get("description") or "telegram rejected the message")
