from __future__ import annotations

from dataclasses import dataclass

import httpx

from liveness_monitor.errors import NotificationError

TELEGRAM_MAX_MESSAGE_LEN = 3900


@dataclass(frozen=True)
class TelegramMessageRef:
    chat_id: str
    message_id: int
    topic: str = ""


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        chunk = s[:cut].rstrip()
        parts.append(chunk)
        s = s[cut:].lstrip()
    return parts


class TelegramSink:
    """Bot API delivery. Telegram has no topics, so the topic heads every message."""

    name = "telegram"

    def __init__(
        self,
        client: httpx.AsyncClient,
        bot_token: str,
        *,
        api_base: str = "https://api.telegram.org",
        max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
    ):
        self.client = client
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.max_len = max_len

    def _redact(self, text: str) -> str:
        if self.bot_token:
            return text.replace(self.bot_token, "<redacted>")
        return text

    async def _call(self, method: str, payload: dict) -> dict:
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        try:
            resp = await self.client.post(url, json=payload)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NotificationError(self._redact(f"telegram {method}: {type(e).__name__}: {e}")) from None
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise NotificationError(self._redact(f"telegram {method} rejected: {description or resp.status_code}"))
        return data

    async def send_message(self, destination: str, topic: str, text: str) -> TelegramMessageRef:
        body = f"{topic}\n{text}" if topic else text
        message_id = 0
        for part in split_telegram_message(body, max_len=self.max_len):
            data = await self._call("sendMessage", {"chat_id": destination, "text": part})
            result = data.get("result") or {}
            message_id = int(result.get("message_id") or 0)
        return TelegramMessageRef(chat_id=str(destination), message_id=message_id, topic=topic or "")

    async def edit_message(self, message_id: TelegramMessageRef, text: str) -> bool:
        if not isinstance(message_id, TelegramMessageRef) or not message_id.message_id:
            return False
        body = f"{message_id.topic}\n{text}" if message_id.topic else text
        if len(body) > self.max_len:
            return False
        try:
            await self._call(
                "editMessageText",
                {"chat_id": message_id.chat_id, "message_id": message_id.message_id, "text": body},
            )
        except NotificationError:
            return False
        return True
