import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.config import DEFAULT_POLL_TIMEOUT_SECONDS, settings

logger = logging.getLogger(__name__)

TELEGRAM_TEXT_MAX_LEN = 4096
ALLOWED_UPDATES = '["message"]'


class TelegramError(RuntimeError):
    """Bot API call failed: HTTP error status, malformed body, or ok=false."""


class TelegramUser(BaseModel):
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_code: Optional[str] = None


class Chat(BaseModel):
    id: int
    type: Optional[str] = None


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    from_user: Optional[TelegramUser] = Field(None, alias="from")
    chat: Chat
    text: Optional[str] = None


class Update(BaseModel):
    update_id: int
    message: Optional[Message] = None


class _UpdatesEnvelope(BaseModel):
    ok: bool
    result: List[Update] = []
    description: Optional[str] = None


def split_telegram_text(text: str, max_len: int = TELEGRAM_TEXT_MAX_LEN) -> List[str]:
    """Split long text into Telegram-safe chunks while preferring line boundaries."""
    if len(text) <= max_len:
        return [text]

    lines = text.splitlines(keepends=True)
    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in lines:
        if len(line) > max_len:
            flush()
            remaining = line
            while len(remaining) > max_len:
                split_at = remaining.rfind(" ", 0, max_len)
                if split_at <= 0:
                    split_at = max_len
                chunks.append(remaining[:split_at])
                remaining = remaining[split_at:]
            if remaining:
                current = remaining
            continue

        if len(current) + len(line) > max_len:
            flush()
        current += line

    flush()
    return chunks if chunks else [text[:max_len]]


class TelegramClient:
    """Minimal Bot API client for long polling and plain-text replies."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        http_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self.base_url = (base_url or settings.TELEGRAM_API_BASE).rstrip("/")
        timeout = http_timeout if http_timeout is not None else settings.TELEGRAM_HTTP_TIMEOUT_SECONDS
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _url(self, method: str) -> str:
        if not self.token:
            raise RuntimeError("TELEGRAM_BOT_TOKEN not configured")
        return f"{self.base_url}/bot{self.token}/{method}"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get_updates(self, offset: int, timeout: int) -> List[Update]:
        """
        Long-poll getUpdates. offset <= 0 means "no offset filter".
        Raises TelegramError or httpx.HTTPError on failure.
        """
        if timeout <= 0:
            timeout = DEFAULT_POLL_TIMEOUT_SECONDS
        params: Dict[str, Any] = {"timeout": timeout, "allowed_updates": ALLOWED_UPDATES}
        if offset > 0:
            params["offset"] = offset
        resp = await self._http.get(self._url("getUpdates"), params=params)
        if resp.status_code >= 400:
            raise TelegramError(f"telegram http status {resp.status_code}: {resp.text}")
        try:
            envelope = _UpdatesEnvelope.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise TelegramError(f"malformed getUpdates response: {e}") from e
        if not envelope.ok:
            raise TelegramError(envelope.description or "getUpdates returned ok=false")
        return envelope.result

    async def send_message(self, chat_id: int, text: str) -> Dict[str, Any]:
        """
        Sends a plain-text message. Failures are logged, never retried or raised.
        """
        if not self.token:
            logger.error("TELEGRAM_BOT_TOKEN not configured.")
            return {"ok": False, "error": "token_missing"}

        url = self._url("sendMessage")
        last_json: Dict[str, Any] = {"ok": True}
        try:
            # Send in chunks to avoid Telegram hard length cap.
            for chunk in split_telegram_text(text or ""):
                resp = await self._http.post(url, json={"chat_id": chat_id, "text": chunk})
                if resp.status_code >= 400:
                    logger.error(
                        "Failed to send Telegram message (status=%s, body=%s)",
                        resp.status_code,
                        resp.text,
                    )
                    return {"ok": False, "error": f"status_{resp.status_code}"}
                last_json = resp.json()
                if not last_json.get("ok"):
                    logger.error("Telegram rejected message: %s", last_json.get("description"))
                    return {"ok": False, "error": last_json.get("description") or "not_ok"}
            return last_json
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to send Telegram message: {e}")
            return {"ok": False, "error": str(e)}
