"""Thin Telegram Bot API client on top of ``requests``.

Calls are synchronous; the async ``deliver_*`` methods used by the
conversion service offload them to a thread. Transient failures (network
errors, 429, 5xx) are retried with a short backoff.
"""

import asyncio
import json
import logging
import time
from typing import Any, Iterable

import requests

from .conversion.interfaces import BotGateway
from .errors import TelegramError
from .formats import DocFormat, extension_for

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 4096


def make_keyboard(options: Iterable[str], *, prefix: str, per_row: int = 3) -> dict[str, Any]:
    """Inline keyboard with one button per option, ``per_row`` to a row.

    Button callback data is ``<prefix>:<option>``.
    """
    buttons = [{"text": opt, "callback_data": f"{prefix}:{opt}"} for opt in options]
    rows = [buttons[i:i + per_row] for i in range(0, len(buttons), per_row)]
    return {"inline_keyboard": rows}


class TelegramBot(BotGateway):
    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        *,
        session: requests.Session | None = None,
        timeout: float = 60.0,
        max_attempts: int = 5,
    ) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout
        self._max_attempts = max_attempts

    def _url(self, method: str) -> str:
        return f"{self._api_base}/bot{self._token}/{method}"

    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        files: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result``.

        Raises TelegramError once retries are exhausted or on a non-transient
        error. Error messages never include the request URL (it holds the token).
        """
        data: dict[str, Any] = {}
        for k, v in (params or {}).items():
            if v is None:
                continue
            data[k] = json.dumps(v) if isinstance(v, (dict, list)) else v
        backoff = 0.5
        last_error = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                resp = self._session.post(
                    self._url(method),
                    data=data,
                    files=files,
                    timeout=timeout or self._timeout,
                )
            except requests.RequestException as e:
                last_error = type(e).__name__
                if attempt < self._max_attempts:
                    logger.debug("%s: %s, retrying", method, last_error)
                    time.sleep(backoff)
                    backoff *= 1.5
                    continue
                raise TelegramError(f"{method} failed: {last_error}") from None

            try:
                body = resp.json()
            except ValueError:
                body = {"ok": False, "description": resp.text[:200]}
            if resp.status_code == 200 and body.get("ok"):
                return body.get("result")

            last_error = f"{resp.status_code} {body.get('description', '')}".strip()
            if resp.status_code == 429 or 500 <= resp.status_code < 600:
                if attempt < self._max_attempts:
                    retry_after = (body.get("parameters") or {}).get("retry_after")
                    time.sleep(float(retry_after) if retry_after else backoff)
                    backoff *= 1.5
                    continue
            raise TelegramError(f"{method} failed: {last_error}")
        raise TelegramError(f"{method} failed after retries: {last_error}")

    # Bot API methods used by the handlers

    def send_message(
        self,
        chat_id: int | str,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
        parse_mode: str | None = None,
    ) -> Any:
        return self.call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": text[:MAX_MESSAGE_CHARS],
                "reply_markup": reply_markup,
                "parse_mode": parse_mode,
            },
        )

    def send_document(self, chat_id: int | str, data: bytes, filename: str, *, caption: str | None = None) -> Any:
        return self.call(
            "sendDocument",
            {"chat_id": chat_id, "caption": caption},
            files={"document": (filename, data)},
            timeout=max(self._timeout, 120.0),
        )

    def answer_callback_query(self, callback_query_id: str, text: str | None = None) -> Any:
        return self.call("answerCallbackQuery", {"callback_query_id": callback_query_id, "text": text})

    def remove_keyboard(self, chat_id: int | str, message_id: int) -> Any:
        return self.call(
            "editMessageReplyMarkup",
            {"chat_id": chat_id, "message_id": message_id, "reply_markup": {"inline_keyboard": []}},
        )

    def get_file(self, file_id: str) -> dict[str, Any]:
        return self.call("getFile", {"file_id": file_id})

    def download_file(self, file_path: str) -> bytes:
        url = f"{self._api_base}/file/bot{self._token}/{file_path}"
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as e:
            raise TelegramError(f"download failed: {type(e).__name__}") from None
        if resp.status_code != 200:
            raise TelegramError(f"download failed: {resp.status_code}")
        return resp.content

    def download_document(self, file_id: str) -> bytes:
        info = self.get_file(file_id)
        file_path = info.get("file_path") if isinstance(info, dict) else None
        if not file_path:
            raise TelegramError("getFile returned no file_path")
        return self.download_file(str(file_path))

    def get_updates(self, offset: int | None, poll_timeout: int = 30) -> list[dict[str, Any]]:
        result = self.call(
            "getUpdates",
            {"offset": offset, "timeout": poll_timeout, "allowed_updates": ["message", "callback_query"]},
            timeout=poll_timeout + 10,
        )
        return list(result or [])

    def delete_webhook(self) -> Any:
        return self.call("deleteWebhook")

    def set_webhook(self, url: str, secret_token: str | None = None) -> Any:
        return self.call(
            "setWebhook",
            {"url": url, "secret_token": secret_token, "allowed_updates": ["message", "callback_query"]},
        )

    # BotGateway

    async def deliver_result(self, user_id: str, data: bytes, fmt: DocFormat) -> None:
        filename = f"converted{extension_for(fmt)}"
        await asyncio.to_thread(self.send_document, user_id, data, filename, caption=f"Converted to {fmt.value}.")

    async def deliver_error(self, user_id: str, message: str) -> None:
        await asyncio.to_thread(self.send_message, user_id, message)
