"""Telegram update handling: commands, keyboard callbacks and documents.

The same :class:`UpdateHandler` serves the webhook endpoint and the
long-polling loop.
"""

from __future__ import annotations

import asyncio
import html
import logging
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from .conversion.service import SET_FORMAT, SET_SOURCE, AUTO_SOURCE, ConversionService, ResponseStatus
from .errors import TelegramError
from .formats import SOURCE_FORMATS, TARGET_FORMATS, infer_source_format
from .telegram import TelegramBot, make_keyboard

logger = logging.getLogger(__name__)


class Chat(BaseModel):
    id: int


class Document(BaseModel):
    file_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class Message(BaseModel):
    message_id: int
    chat: Chat
    text: Optional[str] = None
    document: Optional[Document] = None


class CallbackQuery(BaseModel):
    id: str
    data: Optional[str] = None
    message: Optional[Message] = None


class Update(BaseModel):
    update_id: int
    message: Optional[Message] = None
    callback_query: Optional[CallbackQuery] = None


TARGET_CHOICES = sorted(f.value for f in TARGET_FORMATS)
SOURCE_CHOICES = sorted(f.value for f in SOURCE_FORMATS) + [AUTO_SOURCE]

ACCEPTED_MESSAGE = "The conversion is being performed ..."
BUSY_MESSAGE = "Your previous document is still being converted. Please wait for it to finish."
DOWNLOAD_FAILED_MESSAGE = "File download failed. Please send the file again."
FALLBACK_MESSAGE = "Send me a document to convert, or /help for the available commands."

HELP_TEMPLATE = (
    "Send me a document and I'll convert it.\n\n"
    "Output format: <code>{target}</code>\n"
    "Input format: <code>{source}</code>\n\n"
    "/format [format] - choose the output format\n"
    "/from [format|auto] - set the input format instead of guessing it from the file name\n"
    "/formats - list supported formats"
)


class UpdateHandler:
    def __init__(self, service: ConversionService, bot: TelegramBot, *, max_document_bytes: int) -> None:
        self._service = service
        self._bot = bot
        self._max_document_bytes = max_document_bytes

    async def handle(self, update: Update) -> None:
        try:
            if update.callback_query is not None:
                await self._on_callback(update.callback_query)
            elif update.message is not None:
                await self._on_message(update.message)
        except TelegramError:
            logger.warning("Telegram call failed while handling update %s", update.update_id, exc_info=True)

    async def _reply(self, chat_id: int, text: str, **kwargs: Any) -> None:
        await asyncio.to_thread(self._bot.send_message, chat_id, text, **kwargs)

    async def _on_message(self, msg: Message) -> None:
        if msg.document is not None:
            await self._on_document(msg, msg.document)
        elif msg.text and msg.text.startswith("/"):
            await self._on_command(msg, msg.text)
        else:
            await self._reply(msg.chat.id, FALLBACK_MESSAGE)

    async def _on_command(self, msg: Message, text: str) -> None:
        chat_id = msg.chat.id
        head, _, rest = text.strip().partition(" ")
        # "/format@SomeBot pdf" in group chats
        name = head[1:].split("@", 1)[0].lower()
        arg = rest.strip() or None

        if name in ("start", "help"):
            config = await self._service.get_config(str(chat_id))
            text = HELP_TEMPLATE.format(
                target=config.target_format.value,
                source=config.source_format.value if config.source_format else AUTO_SOURCE,
            )
            await self._reply(chat_id, text, parse_mode="HTML")
        elif name == "formats":
            await self._reply(
                chat_id,
                "Input formats: " + ", ".join(SOURCE_CHOICES[:-1]) + "\n"
                "Output formats: " + ", ".join(TARGET_CHOICES),
            )
        elif name in ("format", "to"):
            if arg is None:
                await self._ask_target(chat_id)
            else:
                await self._apply(chat_id, SET_FORMAT, arg)
        elif name == "from":
            if arg is None:
                await self._ask_source(chat_id)
            else:
                await self._apply(chat_id, SET_SOURCE, arg)
        else:
            await self._reply(chat_id, FALLBACK_MESSAGE)

    async def _ask_target(self, chat_id: int) -> None:
        await self._reply(
            chat_id,
            "What format do you want for the output?",
            reply_markup=make_keyboard(TARGET_CHOICES, prefix="to"),
        )

    async def _ask_source(self, chat_id: int) -> None:
        await self._reply(
            chat_id,
            "Tell me the type of the original document.",
            reply_markup=make_keyboard(SOURCE_CHOICES, prefix="from"),
        )

    async def _apply(self, chat_id: int, command: str, arg: str) -> None:
        resp = await self._service.on_command(str(chat_id), command, arg)
        if resp.status is not ResponseStatus.ACCEPTED:
            await self._reply(chat_id, resp.reason or "That didn't work.")
            return
        config = await self._service.get_config(str(chat_id))
        if command == SET_FORMAT:
            text = (
                f"The output format is set to <code>{html.escape(config.target_format.value)}</code>. "
                "Now send me the file to be converted."
            )
        else:
            source = config.source_format.value if config.source_format else AUTO_SOURCE
            text = f"The type of the original document is set to <code>{html.escape(source)}</code>."
        await self._reply(chat_id, text, parse_mode="HTML")

    async def _on_callback(self, query: CallbackQuery) -> None:
        await asyncio.to_thread(self._bot.answer_callback_query, query.id)
        if query.message is None:
            logger.info("Callback query %s has no message", query.id)
            return
        chat_id = query.message.chat.id
        await asyncio.to_thread(self._bot.remove_keyboard, chat_id, query.message.message_id)

        prefix, _, value = (query.data or "").partition(":")
        if prefix == "to" and value:
            await self._apply(chat_id, SET_FORMAT, value)
        elif prefix == "from" and value:
            await self._apply(chat_id, SET_SOURCE, value)
        elif prefix == "from":
            await self._ask_source(chat_id)
        else:
            await self._ask_target(chat_id)

    async def _on_document(self, msg: Message, doc: Document) -> None:
        chat_id = msg.chat.id
        logger.info("Received document %s from %s (%s bytes)", doc.file_id, chat_id, doc.file_size)
        if doc.file_size is not None and doc.file_size > self._max_document_bytes:
            limit_mb = self._max_document_bytes // (1024 * 1024)
            await self._reply(chat_id, f"The document is larger than {limit_mb} MB.")
            return
        # Advisory; on_document makes the binding check after the download.
        if self._service.admission.active(str(chat_id)) is not None:
            await self._reply(chat_id, BUSY_MESSAGE)
            return
        try:
            data = await asyncio.to_thread(self._bot.download_document, doc.file_id)
        except TelegramError:
            logger.warning("Downloading document %s failed", doc.file_id, exc_info=True)
            await self._reply(chat_id, DOWNLOAD_FAILED_MESSAGE)
            return

        hint = doc.file_name if infer_source_format(doc.file_name) else doc.mime_type
        resp = await self._service.on_document(
            str(chat_id), data, hint, on_accepted=lambda: self._reply(chat_id, ACCEPTED_MESSAGE)
        )
        if resp.status is ResponseStatus.ACCEPTED:
            return
        if resp.status is ResponseStatus.BUSY:
            await self._reply(chat_id, BUSY_MESSAGE)
        else:
            await self._reply(chat_id, resp.reason or "This document can't be converted.")


class UpdatePoller:
    """Long-polls getUpdates and handles each update in its own task."""

    def __init__(self, bot: TelegramBot, handler: UpdateHandler, *, poll_timeout: int = 30) -> None:
        self._bot = bot
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._offset: int | None = None
        self._tasks: set[asyncio.Task] = set()

    async def poll_once(self) -> int:
        raw_updates = await asyncio.to_thread(self._bot.get_updates, self._offset, self._poll_timeout)
        for raw in raw_updates:
            update_id = raw.get("update_id")
            if isinstance(update_id, int):
                self._offset = update_id + 1
            try:
                update = Update.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping malformed update %s", update_id)
                continue
            task = asyncio.create_task(self._handler.handle(update))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(raw_updates)

    async def run(self) -> None:
        logger.info("Polling for updates")
        await asyncio.to_thread(self._bot.delete_webhook)
        backoff = 1.0
        try:
            while True:
                try:
                    await self.poll_once()
                    backoff = 1.0
                except TelegramError as e:
                    logger.warning("getUpdates failed: %s; retrying in %.0fs", e, backoff)
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, 60.0)
        finally:
            for t in list(self._tasks):
                t.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
