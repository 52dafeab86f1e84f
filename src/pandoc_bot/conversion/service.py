import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from ..errors import ConversionError, ErrorKind, StorageError
from ..formats import SOURCE_FORMATS, TARGET_FORMATS, DocFormat, extension_for, infer_source_format, parse_format
from .interfaces import BotGateway, ConverterGateway, StagedFile, StagedRole, StagingGateway, StateGateway, UserConfig

logger = logging.getLogger(__name__)

SET_FORMAT = "setFormat"
SET_SOURCE = "setSource"
AUTO_SOURCE = "auto"


class RequestState(str, Enum):
    RECEIVED = "received"
    INPUT_STAGED = "input_staged"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED)


class ResponseStatus(str, Enum):
    ACCEPTED = "accepted"
    BUSY = "busy"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AdapterResponse:
    status: ResponseStatus
    reason: str | None = None
    request_id: str | None = None

    @classmethod
    def accepted(cls, request_id: str | None = None) -> "AdapterResponse":
        return cls(ResponseStatus.ACCEPTED, request_id=request_id)

    @classmethod
    def busy(cls) -> "AdapterResponse":
        return cls(ResponseStatus.BUSY)

    @classmethod
    def rejected(cls, reason: str) -> "AdapterResponse":
        return cls(ResponseStatus.REJECTED, reason=reason)


@dataclass
class ConversionRequest:
    user_id: str
    source_format: DocFormat
    target_format: DocFormat | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: RequestState = RequestState.RECEIVED
    input: StagedFile | None = None
    output: StagedFile | None = None
    error_kind: ErrorKind | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.STORAGE_ERROR: "Something went wrong on our side. Please try again later.",
    ErrorKind.UNSUPPORTED_FORMAT: "Conversion failed: this format combination is not supported.",
    ErrorKind.ENGINE_FAILURE: "Conversion failed: the converter could not process this document.",
    ErrorKind.TIMEOUT: "Conversion failed: it took too long and was stopped.",
}


def user_message(kind: ErrorKind, diagnostic: str | None = None) -> str:
    message = USER_MESSAGES[kind]
    if diagnostic:
        message = f"{message}\n\n{diagnostic}"
    return message


class AdmissionTracker:
    """Which users currently have a conversion in flight.

    ``try_admit`` is a single check-and-set so that two concurrent documents
    from one user cannot both be admitted.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, ConversionRequest] = {}

    def try_admit(self, request: ConversionRequest) -> bool:
        with self._lock:
            if request.user_id in self._active:
                return False
            self._active[request.user_id] = request
            return True

    def release(self, request: ConversionRequest) -> None:
        with self._lock:
            if self._active.get(request.user_id) is request:
                del self._active[request.user_id]

    def active(self, user_id: str) -> ConversionRequest | None:
        with self._lock:
            return self._active.get(user_id)

    def request_ids(self) -> set[str]:
        with self._lock:
            return {r.id for r in self._active.values()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)


class ConversionService:
    """Lifecycle manager for conversion requests.

    Framework-agnostic: the bot front end hands in documents and commands and
    receives results through a BotGateway. Each accepted document runs as its
    own asyncio task; staged files and the user's admission slot are released
    when that task ends, whichever way it ends.
    """

    def __init__(
        self,
        state: StateGateway,
        staging: StagingGateway,
        converter: ConverterGateway,
        bot: BotGateway,
        *,
        admission: AdmissionTracker | None = None,
        timeout: float = 60.0,
        max_document_bytes: int | None = None,
    ) -> None:
        self._state = state
        self._staging = staging
        self._converter = converter
        self._bot = bot
        self._admission = admission if admission is not None else AdmissionTracker()
        self._timeout = timeout
        self._max_document_bytes = max_document_bytes
        self._tasks: set[asyncio.Task] = set()

    @property
    def admission(self) -> AdmissionTracker:
        return self._admission

    async def get_config(self, user_id: str) -> UserConfig:
        return await self._state.get(user_id)

    async def reconcile(self) -> int:
        """Remove staged files left behind by a previous run."""
        return await self._staging.reconcile(self._admission.request_ids())

    async def on_document(
        self,
        user_id: str,
        data: bytes,
        format_hint: str | None,
        *,
        target_format: DocFormat | None = None,
        on_accepted: Callable[[], Awaitable[None]] | None = None,
    ) -> AdapterResponse:
        """Admit a document for conversion.

        ``on_accepted`` is awaited by the request task before any work starts,
        so an acknowledgement always reaches the user ahead of the result.
        """
        if not data:
            return AdapterResponse.rejected("The document is empty.")
        if self._max_document_bytes is not None and len(data) > self._max_document_bytes:
            limit_mb = self._max_document_bytes // (1024 * 1024)
            return AdapterResponse.rejected(f"The document is larger than {limit_mb} MB.")

        config = await self._state.get(user_id)
        source_format = config.source_format or infer_source_format(format_hint)
        if source_format is None:
            return AdapterResponse.rejected(
                "I can't tell what kind of document this is. Set it with /from <format>."
            )
        if source_format not in SOURCE_FORMATS:
            return AdapterResponse.rejected(f"{source_format.value} documents can't be converted.")

        request = ConversionRequest(user_id=user_id, source_format=source_format, target_format=target_format)
        if not self._admission.try_admit(request):
            logger.info("User %s is busy; rejecting new document", user_id)
            return AdapterResponse.busy()

        logger.info(
            "Accepted request %s from %s (%s, %d bytes)", request.id, user_id, source_format.value, len(data)
        )
        try:
            task = asyncio.create_task(self._process(request, data, on_accepted), name=f"convert-{request.id}")
        except BaseException:
            self._admission.release(request)
            raise
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return AdapterResponse.accepted(request.id)

    async def on_command(self, user_id: str, command: str, argument: str | None) -> AdapterResponse:
        if command == SET_FORMAT:
            fmt = parse_format(argument)
            if fmt is None or fmt not in TARGET_FORMATS:
                return AdapterResponse.rejected(f"Unknown output format: {argument or '(none)'}")
            return await self._update_config(user_id, target_format=fmt)
        if command == SET_SOURCE:
            if argument and argument.strip().lower() == AUTO_SOURCE:
                return await self._update_config(user_id, source_format=None)
            fmt = parse_format(argument)
            if fmt is None or fmt not in SOURCE_FORMATS:
                return AdapterResponse.rejected(f"Unknown input format: {argument or '(none)'}")
            return await self._update_config(user_id, source_format=fmt)
        return AdapterResponse.rejected(f"Unknown command: {command}")

    async def _update_config(self, user_id: str, **changes: object) -> AdapterResponse:
        try:
            updated, written = await self._state.update(user_id, **changes)
        except StorageError:
            return AdapterResponse.rejected(USER_MESSAGES[ErrorKind.STORAGE_ERROR])
        if not written:
            return AdapterResponse.accepted()
        logger.info("User %s settings changed: %s", user_id, {k: getattr(updated, k) for k in changes})
        return AdapterResponse.accepted()

    async def drain(self) -> None:
        """Wait for every in-flight request to reach a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        await self.drain()

    async def _process(
        self,
        request: ConversionRequest,
        data: bytes,
        on_accepted: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        try:
            if on_accepted is not None:
                try:
                    await on_accepted()
                except Exception:
                    logger.warning("Acknowledging request %s failed", request.id, exc_info=True)
            await self._run(request, data)
        except asyncio.CancelledError:
            logger.warning("Request %s abandoned in state %s", request.id, request.state.value)
            raise
        finally:
            for handle in (request.output, request.input):
                if handle is not None:
                    await self._staging.release(handle)
            self._admission.release(request)

    async def _run(self, request: ConversionRequest, data: bytes) -> None:
        try:
            request.input = await self._staging.allocate(
                request.id, StagedRole.INPUT, extension_for(request.source_format)
            )
            await self._staging.write(request.input, data)
            self._transition(request, RequestState.INPUT_STAGED)

            if request.target_format is None:
                config = await self._state.get(request.user_id)
                request.target_format = config.target_format
            request.output = await self._staging.allocate(
                request.id, StagedRole.OUTPUT, extension_for(request.target_format)
            )
            self._transition(request, RequestState.CONVERTING)
            await self._converter.convert(
                request.input, request.output, request.source_format, request.target_format, self._timeout
            )
            result = await self._staging.read(request.output)
        except StorageError as e:
            logger.error("Request %s storage failure: %s", request.id, e)
            await self._fail(request, ErrorKind.STORAGE_ERROR)
            return
        except ConversionError as e:
            logger.info("Request %s conversion failed (%s): %s", request.id, e.kind.value, e)
            await self._fail(request, e.kind, e.diagnostic)
            return
        except Exception:
            logger.exception("Request %s failed unexpectedly", request.id)
            await self._fail(request, ErrorKind.STORAGE_ERROR)
            return

        self._transition(request, RequestState.COMPLETED)
        try:
            await self._bot.deliver_result(request.user_id, result, request.target_format)
        except Exception:
            logger.exception("Delivering result of request %s to %s failed", request.id, request.user_id)

    async def _fail(self, request: ConversionRequest, kind: ErrorKind, diagnostic: str | None = None) -> None:
        request.error_kind = kind
        self._transition(request, RequestState.FAILED)
        try:
            await self._bot.deliver_error(request.user_id, user_message(kind, diagnostic))
        except Exception:
            logger.exception("Notifying %s about failed request %s failed", request.user_id, request.id)

    @staticmethod
    def _transition(request: ConversionRequest, state: RequestState) -> None:
        logger.debug("Request %s: %s -> %s", request.id, request.state.value, state.value)
        request.state = state
