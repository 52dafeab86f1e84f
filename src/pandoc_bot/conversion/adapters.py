import asyncio
import contextlib
import hashlib
import json
import logging
import os
import re
import signal
import sys
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, Sequence

from ..docling_worker import EXIT_UNSUPPORTED
from ..errors import ConversionTimeout, EngineFailure, StorageError, UnsupportedFormat
from ..formats import DOCLING_SOURCES, PANDOC_SOURCES, TARGET_FORMATS, DocFormat
from .interfaces import (
    ConverterGateway,
    StagedFile,
    StagedRole,
    StagingGateway,
    StateGateway,
    UserConfig,
)

logger = logging.getLogger(__name__)

_SAFE_USER_KEY = re.compile(r"-?[A-Za-z0-9_]{1,64}")
_REQUEST_ID = re.compile(r"[0-9a-f]{32}")
_SAFE_EXTENSION = re.compile(r"[a-z0-9]{1,10}")
_STAGED_NAME = re.compile(r"(?P<request_id>[0-9a-f]{32})\.(?P<role>input|output)(?:\.[a-z0-9]{1,10})?")

# Engine stderr kept for the user-facing diagnostic.
MAX_DIAGNOSTIC_CHARS = 500


class LocalStateStore(StateGateway):
    """One JSON record per user under ``<state_dir>/users``.

    Records are replaced atomically (temp file, fsync, rename, fsync of the
    directory) so a crash leaves either the old or the new record, never a
    torn one. Writes and read-modify-write updates for one user are serialized
    by a per-user lock that is dropped once nobody holds or waits for it.
    """

    def __init__(self, state_dir: str | Path, default_format: DocFormat = DocFormat.PDF) -> None:
        self._base = Path(state_dir).resolve() / "users"
        self._default_format = default_format
        # user_id -> (lock, number of tasks holding or waiting for it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def record_path(self, user_id: str) -> Path:
        if _SAFE_USER_KEY.fullmatch(user_id):
            key = user_id
        else:
            key = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
        return self._base / f"{key}.json"

    @asynccontextmanager
    async def _locked(self, user_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(user_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[user_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[user_id]
            if users == 1:
                del self._locks[user_id]
            else:
                self._locks[user_id] = (lock, users - 1)

    async def get(self, user_id: str) -> UserConfig:
        path = self.record_path(user_id)
        try:
            data = await asyncio.to_thread(self._load, path)
            if data is not None:
                return UserConfig.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError):
            logger.warning("Unreadable state record %s; using defaults", path, exc_info=True)
        return UserConfig(user_id=user_id, target_format=self._default_format)

    async def put(self, config: UserConfig) -> None:
        async with self._locked(config.user_id):
            await self._write(config)

    async def update(self, user_id: str, **changes: object) -> tuple[UserConfig, bool]:
        """Apply ``changes`` to the stored record under the user's lock.

        Returns the resulting config and whether anything was written. Two
        updates of different fields for one user never lose either change.
        """
        async with self._locked(user_id):
            current = await self.get(user_id)
            if all(getattr(current, k) == v for k, v in changes.items()):
                return current, False
            updated = replace(current, updated_at=datetime.now(timezone.utc), **changes)
            await self._write(updated)
            return updated, True

    async def _write(self, config: UserConfig) -> None:
        path = self.record_path(config.user_id)
        try:
            await asyncio.to_thread(self._atomic_write, path, config.to_dict())
        except OSError as e:
            logger.error("Failed to persist state for %s: %s", config.user_id, e)
            raise StorageError(f"could not save settings: {e}") from e

    @staticmethod
    def _load(path: Path) -> dict[str, object] | None:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("state record is not an object")
        return data

    @staticmethod
    def _atomic_write(path: Path, payload: dict[str, object]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise
        _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class LocalTempStore(StagingGateway):
    """Per-request input/output files in a single flat directory.

    Files are named ``<request_id>.<role>.<ext>``. The extension is the only
    part derived from user input and is reduced to ``[a-z0-9]``; an uploaded
    document's own filename never reaches the filesystem.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base = Path(base_dir).resolve()
        self._base.mkdir(parents=True, exist_ok=True)
        self._locks: dict[Path, asyncio.Lock] = {}

    @property
    def base_dir(self) -> Path:
        return self._base

    @staticmethod
    def safe_extension(extension: str | None) -> str:
        ext = (extension or "").strip().lower().lstrip(".")
        return f".{ext}" if _SAFE_EXTENSION.fullmatch(ext) else ""

    async def allocate(self, request_id: str, role: StagedRole, extension: str = "") -> StagedFile:
        if not _REQUEST_ID.fullmatch(request_id):
            raise ValueError(f"malformed request id {request_id!r}")
        path = self._base / f"{request_id}.{role.value}{self.safe_extension(extension)}"
        try:
            await asyncio.to_thread(_create_exclusive, path)
        except OSError as e:
            raise StorageError(f"could not allocate {role.value} file: {e}") from e
        self._locks[path] = asyncio.Lock()
        logger.debug("Allocated %s", path.name)
        return StagedFile(request_id=request_id, role=role, path=path)

    def _lock_for(self, handle: StagedFile) -> asyncio.Lock:
        lock = self._locks.get(handle.path)
        if lock is None:
            raise StorageError(f"{handle.path.name} has been released")
        return lock

    async def write(self, handle: StagedFile, data: bytes) -> None:
        async with self._lock_for(handle):
            try:
                await asyncio.to_thread(_overwrite, handle.path, data)
            except OSError as e:
                raise StorageError(f"could not write {handle.role.value} file: {e}") from e

    async def read(self, handle: StagedFile) -> bytes:
        async with self._lock_for(handle):
            try:
                return await asyncio.to_thread(handle.path.read_bytes)
            except OSError as e:
                raise StorageError(f"could not read {handle.role.value} file: {e}") from e

    async def release(self, handle: StagedFile) -> None:
        # No awaits: release must complete even while the owning task is
        # being cancelled.
        self._locks.pop(handle.path, None)
        try:
            handle.path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove %s; it will be reconciled on restart", handle.path, exc_info=True)
        else:
            logger.debug("Released %s", handle.path.name)

    @asynccontextmanager
    async def staged(self, request_id: str, role: StagedRole, extension: str = "") -> AsyncIterator[StagedFile]:
        handle = await self.allocate(request_id, role, extension)
        try:
            yield handle
        finally:
            await self.release(handle)

    def files_for(self, request_id: str) -> list[Path]:
        return sorted(
            p for p in self._base.glob(f"{request_id}.*")
            if (m := _STAGED_NAME.fullmatch(p.name)) and m["request_id"] == request_id
        )

    async def reconcile(self, claimed: Iterable[str] = ()) -> int:
        """Delete staged files whose request is not in ``claimed``.

        Entries that do not look like staged files are left alone.
        """
        return await asyncio.to_thread(self._sweep, frozenset(claimed))

    def _sweep(self, claimed: frozenset[str]) -> int:
        removed = 0
        for entry in self._base.iterdir():
            m = _STAGED_NAME.fullmatch(entry.name)
            if m is None or entry.is_symlink() or not entry.is_file():
                logger.warning("Leaving unrecognised entry %s in temp dir", entry.name)
                continue
            if m["request_id"] in claimed or entry in self._locks:
                continue
            try:
                entry.unlink()
            except OSError:
                logger.warning("Could not remove orphaned %s", entry, exc_info=True)
            else:
                removed += 1
        logger.info("Temp dir %s reconciled: %d orphaned file(s) removed", self._base, removed)
        return removed


def _create_exclusive(path: Path) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    os.close(fd)


def _overwrite(path: Path, data: bytes) -> None:
    # No O_CREAT: a released handle must not be resurrected.
    fd = os.open(path, os.O_WRONLY | os.O_TRUNC)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


class SubprocessConverter(ConverterGateway, ABC):
    """Base for engines that run as a child process with a hard timeout.

    Subclasses say which format pairs they take and build the argv; this class
    runs it. The child gets its own process group so that helpers it spawns
    (pandoc shells out to a LaTeX engine for PDF) are killed along with it.
    """

    name = "engine"
    unsupported_exit_codes: frozenset[int] = frozenset()

    @abstractmethod
    def supports(self, source_format: DocFormat, target_format: DocFormat) -> bool:
        ...

    @abstractmethod
    def command(
        self,
        source: StagedFile,
        output: StagedFile,
        source_format: DocFormat,
        target_format: DocFormat,
    ) -> list[str]:
        ...

    async def convert(
        self,
        source: StagedFile,
        output: StagedFile,
        source_format: DocFormat,
        target_format: DocFormat,
        timeout: float,
    ) -> StagedFile:
        if not self.supports(source_format, target_format):
            raise UnsupportedFormat(
                f"{self.name} cannot convert {source_format.value} to {target_format.value}"
            )
        argv = self.command(source, output, source_format, target_format)
        logger.debug("Running %s for request %s", self.name, source.request_id)
        returncode, stderr = await self._run(argv, timeout)
        diagnostic = stderr.decode("utf-8", "replace").strip()[-MAX_DIAGNOSTIC_CHARS:] or None
        if returncode in self.unsupported_exit_codes:
            raise UnsupportedFormat(
                f"{self.name} does not support {source_format.value} to {target_format.value}",
                diagnostic=diagnostic,
            )
        if returncode != 0:
            raise EngineFailure(f"{self.name} exited with status {returncode}", diagnostic=diagnostic)
        size = await asyncio.to_thread(lambda: output.path.stat().st_size)
        if size == 0:
            raise EngineFailure(f"{self.name} produced no output", diagnostic=diagnostic)
        return output

    async def _run(self, argv: Sequence[str], timeout: float) -> tuple[int, bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise EngineFailure(f"{self.name} executable not found: {argv[0]}") from e
        except OSError as e:
            raise EngineFailure(f"could not start {self.name}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            logger.warning("%s timed out after %gs (pid %s killed)", self.name, timeout, proc.pid)
            raise ConversionTimeout(f"{self.name} did not finish within {timeout:g} seconds") from None
        except asyncio.CancelledError:
            await _terminate(proc)
            raise
        returncode = proc.returncode if proc.returncode is not None else await proc.wait()
        return returncode, stderr or b""


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


class PandocConverter(SubprocessConverter):
    name = "pandoc"
    # Unknown reader, unknown writer, unsupported extension.
    unsupported_exit_codes = frozenset({21, 22, 23})

    _STANDALONE = frozenset({DocFormat.HTML, DocFormat.LATEX, DocFormat.PDF, DocFormat.EPUB})

    def __init__(self, pandoc_path: str = "pandoc", pdf_engine: str | None = None) -> None:
        self._pandoc = pandoc_path
        self._pdf_engine = pdf_engine

    def supports(self, source_format: DocFormat, target_format: DocFormat) -> bool:
        return source_format in PANDOC_SOURCES and target_format in TARGET_FORMATS

    def command(
        self,
        source: StagedFile,
        output: StagedFile,
        source_format: DocFormat,
        target_format: DocFormat,
    ) -> list[str]:
        argv = [self._pandoc, "--from", source_format.value, "--output", str(output.path)]
        if target_format is DocFormat.PDF:
            # pandoc picks the PDF route from the .pdf output name
            if self._pdf_engine:
                argv += ["--pdf-engine", self._pdf_engine]
        else:
            argv += ["--to", target_format.value]
        if target_format in self._STANDALONE:
            argv.append("--standalone")
        argv.append(str(source.path))
        return argv


class DoclingConverter(SubprocessConverter):
    """PDF and Office documents to Markdown through docling.

    docling runs in a worker process (``pandoc_bot.docling_worker``) rather
    than a thread so that a timed-out conversion can actually be stopped.
    """

    name = "docling"
    unsupported_exit_codes = frozenset({EXIT_UNSUPPORTED})

    def __init__(self, python: str = sys.executable) -> None:
        self._python = python

    def supports(self, source_format: DocFormat, target_format: DocFormat) -> bool:
        return source_format in DOCLING_SOURCES and target_format is DocFormat.MARKDOWN

    def command(
        self,
        source: StagedFile,
        output: StagedFile,
        source_format: DocFormat,
        target_format: DocFormat,
    ) -> list[str]:
        return [self._python, "-m", "pandoc_bot.docling_worker", str(source.path), str(output.path)]


class EngineRouter(ConverterGateway):
    """Dispatches each conversion to the first engine that accepts the pair."""

    def __init__(self, engines: Sequence[SubprocessConverter]) -> None:
        self._engines = list(engines)

    def engine_for(self, source_format: DocFormat, target_format: DocFormat) -> SubprocessConverter | None:
        for engine in self._engines:
            if engine.supports(source_format, target_format):
                return engine
        return None

    async def convert(
        self,
        source: StagedFile,
        output: StagedFile,
        source_format: DocFormat,
        target_format: DocFormat,
        timeout: float,
    ) -> StagedFile:
        engine = self.engine_for(source_format, target_format)
        if engine is None:
            raise UnsupportedFormat(f"cannot convert {source_format.value} to {target_format.value}")
        return await engine.convert(source, output, source_format, target_format, timeout)
