"""Shared test fixtures for pandoc_bot."""

import asyncio

import pytest

from pandoc_bot.conversion import ConversionService
from pandoc_bot.conversion.adapters import LocalStateStore, LocalTempStore
from pandoc_bot.formats import DocFormat


class FakeBot:
    """BotGateway that records what would have been sent."""

    def __init__(self) -> None:
        self.results: list[tuple[str, bytes, DocFormat]] = []
        self.errors: list[tuple[str, str]] = []
        self.fail_results = False

    async def deliver_result(self, user_id, data, fmt):
        if self.fail_results:
            raise RuntimeError("chat unreachable")
        self.results.append((user_id, data, fmt))

    async def deliver_error(self, user_id, message):
        self.errors.append((user_id, message))


class FakeConverter:
    """Writes ``<target>:<input bytes>`` to the output file.

    Set ``gate`` to hold conversions until the event is set, or ``error`` to
    raise it instead of converting.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, DocFormat, DocFormat, float]] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def convert(self, source, output, source_format, target_format, timeout):
        self.calls.append((source.request_id, source_format, target_format, timeout))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        output.path.write_bytes(target_format.value.encode() + b":" + source.path.read_bytes())
        return output


@pytest.fixture
def state_dir(tmp_path):
    d = tmp_path / "state"
    d.mkdir()
    return d


@pytest.fixture
def temp_dir(tmp_path):
    d = tmp_path / "tmp"
    d.mkdir()
    return d


@pytest.fixture
def state_store(state_dir):
    return LocalStateStore(state_dir, default_format=DocFormat.PDF)


@pytest.fixture
def temp_store(temp_dir):
    return LocalTempStore(temp_dir)


@pytest.fixture
def fake_bot():
    return FakeBot()


@pytest.fixture
def fake_converter():
    return FakeConverter()


@pytest.fixture
def service(state_store, temp_store, fake_converter, fake_bot):
    return ConversionService(
        state=state_store,
        staging=temp_store,
        converter=fake_converter,
        bot=fake_bot,
        timeout=5.0,
        max_document_bytes=1024 * 1024,
    )
