"""Tests for LocalTempStore: allocation, scoped release and reconciliation."""

import asyncio
import stat
import uuid

import pytest

from pandoc_bot.conversion.adapters import LocalTempStore
from pandoc_bot.conversion.interfaces import StagedRole
from pandoc_bot.errors import StorageError


def _rid() -> str:
    return uuid.uuid4().hex


class TestAllocate:
    @pytest.mark.asyncio
    async def test_creates_empty_private_file(self, temp_store):
        rid = _rid()
        handle = await temp_store.allocate(rid, StagedRole.INPUT, ".md")

        assert handle.path == temp_store.base_dir / f"{rid}.input.md"
        assert handle.path.read_bytes() == b""
        assert stat.S_IMODE(handle.path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_same_name_twice_fails(self, temp_store):
        rid = _rid()
        await temp_store.allocate(rid, StagedRole.OUTPUT, "pdf")

        with pytest.raises(StorageError):
            await temp_store.allocate(rid, StagedRole.OUTPUT, "pdf")

    @pytest.mark.asyncio
    async def test_rejects_malformed_request_id(self, temp_store):
        with pytest.raises(ValueError):
            await temp_store.allocate("../../escape", StagedRole.INPUT)

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_unique(self, temp_store):
        handles = await asyncio.gather(*(temp_store.allocate(_rid(), StagedRole.INPUT, "md") for _ in range(20)))

        assert len({h.path for h in handles}) == 20
        assert all(h.path.parent == temp_store.base_dir for h in handles)

    @pytest.mark.parametrize(
        "hint, expected",
        [
            (".PDF", ".pdf"),
            ("docx", ".docx"),
            ("../../etc/passwd", ""),
            ("tar.gz", ""),
            ("", ""),
            (None, ""),
            ("a" * 11, ""),
        ],
    )
    def test_safe_extension(self, hint, expected):
        assert LocalTempStore.safe_extension(hint) == expected


class TestReadWriteRelease:
    @pytest.mark.asyncio
    async def test_write_then_read(self, temp_store):
        handle = await temp_store.allocate(_rid(), StagedRole.INPUT, "md")

        await temp_store.write(handle, b"# title")

        assert await temp_store.read(handle) == b"# title"

    @pytest.mark.asyncio
    async def test_write_replaces_content(self, temp_store):
        handle = await temp_store.allocate(_rid(), StagedRole.INPUT, "md")
        await temp_store.write(handle, b"long original content")
        await temp_store.write(handle, b"short")

        assert await temp_store.read(handle) == b"short"

    @pytest.mark.asyncio
    async def test_release_removes_file_and_is_idempotent(self, temp_store):
        handle = await temp_store.allocate(_rid(), StagedRole.INPUT, "md")

        await temp_store.release(handle)
        await temp_store.release(handle)

        assert not handle.path.exists()

    @pytest.mark.asyncio
    async def test_released_handle_cannot_be_used(self, temp_store):
        handle = await temp_store.allocate(_rid(), StagedRole.INPUT, "md")
        await temp_store.release(handle)

        with pytest.raises(StorageError):
            await temp_store.write(handle, b"x")
        with pytest.raises(StorageError):
            await temp_store.read(handle)
        assert not handle.path.exists()

    @pytest.mark.asyncio
    async def test_file_removed_underneath_reports_storage_error(self, temp_store):
        handle = await temp_store.allocate(_rid(), StagedRole.INPUT, "md")
        handle.path.unlink()

        with pytest.raises(StorageError):
            await temp_store.write(handle, b"x")

    @pytest.mark.asyncio
    async def test_staged_releases_on_error(self, temp_store):
        rid = _rid()
        with pytest.raises(RuntimeError):
            async with temp_store.staged(rid, StagedRole.INPUT, "md") as handle:
                await temp_store.write(handle, b"x")
                assert temp_store.files_for(rid) == [handle.path]
                raise RuntimeError("boom")

        assert temp_store.files_for(rid) == []

    @pytest.mark.asyncio
    async def test_files_for_only_matches_own_request(self, temp_store):
        a, b = _rid(), _rid()
        await temp_store.allocate(a, StagedRole.INPUT, "md")
        await temp_store.allocate(a, StagedRole.OUTPUT, "pdf")
        await temp_store.allocate(b, StagedRole.INPUT, "md")

        assert [p.name for p in temp_store.files_for(a)] == [f"{a}.input.md", f"{a}.output.pdf"]


class TestReconcile:
    @pytest.mark.asyncio
    async def test_removes_orphans_keeps_claimed_and_foreign(self, temp_dir):
        orphans = [temp_dir / f"{_rid()}.input.md" for _ in range(4)] + [temp_dir / f"{_rid()}.output"]
        for p in orphans:
            p.write_bytes(b"stale")
        claimed_id = _rid()
        claimed = temp_dir / f"{claimed_id}.input.md"
        claimed.write_bytes(b"keep")
        foreign = temp_dir / "README.txt"
        foreign.write_text("not ours")
        (temp_dir / "subdir").mkdir()

        store = LocalTempStore(temp_dir)
        removed = await store.reconcile([claimed_id])

        assert removed == 5
        assert not any(p.exists() for p in orphans)
        assert claimed.exists()
        assert foreign.exists()
        assert (temp_dir / "subdir").is_dir()

    @pytest.mark.asyncio
    async def test_keeps_live_handles(self, temp_store):
        handle = await temp_store.allocate(_rid(), StagedRole.INPUT, "md")

        removed = await temp_store.reconcile()

        assert removed == 0
        assert handle.path.exists()

    @pytest.mark.asyncio
    async def test_empty_directory(self, temp_store):
        assert await temp_store.reconcile() == 0
