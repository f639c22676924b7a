from __future__ import annotations

import asyncio
import logging

import pytest

from attachments_backend.services.cleanup import CleanupTrigger


class _SlowStorage:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.deleted: list[str] = []

    async def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise AssertionError("not used")

    async def delete(self, key: str) -> None:
        self.started.set()
        await self.release.wait()
        self.deleted.append(key)
        if self.fail:
            raise RuntimeError("bucket unavailable")


@pytest.mark.anyio
async def test_delete_file_returns_before_storage_finishes() -> None:
    storage = _SlowStorage()
    cleanup = CleanupTrigger(storage)

    task = cleanup.delete_file("uploads/k1")
    assert task is not None
    assert cleanup.pending == 1

    await storage.started.wait()
    assert storage.deleted == []

    storage.release.set()
    await cleanup.drain()
    assert storage.deleted == ["uploads/k1"]
    assert cleanup.pending == 0


@pytest.mark.anyio
async def test_failures_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    storage = _SlowStorage(fail=True)
    storage.release.set()
    cleanup = CleanupTrigger(storage)

    with caplog.at_level(logging.WARNING, logger="attachments_backend.services.cleanup"):
        cleanup.delete_file("uploads/k2")
        await cleanup.drain()

    assert storage.deleted == ["uploads/k2"]
    assert any("file cleanup failed" in r.getMessage() for r in caplog.records)


@pytest.mark.anyio
async def test_empty_key_is_ignored() -> None:
    storage = _SlowStorage()
    cleanup = CleanupTrigger(storage)
    assert cleanup.delete_file("") is None
    assert cleanup.pending == 0


def test_delete_file_without_running_loop_is_dropped() -> None:
    storage = _SlowStorage()
    cleanup = CleanupTrigger(storage)
    assert cleanup.delete_file("uploads/k3") is None
    assert cleanup.pending == 0
