from __future__ import annotations

import asyncio
import logging

from attachments_backend.integrations.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)


class CleanupTrigger:
    """Fire-and-forget deletion of backing files after a record delete.

    Each deletion runs as a detached task. Failures are logged and dropped: a
    stale object may survive its record, which is accepted. `drain()` exists
    for shutdown and tests; request handlers never wait on it.
    """

    def __init__(self, storage: ObjectStorage) -> None:
        self._storage = storage
        # Strong references; the event loop only keeps weak ones to tasks.
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def delete_file(self, storage_key: str) -> asyncio.Task[None] | None:
        if not storage_key:
            return None
        coro = self._storage.delete(storage_key)
        try:
            task = asyncio.get_running_loop().create_task(
                coro, name=f"attachment-cleanup:{storage_key}"
            )
        except RuntimeError:
            coro.close()
            logger.warning("cannot schedule file cleanup key=%s", storage_key, exc_info=True)
            return None
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.info("file cleanup cancelled task=%s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("file cleanup failed task=%s", task.get_name(), exc_info=exc)
            return
        logger.debug("file cleanup done task=%s", task.get_name())

    async def drain(self) -> None:
        if not self._pending:
            return
        await asyncio.gather(*list(self._pending), return_exceptions=True)
