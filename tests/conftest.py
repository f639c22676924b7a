from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from attachments_backend.config import settings
from attachments_backend.db import dispose_engine_cache, get_engine, init_db


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def sqlite_db(tmp_path: Path, anyio_backend: object) -> AsyncGenerator[str, None]:  # noqa: ARG001
    """Fresh SQLite file with the schema created; restores DATABASE_URL afterwards."""
    _ = anyio_backend
    old_db = settings.database_url
    settings.database_url = f"sqlite:///{tmp_path / 'test-attachments.db'}"
    dispose_engine_cache()
    await init_db()
    try:
        yield settings.database_url
    finally:
        # Dispose on the running loop so aiosqlite worker threads shut down cleanly.
        await get_engine().dispose()
        dispose_engine_cache()
        settings.database_url = old_db


def pytest_sessionfinish(session: object, exitstatus: int) -> None:  # noqa: ARG001
    # Safety net: close cached engine so CI can exit cleanly.
    _ = session, exitstatus
    dispose_engine_cache()
