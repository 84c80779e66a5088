"""Shared pytest fixtures for SQLite-backed storage tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dsync.config.settings import load_settings
from dsync.storage import (
    CheckpointsRepository,
    EventsRepository,
    StorageRuntime,
    create_schema,
    create_storage_runtime,
    dispose_storage_runtime,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@pytest.fixture
def sqlite_db_path(tmp_path: Path) -> Path:
    """Provide a per-test SQLite file path for storage tests."""
    return tmp_path / "dsync-test.sqlite3"


@pytest.fixture
async def storage_runtime(sqlite_db_path: Path) -> AsyncIterator[StorageRuntime]:
    """Create engines and both ingestion tables on a fresh database file."""
    settings = load_settings({"DSYNC_DB_PATH": sqlite_db_path.as_posix()})
    runtime = create_storage_runtime(settings)
    await create_schema(runtime)
    try:
        yield runtime
    finally:
        await dispose_storage_runtime(runtime)


@pytest.fixture
def events_repository(storage_runtime: StorageRuntime) -> EventsRepository:
    """Event repository bound to the test database."""
    return EventsRepository(
        read_session_factory=storage_runtime.read_session_factory,
        write_session_factory=storage_runtime.write_session_factory,
    )


@pytest.fixture
def checkpoints_repository(storage_runtime: StorageRuntime) -> CheckpointsRepository:
    """Checkpoint repository bound to the test database."""
    return CheckpointsRepository(
        read_session_factory=storage_runtime.read_session_factory,
        write_session_factory=storage_runtime.write_session_factory,
    )
