"""Tests for checkpoint upserts and the completed-is-terminal rule."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from dsync.storage import (
    CheckpointCompletedError,
    CheckpointsRepository,
    CheckpointStatus,
)

if TYPE_CHECKING:
    from dsync.storage import StorageRuntime

BOUNDARY_TS = 1_699_000_000_000
FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_save_checkpoint_inserts_then_updates(
    checkpoints_repository: CheckpointsRepository,
) -> None:
    """Ensure one row per worker tracks the latest cursor and count."""
    _ = await checkpoints_repository.save_checkpoint(
        worker_id=3,
        cursor="c1",
        events_ingested=100,
        boundary_ts=BOUNDARY_TS,
    )
    saved = await checkpoints_repository.save_checkpoint(
        worker_id=3,
        cursor="c2",
        events_ingested=200,
        boundary_ts=BOUNDARY_TS,
    )

    loaded = await checkpoints_repository.get_checkpoint(worker_id=3)
    if loaded != saved:
        raise AssertionError
    if loaded is None or loaded.cursor != "c2" or loaded.events_ingested != 200:  # noqa: PLR2004
        raise AssertionError
    if loaded.status is not CheckpointStatus.RUNNING or loaded.boundary_ts != BOUNDARY_TS:
        raise AssertionError


@pytest.mark.asyncio
async def test_get_checkpoint_returns_none_for_unknown_worker(
    checkpoints_repository: CheckpointsRepository,
) -> None:
    """Ensure missing workers read as None."""
    if await checkpoints_repository.get_checkpoint(worker_id=42) is not None:
        raise AssertionError


@pytest.mark.asyncio
async def test_list_checkpoints_keys_rows_by_worker(
    checkpoints_repository: CheckpointsRepository,
) -> None:
    """Ensure every stored checkpoint is returned."""
    for worker_id in (0, 1, 2):
        _ = await checkpoints_repository.save_checkpoint(
            worker_id=worker_id,
            cursor=None if worker_id == 0 else f"c{worker_id}",
            events_ingested=worker_id * 10,
            boundary_ts=BOUNDARY_TS,
        )

    checkpoints = await checkpoints_repository.list_checkpoints()

    if sorted(checkpoints) != [0, 1, 2]:
        raise AssertionError
    if checkpoints[0].cursor is not None or checkpoints[2].events_ingested != 20:  # noqa: PLR2004
        raise AssertionError


@pytest.mark.asyncio
async def test_mark_completed_creates_missing_row(
    checkpoints_repository: CheckpointsRepository,
) -> None:
    """Ensure completing a worker with no checkpoint still records it."""
    completed = await checkpoints_repository.mark_completed(
        worker_id=5,
        events_ingested=0,
        boundary_ts=BOUNDARY_TS,
    )

    if not completed.is_completed or completed.cursor is not None:
        raise AssertionError


@pytest.mark.asyncio
async def test_completed_checkpoint_rejects_running_writes(
    checkpoints_repository: CheckpointsRepository,
) -> None:
    """Ensure a completed partition never moves back to running."""
    _ = await checkpoints_repository.save_checkpoint(
        worker_id=1,
        cursor="last",
        events_ingested=50,
        boundary_ts=BOUNDARY_TS,
    )
    _ = await checkpoints_repository.mark_completed(
        worker_id=1,
        events_ingested=55,
        boundary_ts=BOUNDARY_TS,
    )

    with pytest.raises(CheckpointCompletedError, match="worker 1"):
        _ = await checkpoints_repository.save_checkpoint(
            worker_id=1,
            cursor="again",
            events_ingested=60,
            boundary_ts=BOUNDARY_TS,
        )

    stored = await checkpoints_repository.get_checkpoint(worker_id=1)
    if stored is None or not stored.is_completed:
        raise AssertionError
    if stored.cursor != "last" or stored.events_ingested != 55:  # noqa: PLR2004
        raise AssertionError


@pytest.mark.asyncio
async def test_last_checkpoint_uses_time_provider(
    storage_runtime: StorageRuntime,
) -> None:
    """Ensure checkpoint timestamps come from the injected clock as UTC."""
    repository = CheckpointsRepository(
        read_session_factory=storage_runtime.read_session_factory,
        write_session_factory=storage_runtime.write_session_factory,
        time_provider=lambda: FIXED_NOW,
    )

    saved = await repository.save_checkpoint(
        worker_id=0,
        cursor=None,
        events_ingested=1,
        boundary_ts=BOUNDARY_TS,
    )

    if saved.last_checkpoint_at != FIXED_NOW:
        raise AssertionError
