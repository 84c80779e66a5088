"""Per-partition fetch, insert and checkpoint loop."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from dsync.config.logging import worker_id as worker_id_context
from dsync.feed.cursor import fabricate_cursor
from dsync.feed.errors import CursorExpiredError, ExhaustedRetriesError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dsync.feed.cursor import MillisClock
    from dsync.feed.records import EventRecord
    from dsync.ingest.fetcher import PageFetcher
    from dsync.ingest.partitions import Partition
    from dsync.ingest.rate_limiter import Sleep
    from dsync.storage.checkpoints_repo import Checkpoint

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

DEFAULT_STAGGER_SECONDS = 0.25
DEFAULT_MAX_CURSOR_RESETS = 5
CURSOR_RESET_RATIO = 0.5


class WorkerState(StrEnum):
    """Where a worker is in its page loop."""

    STARTING = "starting"
    FETCHING = "fetching"
    INSERTING = "inserting"
    CHECKPOINTING = "checkpointing"
    CURSOR_EXPIRED = "cursor_expired"
    COMPLETED = "completed"
    STOPPED = "stopped"


class EventSink(Protocol):
    """Idempotent batch destination for fetched records."""

    async def insert_events(self, records: Sequence[EventRecord]) -> None:
        """Insert records, ignoring ids that are already stored."""
        ...


class CheckpointStore(Protocol):
    """Per-partition progress persistence."""

    async def list_checkpoints(self) -> dict[int, Checkpoint]:
        """Return stored checkpoints keyed by worker id."""
        ...

    async def save_checkpoint(
        self,
        *,
        worker_id: int,
        cursor: str | None,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Upsert a running checkpoint."""
        ...

    async def mark_completed(
        self,
        *,
        worker_id: int,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Mark a partition finished."""
        ...


def reset_cursor_ts(*, boundary_ts: int, latest_ts: int) -> int:
    """Return the position a worker re-enters the feed at after cursor expiry."""
    return math.floor(boundary_ts + (latest_ts - boundary_ts) * CURSOR_RESET_RATIO)


@dataclass(slots=True)
class WorkerEngine:
    """Drive one partition from its start or resume cursor to exhaustion."""

    partition: Partition
    fetcher: PageFetcher
    sink: EventSink
    checkpoints: CheckpointStore
    latest_ts: int
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    on_progress: ProgressCallback | None = None
    stagger_seconds: float = DEFAULT_STAGGER_SECONDS
    max_cursor_resets: int = DEFAULT_MAX_CURSOR_RESETS
    sleep: Sleep = asyncio.sleep
    cursor_clock: MillisClock | None = None
    state: WorkerState = WorkerState.STARTING
    started_at: datetime | None = None

    async def run(self) -> int:
        """Ingest the partition and return its cumulative record count."""
        token = worker_id_context.set(self.partition.worker_id)
        try:
            return await self._run()
        finally:
            worker_id_context.reset(token)

    async def _run(self) -> int:
        partition = self.partition
        if self.stagger_seconds > 0 and partition.worker_id > 0:
            await self.sleep(self.stagger_seconds * partition.worker_id)
        self.started_at = datetime.now(UTC)
        logger.info(
            "Worker %d starting (boundary=%s)",
            partition.worker_id,
            datetime.fromtimestamp(partition.boundary_ts / 1000, tz=UTC).date(),
        )

        cursor = partition.resume_cursor or partition.start_cursor
        total = partition.resume_count
        cursor_resets = 0
        while True:
            if self.shutdown.is_set():
                self.state = WorkerState.STOPPED
                logger.info(
                    "Worker %d stopped by shutdown at %d events",
                    partition.worker_id,
                    total,
                )
                return total

            self.state = WorkerState.FETCHING
            try:
                page = await self.fetcher.fetch(cursor)
            except CursorExpiredError as exc:
                self.state = WorkerState.CURSOR_EXPIRED
                if partition.start_cursor is None:
                    logger.info(
                        "Worker %d cursor expired without a start cursor; finishing",
                        partition.worker_id,
                    )
                    break
                cursor_resets += 1
                if cursor_resets > self.max_cursor_resets:
                    raise ExhaustedRetriesError.for_operation(
                        operation=f"worker {partition.worker_id} cursor recovery",
                        attempts=cursor_resets,
                        last_error=exc,
                    ) from exc
                cursor = fabricate_cursor(
                    reset_cursor_ts(
                        boundary_ts=partition.boundary_ts,
                        latest_ts=self.latest_ts,
                    ),
                    clock=self.cursor_clock,
                )
                logger.warning(
                    "Worker %d cursor expired; re-fabricated cursor",
                    partition.worker_id,
                )
                continue
            cursor_resets = 0

            if not page.events:
                break

            self.state = WorkerState.INSERTING
            await self.sink.insert_events(page.events)
            total += len(page.events)
            cursor = page.next_cursor

            self.state = WorkerState.CHECKPOINTING
            _ = await self.checkpoints.save_checkpoint(
                worker_id=partition.worker_id,
                cursor=cursor,
                events_ingested=total,
                boundary_ts=partition.boundary_ts,
            )
            if self.on_progress is not None:
                self.on_progress(partition.worker_id, len(page.events))

            if not page.has_more or cursor is None:
                break

        _ = await self.checkpoints.mark_completed(
            worker_id=partition.worker_id,
            events_ingested=total,
            boundary_ts=partition.boundary_ts,
        )
        self.state = WorkerState.COMPLETED
        logger.info("Worker %d done: %d events", partition.worker_id, total)
        return total
