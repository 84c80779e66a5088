"""Route worker writes through the single-writer queue."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from dsync.feed.records import to_event_rows

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dsync.feed.records import EventRecord
    from dsync.feed.timestamps import TimeProvider
    from dsync.storage.checkpoints_repo import Checkpoint, CheckpointsRepository
    from dsync.storage.events_repo import EventsRepository
    from dsync.storage.writer_queue import WriterQueueProtocol


@dataclass(slots=True)
class QueuedEventSink:
    """Normalize records to rows and insert them as one queued write."""

    writer_queue: WriterQueueProtocol
    repository: EventsRepository
    time_provider: TimeProvider | None = None

    async def insert_events(self, records: Sequence[EventRecord]) -> None:
        """Insert one page of records, skipping ids already stored."""
        rows = to_event_rows(records, time_provider=self.time_provider)
        if not rows:
            return

        async def _insert() -> None:
            await self.repository.insert_events(rows)

        await self.writer_queue.submit(_insert)

    async def count_events(self) -> int:
        """Return the distinct stored event count."""
        return await self.repository.count_events()


@dataclass(slots=True)
class QueuedCheckpointStore:
    """Read checkpoints directly; queue every upsert."""

    writer_queue: WriterQueueProtocol
    repository: CheckpointsRepository

    async def list_checkpoints(self) -> dict[int, Checkpoint]:
        """Return stored checkpoints keyed by worker id."""
        return await self.repository.list_checkpoints()

    async def save_checkpoint(
        self,
        *,
        worker_id: int,
        cursor: str | None,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Queue a running checkpoint upsert and wait for it to commit."""

        async def _save() -> Checkpoint:
            return await self.repository.save_checkpoint(
                worker_id=worker_id,
                cursor=cursor,
                events_ingested=events_ingested,
                boundary_ts=boundary_ts,
            )

        return await self.writer_queue.submit(_save)

    async def mark_completed(
        self,
        *,
        worker_id: int,
        events_ingested: int,
        boundary_ts: int,
    ) -> Checkpoint:
        """Queue the terminal completed upsert."""

        async def _complete() -> Checkpoint:
            return await self.repository.mark_completed(
                worker_id=worker_id,
                events_ingested=events_ingested,
                boundary_ts=boundary_ts,
            )

        return await self.writer_queue.submit(_complete)
