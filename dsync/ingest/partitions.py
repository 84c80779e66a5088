"""Split the historical range into disjoint per-worker time windows."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from dsync.feed.cursor import fabricate_cursor

if TYPE_CHECKING:
    from dsync.feed.cursor import MillisClock

DAY_MS = 86_400_000


@dataclass(slots=True, frozen=True)
class Partition:
    """One worker's slice of the feed, newest edge first.

    ``start_ts`` is the window's newest edge and ``boundary_ts`` its exclusive
    lower bound. Resume fields are seeded once from a stored checkpoint.
    """

    worker_id: int
    start_ts: int
    boundary_ts: int
    start_cursor: str | None
    resume_cursor: str | None = None
    resume_count: int = 0

    @property
    def span_ms(self) -> int:
        """Return the width of the window in milliseconds."""
        return self.start_ts - self.boundary_ts

    @property
    def is_resumed(self) -> bool:
        """Return True once checkpoint state has been applied."""
        return self.resume_cursor is not None or self.resume_count > 0

    def with_resume(self, *, cursor: str | None, count: int) -> Partition:
        """Return a copy seeded with checkpoint state."""
        if self.is_resumed:
            msg = f"Partition {self.worker_id} already carries resume state."
            raise ValueError(msg)
        if count < 0:
            msg = "Partition resume count must be non-negative."
            raise ValueError(msg)
        return replace(self, resume_cursor=cursor, resume_count=count)


def plan_partitions(
    worker_count: int,
    latest_ts: int,
    range_days: int,
    *,
    clock: MillisClock | None = None,
) -> list[Partition]:
    """Plan ``worker_count`` contiguous windows descending from ``latest_ts``.

    Worker 0 starts from the feed's natural head, so it gets no cursor; every
    other worker enters the feed through a fabricated cursor at its window's
    newest edge.
    """
    if worker_count < 1:
        msg = "worker_count must be at least 1."
        raise ValueError(msg)
    if range_days <= 0:
        msg = "range_days must be positive."
        raise ValueError(msg)

    total_span = range_days * DAY_MS
    partition_span = total_span / worker_count
    partitions: list[Partition] = []
    for index in range(worker_count):
        start_ts = math.floor(latest_ts - index * partition_span)
        # The last window ends exactly at the range edge, whatever the rounding.
        if index == worker_count - 1:
            boundary_ts = latest_ts - total_span
        else:
            boundary_ts = math.floor(latest_ts - (index + 1) * partition_span)
        partitions.append(
            Partition(
                worker_id=index,
                start_ts=start_ts,
                boundary_ts=boundary_ts,
                start_cursor=(
                    None if index == 0 else fabricate_cursor(start_ts, clock=clock)
                ),
            ),
        )
    return partitions
