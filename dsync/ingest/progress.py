"""Aggregate per-worker counts and periodically log throughput."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

BAR_WIDTH = 30
DEFAULT_INTERVAL_SECONDS = 5.0


@dataclass(slots=True, frozen=True)
class ProgressSnapshot:
    """Point-in-time totals for one run."""

    ingested: int
    total: int
    elapsed_seconds: float
    active_workers: int

    @property
    def ratio(self) -> float:
        """Return the completed fraction of the target."""
        if self.total <= 0:
            return 1.0
        return self.ingested / self.total

    @property
    def rate_per_second(self) -> int:
        """Return the mean ingest rate since start."""
        if self.elapsed_seconds <= 0:
            return 0
        return round(self.ingested / self.elapsed_seconds)

    @property
    def eta_seconds(self) -> int:
        """Return the estimated seconds until the target is reached."""
        rate = self.rate_per_second
        if rate <= 0:
            return 0
        return max(0, round((self.total - self.ingested) / rate))


class ProgressReporter:
    """Progress tracker fed by worker callbacks."""

    def __init__(
        self,
        *,
        total: int,
        initial: int = 0,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        """Create reporter; the clock starts on construction and on ``start``."""
        self._total = total
        self._ingested = initial
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._started_at = clock()
        self._worker_counts: dict[int, int] = {}
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def worker_counts(self) -> dict[int, int]:
        """Return a copy of per-worker counts reported this run."""
        return dict(self._worker_counts)

    def on_batch(self, worker_id: int, count: int) -> None:
        """Record ``count`` newly ingested records from ``worker_id``."""
        self._ingested += count
        self._worker_counts[worker_id] = self._worker_counts.get(worker_id, 0) + count

    def snapshot(self) -> ProgressSnapshot:
        """Return current totals."""
        return ProgressSnapshot(
            ingested=self._ingested,
            total=self._total,
            elapsed_seconds=self._clock() - self._started_at,
            active_workers=len(self._worker_counts),
        )

    def start(self) -> None:
        """Start periodic logging."""
        self._started_at = self._clock()
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(self._stop_event))

    async def stop(self) -> None:
        """Stop periodic logging and log the final line."""
        task = self._task
        if task is not None:
            if self._stop_event is not None:
                self._stop_event.set()
            await task
        self._task = None
        self._stop_event = None
        self.log_line()

    def log_line(self) -> None:
        """Log one progress line."""
        logger.info(format_line(self.snapshot()))

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                _ = await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self._interval_seconds,
                )
            except TimeoutError:
                self.log_line()


def format_line(snapshot: ProgressSnapshot) -> str:
    """Render a snapshot as a single human-readable progress line."""
    percent = snapshot.ratio * 100
    return (
        f"[{format_duration(snapshot.elapsed_seconds)}] "
        f"{progress_bar(snapshot.ratio)} "
        f"{snapshot.ingested:,}/{snapshot.total:,} ({percent:.1f}%) | "
        f"{snapshot.rate_per_second:,} evt/s | "
        f"ETA {format_duration(snapshot.eta_seconds)} | "
        f"{snapshot.active_workers}w"
    )


def progress_bar(ratio: float, width: int = BAR_WIDTH) -> str:
    """Render a fixed-width bar for ``ratio`` clamped to [0, 1]."""
    filled = min(width, max(0, round(ratio * width)))
    return "█" * filled + "░" * (width - filled)


def format_duration(seconds: float) -> str:
    """Format seconds as ``<minutes>m<seconds>s``."""
    whole = max(0, int(seconds))
    minutes, secs = divmod(whole, 60)
    return f"{minutes}m{secs:02d}s"
