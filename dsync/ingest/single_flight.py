"""Coalesce concurrent calls of one async operation into a single execution."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


class SingleFlight[T]:
    """Run at most one operation at a time; concurrent callers share its outcome."""

    _inflight: asyncio.Task[T] | None

    def __init__(self) -> None:
        """Initialize with no operation in flight."""
        self._inflight = None

    @property
    def in_flight(self) -> bool:
        """Return True while an operation is running."""
        return self._inflight is not None and not self._inflight.done()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Start ``operation`` or join the one already running."""
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(operation())
            self._inflight = task
            task.add_done_callback(self._clear)
        # A cancelled caller must not cancel the work other callers wait on.
        return await asyncio.shield(task)

    def _clear(self, task: asyncio.Task[T]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved; every joined caller re-raises it.
            _ = task.exception()
