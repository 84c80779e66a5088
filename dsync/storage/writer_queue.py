"""Single-writer queue serializing event inserts and checkpoint upserts.

SQLite allows one writer at a time. Every concurrent ingestion worker routes
its batch inserts and checkpoint writes through one queue so they commit one
after another instead of contending for the database lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeVar, cast

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


class WriterQueueProtocol(Protocol):
    """Protocol for async write queue submit behavior."""

    async def submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Enqueue one async write and await its completion."""
        ...


@dataclass(slots=True)
class _PendingWrite:
    operation: Callable[[], Awaitable[object]]
    completion: asyncio.Future[object]


class WriterQueueClosedError(RuntimeError):
    """Raised when callers submit writes after queue shutdown."""

    @classmethod
    def default_message(cls) -> WriterQueueClosedError:
        """Build deterministic error text for closed queue submissions."""
        return cls("Writer queue is closed and cannot accept new writes.")


class WriterQueue:
    """Run submitted writes one at a time, in submission order."""

    _queue: asyncio.Queue[_PendingWrite | None]
    _drain_task: asyncio.Task[None] | None
    _lifecycle_lock: asyncio.Lock
    _closed: bool
    _completed: int

    def __init__(self) -> None:
        """Initialize queue state; the drain task starts on first submit."""
        self._queue = asyncio.Queue()
        self._drain_task = None
        self._lifecycle_lock = asyncio.Lock()
        self._closed = False
        self._completed = 0

    @property
    def completed_writes(self) -> int:
        """Return how many writes have finished, successfully or not."""
        return self._completed

    async def submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Queue a write and return its result or re-raise its error."""
        completion: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        pending = _PendingWrite(
            operation=cast("Callable[[], Awaitable[object]]", operation),
            completion=completion,
        )
        async with self._lifecycle_lock:
            if self._closed:
                raise WriterQueueClosedError.default_message()
            if self._drain_task is None or self._drain_task.done():
                self._drain_task = asyncio.create_task(self._drain())
            await self._queue.put(pending)

        return cast("T", await completion)

    async def close(self) -> None:
        """Refuse new writes and wait for already queued writes to commit."""
        async with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            drain_task = self._drain_task
            if drain_task is None:
                return
            await self._queue.put(None)

        await drain_task
        self._drain_task = None
        logger.debug("Writer queue closed after %d writes", self._completed)

    async def _drain(self) -> None:
        while True:
            pending = await self._queue.get()
            try:
                if pending is None:
                    return
                await self._run(pending)
            finally:
                self._queue.task_done()

    async def _run(self, pending: _PendingWrite) -> None:
        try:
            result = await pending.operation()
        except Exception as exc:  # noqa: BLE001
            self._completed += 1
            if not pending.completion.cancelled():
                pending.completion.set_exception(exc)
            return

        self._completed += 1
        if not pending.completion.cancelled():
            pending.completion.set_result(result)
