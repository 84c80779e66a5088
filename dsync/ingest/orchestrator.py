"""Run planning, concurrent workers and the gap-fill pass for one ingestion."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from dsync.config.logging import run_id as run_id_context
from dsync.feed.errors import ExhaustedRetriesError
from dsync.ingest.credentials import CredentialBroker
from dsync.ingest.fetcher import PageFetcher
from dsync.ingest.gap_fill import GapFill
from dsync.ingest.partitions import Partition, plan_partitions
from dsync.ingest.progress import ProgressReporter
from dsync.ingest.rate_limiter import RateLimiter
from dsync.ingest.retry import credential_retry_policy, fetch_retry_policy
from dsync.ingest.worker import WorkerEngine

if TYPE_CHECKING:
    from collections.abc import Mapping

    from dsync.config.settings import AppSettings
    from dsync.feed.client import CredentialClient, FeedClient
    from dsync.feed.cursor import MillisClock
    from dsync.ingest.rate_limiter import Sleep
    from dsync.ingest.worker import CheckpointStore, EventSink
    from dsync.storage.checkpoints_repo import Checkpoint

logger = logging.getLogger(__name__)


class EventCounter(Protocol):
    """Source of the verified distinct-event count."""

    async def count_events(self) -> int:
        """Return how many distinct events are stored."""
        ...


@dataclass(slots=True, frozen=True)
class WorkerOutcome:
    """Result of one partition: an ingested total or the error that ended it."""

    worker_id: int
    ingested: int | None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        """Return True when the worker returned normally."""
        return self.error is None


@dataclass(slots=True, frozen=True)
class IngestionReport:
    """Summary of one run."""

    run_id: str
    existing_count: int
    final_count: int
    target_count: int
    outcomes: list[WorkerOutcome] = field(default_factory=list)
    skipped_workers: list[int] = field(default_factory=list)
    gap_fill_fetched: int = 0

    @property
    def failed_workers(self) -> list[int]:
        """Return ids of partitions that ended with an error."""
        return [outcome.worker_id for outcome in self.outcomes if not outcome.succeeded]

    @property
    def target_reached(self) -> bool:
        """Return True when the store holds at least the target count."""
        return self.final_count >= self.target_count


def apply_checkpoints(
    partitions: list[Partition],
    checkpoints: Mapping[int, Checkpoint],
) -> tuple[list[Partition], list[int]]:
    """Split planned partitions into active (resume-seeded) and completed ids."""
    active: list[Partition] = []
    skipped: list[int] = []
    for partition in partitions:
        checkpoint = checkpoints.get(partition.worker_id)
        if checkpoint is not None and checkpoint.is_completed:
            logger.info(
                "Worker %d already completed (%d events), skipping",
                partition.worker_id,
                checkpoint.events_ingested,
            )
            skipped.append(partition.worker_id)
            continue
        if checkpoint is not None and checkpoint.cursor:
            logger.info(
                "Worker %d resuming from checkpoint (%d events so far)",
                partition.worker_id,
                checkpoint.events_ingested,
            )
            partition = partition.with_resume(
                cursor=checkpoint.cursor,
                count=checkpoint.events_ingested,
            )
        active.append(partition)
    return active, skipped


@dataclass(slots=True)
class IngestionOrchestrator:
    """Wire the ingestion components together for a single run."""

    settings: AppSettings
    feed_client: FeedClient
    credential_client: CredentialClient
    sink: EventSink
    checkpoints: CheckpointStore
    counter: EventCounter
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    sleep: Sleep = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)
    cursor_clock: MillisClock | None = None

    async def run(self) -> IngestionReport:
        """Ingest until every partition finishes, then reconcile with gap fill."""
        current_run_id = uuid4().hex
        token = run_id_context.set(current_run_id)
        try:
            return await self._run(current_run_id)
        finally:
            run_id_context.reset(token)

    async def _run(self, current_run_id: str) -> IngestionReport:
        settings = self.settings
        target = settings.total_events
        logger.info(
            "Ingestion starting (workers=%d, page_size=%d)",
            settings.worker_count,
            settings.page_size,
        )
        existing = await self.counter.count_events()
        logger.info("Existing events in store: %d", existing)
        if existing >= target:
            logger.info("Already have %d events, nothing to do", existing)
            return IngestionReport(
                run_id=current_run_id,
                existing_count=existing,
                final_count=existing,
                target_count=target,
            )

        broker = CredentialBroker(
            client=self.credential_client,
            refresh_interval_seconds=settings.token_refresh_seconds,
            retry_policy=credential_retry_policy(settings),
            sleep=self.sleep,
            rng=self.rng,
        )
        try:
            await self._initialize_broker(broker)
            partitions = plan_partitions(
                settings.worker_count,
                settings.latest_event_ts,
                settings.range_days,
                clock=self.cursor_clock,
            )
            active, skipped = apply_checkpoints(
                partitions,
                await self.checkpoints.list_checkpoints(),
            )
            progress = ProgressReporter(
                total=target,
                initial=existing,
                interval_seconds=settings.progress_interval_seconds,
            )
            outcomes = await self._run_workers(active, broker, progress)

            final = await self.counter.count_events()
            logger.info("Partitioned pass finished; events in store: %d", final)
            gap_fill_fetched = 0
            if final < target and not self.shutdown.is_set():
                logger.warning(
                    "Expected %d but have %d; running gap fill",
                    target,
                    final,
                )
                gap_fill_fetched = await self._gap_fill(broker, progress).run(
                    current_count=final,
                    target_count=target,
                )
                final = await self.counter.count_events()
        finally:
            await broker.stop()

        logger.info("Final verified count: %d", final)
        return IngestionReport(
            run_id=current_run_id,
            existing_count=existing,
            final_count=final,
            target_count=target,
            outcomes=outcomes,
            skipped_workers=skipped,
            gap_fill_fetched=gap_fill_fetched,
        )

    async def _initialize_broker(self, broker: CredentialBroker) -> None:
        try:
            _ = await broker.initialize()
        except ExhaustedRetriesError as exc:
            logger.warning("Privileged access unavailable (%s); using standard endpoint", exc)
            return
        logger.info("Privileged endpoint available; using high-throughput mode")

    async def _run_workers(
        self,
        partitions: list[Partition],
        broker: CredentialBroker,
        progress: ProgressReporter,
    ) -> list[WorkerOutcome]:
        if not partitions:
            logger.info("All partitions already completed")
            return []

        settings = self.settings
        limiter = RateLimiter(
            settings.rate_per_second,
            settings.rate_burst,
            sleep=self.sleep,
            rng=self.rng,
        )
        engines = [
            WorkerEngine(
                partition=partition,
                fetcher=PageFetcher(
                    client=self.feed_client,
                    limiter=limiter,
                    retry_policy=fetch_retry_policy(settings),
                    page_size=settings.page_size,
                    broker=broker,
                    label=f"worker {partition.worker_id}",
                    sleep=self.sleep,
                    rng=self.rng,
                ),
                sink=self.sink,
                checkpoints=self.checkpoints,
                latest_ts=settings.latest_event_ts,
                shutdown=self.shutdown,
                on_progress=progress.on_batch,
                stagger_seconds=settings.worker_stagger_seconds,
                sleep=self.sleep,
                cursor_clock=self.cursor_clock,
            )
            for partition in partitions
        ]
        logger.info("Launching %d workers with a shared rate limiter", len(engines))
        progress.start()
        try:
            results = await asyncio.gather(
                *(engine.run() for engine in engines),
                return_exceptions=True,
            )
        finally:
            await progress.stop()

        outcomes: list[WorkerOutcome] = []
        for partition, result in zip(partitions, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Worker %d failed: %s",
                    partition.worker_id,
                    result,
                    exc_info=result,
                )
                outcomes.append(
                    WorkerOutcome(worker_id=partition.worker_id, ingested=None, error=result),
                )
                continue
            outcomes.append(WorkerOutcome(worker_id=partition.worker_id, ingested=result))
        return outcomes

    def _gap_fill(self, broker: CredentialBroker, progress: ProgressReporter) -> GapFill:
        settings = self.settings
        limiter = RateLimiter(
            settings.gap_fill_rate_per_second,
            settings.gap_fill_burst,
            sleep=self.sleep,
            rng=self.rng,
        )
        return GapFill(
            fetcher=PageFetcher(
                client=self.feed_client,
                limiter=limiter,
                retry_policy=fetch_retry_policy(settings),
                page_size=settings.page_size,
                broker=broker,
                label="gap fill",
                sleep=self.sleep,
                rng=self.rng,
            ),
            sink=self.sink,
            broker=broker,
            slack=settings.gap_fill_slack,
            on_progress=progress.on_batch,
            shutdown=self.shutdown,
        )
