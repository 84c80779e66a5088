"""Command-line entry point running one ingestion pass."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from dsync.config.logging import init_logging
from dsync.config.settings import SettingsValidationError, load_settings
from dsync.feed.client import HttpFeedClient
from dsync.feed.errors import FeedError
from dsync.ingest.orchestrator import IngestionOrchestrator
from dsync.ingest.persistence import QueuedCheckpointStore, QueuedEventSink
from dsync.storage import (
    CheckpointsRepository,
    CheckpointsRepositoryError,
    EventsRepository,
    EventsRepositoryError,
    WriterQueue,
    WriterQueueClosedError,
    create_schema,
    create_storage_runtime,
    dispose_storage_runtime,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dsync.config.settings import AppSettings
    from dsync.ingest.orchestrator import IngestionReport

logger = logging.getLogger(__name__)

COMPLETION_MESSAGE = "ingestion complete"

# Failures logged as an aborted pass with exit status 1.
ABORT_ERRORS = (
    OSError,
    SQLAlchemyError,
    FeedError,
    EventsRepositoryError,
    CheckpointsRepositoryError,
    WriterQueueClosedError,
)


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser; flags override environment settings."""
    parser = argparse.ArgumentParser(
        prog="dsync",
        description="Ingest the event feed into a local SQLite store.",
    )
    parser.add_argument("--db-path", type=Path, help="SQLite database file.")
    parser.add_argument("--workers", type=int, help="Number of partitions.")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Root log level.",
    )
    return parser


def apply_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    """Return settings with any CLI flags applied."""
    if args.db_path is not None:
        settings = replace(settings, db_path=args.db_path)
    if args.workers is not None:
        if args.workers < 1:
            raise SettingsValidationError.for_invalid_number(
                "--workers",
                str(args.workers),
                "a positive integer",
            )
        settings = replace(settings, worker_count=args.workers)
    if args.log_level is not None:
        settings = replace(settings, log_level=args.log_level)
    return settings


async def run_ingestion(settings: AppSettings) -> IngestionReport:
    """Wire storage and transport, run the orchestrator and release resources."""
    shutdown = asyncio.Event()
    _install_signal_handlers(shutdown)

    runtime = create_storage_runtime(settings)
    writer_queue = WriterQueue()
    try:
        await create_schema(runtime)
        events = EventsRepository(
            read_session_factory=runtime.read_session_factory,
            write_session_factory=runtime.write_session_factory,
        )
        checkpoints = CheckpointsRepository(
            read_session_factory=runtime.read_session_factory,
            write_session_factory=runtime.write_session_factory,
        )
        sink = QueuedEventSink(writer_queue=writer_queue, repository=events)
        async with HttpFeedClient(
            base_url=settings.api_base_url,
            api_key=settings.api_key,
            timeout_seconds=settings.request_timeout_seconds,
        ) as client:
            orchestrator = IngestionOrchestrator(
                settings=settings,
                feed_client=client,
                credential_client=client,
                sink=sink,
                checkpoints=QueuedCheckpointStore(
                    writer_queue=writer_queue,
                    repository=checkpoints,
                ),
                counter=sink,
                shutdown=shutdown,
            )
            report = await orchestrator.run()
    finally:
        await writer_queue.close()
        await dispose_storage_runtime(runtime)

    if report.failed_workers:
        logger.warning("Workers failed: %s", report.failed_workers)
    return report


def main(argv: Sequence[str] | None = None) -> int:
    """Run one ingestion pass; return a process exit code."""
    args = build_parser().parse_args(argv)
    try:
        settings = apply_overrides(load_settings(), args)
    except SettingsValidationError as exc:
        _ = sys.stderr.write(f"{exc}\n")
        return 1
    init_logging(settings.log_level)

    try:
        _ = asyncio.run(run_ingestion(settings))
    except ABORT_ERRORS:
        logger.exception("Ingestion aborted")
        return 1
    _ = sys.stdout.write(f"{COMPLETION_MESSAGE}\n")
    return 0


def _install_signal_handlers(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(signame: str) -> None:
        logger.info("%s received, finishing current pages before exit", signame)
        shutdown.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_shutdown, signum.name)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s unavailable", signum.name)
