"""Tests for the command-line entry point."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from aiohttp import test_utils, web
from sqlalchemy.exc import OperationalError

from dsync import cli
from dsync.cli import apply_overrides, build_parser, main, run_ingestion
from dsync.config.settings import SettingsValidationError, load_settings
from dsync.storage import (
    CheckpointsRepository,
    EventsRepository,
    EventsRepositoryError,
    create_storage_runtime,
    dispose_storage_runtime,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

API_KEY = "cli-key"
EVENTS_PER_CURSOR = 5


async def _events(request: web.Request) -> web.StreamResponse:
    if request.headers.get("X-API-Key") != API_KEY:
        return web.Response(status=401, text="missing key")
    prefix = request.query.get("cursor", "head")
    return web.json_response(
        {
            "data": [
                {"id": f"{prefix}-{index}", "timestamp": 1_700_000_000_000 + index}
                for index in range(EVENTS_PER_CURSOR)
            ],
            "pagination": {"hasMore": False},
        },
    )


async def _no_stream_access(_request: web.Request) -> web.StreamResponse:
    return web.Response(status=404, text="not here")


@pytest.fixture
async def feed_server() -> AsyncIterator[test_utils.TestServer]:
    """Serve one final page per cursor and no privileged access."""
    app = web.Application()
    _ = app.router.add_get("/api/v1/events", _events)
    _ = app.router.add_post("/internal/dashboard/stream-access", _no_stream_access)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def test_apply_overrides_replaces_only_given_flags(tmp_path: Path) -> None:
    """Ensure CLI flags win over environment values they name."""
    settings = load_settings({"DSYNC_WORKER_COUNT": "8"})
    args = build_parser().parse_args(
        ["--db-path", (tmp_path / "x.db").as_posix(), "--log-level", "DEBUG"],
    )

    updated = apply_overrides(settings, args)

    if updated.db_path != tmp_path / "x.db" or updated.log_level != "DEBUG":
        raise AssertionError
    if updated.worker_count != 8:  # noqa: PLR2004
        raise AssertionError


def test_apply_overrides_rejects_non_positive_workers() -> None:
    """Ensure a zero worker count is a validation error."""
    args = build_parser().parse_args(["--workers", "0"])

    with pytest.raises(SettingsValidationError, match="--workers"):
        _ = apply_overrides(load_settings({}), args)


def test_main_reports_invalid_environment(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure invalid settings exit with status 1 before any work starts."""
    monkeypatch.setenv("DSYNC_PAGE_SIZE", "lots")

    if main([]) != 1:
        raise AssertionError
    if "DSYNC_PAGE_SIZE" not in capsys.readouterr().err:
        raise AssertionError


@pytest.mark.parametrize(
    "error",
    [
        OperationalError("INSERT INTO ingested_events", {}, Exception("disk I/O error")),
        OSError(28, "No space left on device"),
        EventsRepositoryError("insert failed"),
    ],
)
def test_main_exits_with_failure_on_storage_error(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    tmp_path: Path,
    error: Exception,
) -> None:
    """Ensure storage failures end the pass with status 1 and no completion line."""
    monkeypatch.setenv("DSYNC_DB_PATH", (tmp_path / "cli.db").as_posix())

    async def _fail(_settings: object) -> None:
        await asyncio.sleep(0)
        raise error

    monkeypatch.setattr(cli, "run_ingestion", _fail)

    if main([]) != 1:
        raise AssertionError
    if cli.COMPLETION_MESSAGE in capsys.readouterr().out:
        raise AssertionError


@pytest.mark.asyncio
async def test_run_ingestion_fills_store_from_http_feed(
    feed_server: test_utils.TestServer,
    tmp_path: Path,
) -> None:
    """Ensure a full pass over HTTP lands every partition's events in SQLite."""
    settings = load_settings(
        {
            "DSYNC_DB_PATH": (tmp_path / "cli.db").as_posix(),
            "DSYNC_API_BASE_URL": str(feed_server.make_url("")),
            "DSYNC_API_KEY": API_KEY,
            "DSYNC_WORKER_COUNT": "2",
            "DSYNC_TOTAL_EVENTS": str(2 * EVENTS_PER_CURSOR),
            "DSYNC_MAX_RETRIES": "1",
            "DSYNC_RATE_PER_SECOND": "1000",
            "DSYNC_RATE_BURST": "1000",
            "DSYNC_WORKER_STAGGER_SECONDS": "0",
            "DSYNC_PROGRESS_INTERVAL_SECONDS": "60",
        },
    )

    report = await run_ingestion(settings)

    if not report.target_reached or report.failed_workers:
        raise AssertionError
    runtime = create_storage_runtime(settings)
    try:
        events = EventsRepository(
            read_session_factory=runtime.read_session_factory,
            write_session_factory=runtime.write_session_factory,
        )
        checkpoints = CheckpointsRepository(
            read_session_factory=runtime.read_session_factory,
            write_session_factory=runtime.write_session_factory,
        )
        if await events.count_events() != 2 * EVENTS_PER_CURSOR:
            raise AssertionError
        stored = await checkpoints.list_checkpoints()
        if sorted(stored) != [0, 1] or not all(c.is_completed for c in stored.values()):
            raise AssertionError
    finally:
        await dispose_storage_runtime(runtime)
