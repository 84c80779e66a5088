"""Tests for the aiohttp feed transport against a local test server."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from aiohttp import test_utils, web

from dsync.feed.client import HttpFeedClient, parse_credential
from dsync.feed.errors import (
    MAX_RETRY_AFTER_SECONDS,
    AuthExpiredError,
    CursorExpiredError,
    MalformedResponseError,
    RateLimitedError,
    TransportError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

API_KEY = "test-key"
STREAM_TOKEN = "stream-token"
EXPECTED_RETRY_AFTER = 7.0
PAGE_LIMIT = 25
SERVER_ERROR_STATUS = 500


async def _events(request: web.Request) -> web.StreamResponse:
    if request.headers.get("X-API-Key") != API_KEY:
        return web.Response(status=401, text="missing key")
    cursor = request.query.get("cursor")
    if cursor == "rate":
        return web.Response(status=429, headers={"Retry-After": "7"})
    if cursor == "rate-inf":
        return web.Response(status=429, headers={"Retry-After": "inf"})
    if cursor == "forbid":
        return web.Response(status=403, text="forbidden")
    if cursor == "expired":
        return web.json_response(
            {"error": "CURSOR_EXPIRED", "message": "Cursor expired"},
            status=400,
        )
    if cursor == "bad-request":
        return web.json_response({"error": "INVALID_LIMIT"}, status=400)
    if cursor == "boom":
        return web.Response(status=500, text="internal")
    if cursor == "garbage":
        return web.Response(status=200, text="<html>not json</html>")
    return web.json_response(
        {
            "data": [{"id": "e1"}, {"id": "e2"}],
            "pagination": {
                "hasMore": True,
                "nextCursor": "c2",
                "limit": int(request.query.get("limit", "0")),
            },
        },
    )


async def _stream_events(request: web.Request) -> web.StreamResponse:
    if request.headers.get("X-Stream-Token") != STREAM_TOKEN:
        return web.Response(status=403)
    return web.json_response({"data": [{"id": "p1"}], "pagination": {"hasMore": False}})


async def _stream_access(request: web.Request) -> web.StreamResponse:
    if request.headers.get("X-API-Key") != API_KEY:
        return web.Response(status=401, text="missing key")
    return web.json_response(
        {
            "streamAccess": {
                "endpoint": "/stream/events",
                "token": STREAM_TOKEN,
                "expiresIn": 300,
                "tokenHeader": "X-Stream-Token",
            },
        },
    )


@pytest.fixture
async def feed_server() -> AsyncIterator[test_utils.TestServer]:
    """Serve the standard, privileged and credential endpoints locally."""
    app = web.Application()
    _ = app.router.add_get("/api/v1/events", _events)
    _ = app.router.add_get("/stream/events", _stream_events)
    _ = app.router.add_post("/internal/dashboard/stream-access", _stream_access)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


@pytest.fixture
async def feed_client(feed_server: test_utils.TestServer) -> AsyncIterator[HttpFeedClient]:
    """Feed client bound to the local test server."""
    base_url = str(feed_server.make_url("/"))
    async with HttpFeedClient(base_url=base_url, api_key=API_KEY) as client:
        yield client


@pytest.mark.asyncio
async def test_fetch_page_decodes_standard_endpoint(feed_client: HttpFeedClient) -> None:
    """Ensure a 200 body from the standard endpoint decodes into a page."""
    page = await feed_client.fetch_page(cursor=None, limit=PAGE_LIMIT)

    if [event["id"] for event in page.events] != ["e1", "e2"]:
        raise AssertionError
    if not page.has_more or page.next_cursor != "c2":
        raise AssertionError


@pytest.mark.asyncio
async def test_fetch_page_uses_privileged_credential(feed_client: HttpFeedClient) -> None:
    """Ensure credentials route requests to their endpoint with the token header."""
    credential = await feed_client.request_credential()
    page = await feed_client.fetch_page(cursor=None, limit=10, credential=credential)

    if credential.token != STREAM_TOKEN or credential.endpoint != "/stream/events":
        raise AssertionError
    if [event["id"] for event in page.events] != ["p1"]:
        raise AssertionError


@pytest.mark.asyncio
async def test_rate_limited_response_carries_retry_after(
    feed_client: HttpFeedClient,
) -> None:
    """Ensure 429 maps to RateLimitedError with the parsed header."""
    with pytest.raises(RateLimitedError) as exc_info:
        _ = await feed_client.fetch_page(cursor="rate", limit=10)

    if exc_info.value.retry_after != EXPECTED_RETRY_AFTER:
        raise AssertionError


@pytest.mark.asyncio
async def test_non_finite_retry_after_header_is_ignored(
    feed_client: HttpFeedClient,
) -> None:
    """Ensure an infinite Retry-After leaves the wait to the default."""
    with pytest.raises(RateLimitedError) as exc_info:
        _ = await feed_client.fetch_page(cursor="rate-inf", limit=10)

    if exc_info.value.retry_after is not None:
        raise AssertionError


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("7", 7.0),
        (" 2.5 ", 2.5),
        ("nan", None),
        ("-inf", None),
        ("-3", None),
        ("soon", None),
        (None, None),
        ("1e9", MAX_RETRY_AFTER_SECONDS),
    ],
)
def test_retry_after_header_is_finite_and_capped(
    header: str | None,
    expected: float | None,
) -> None:
    """Ensure only finite non-negative hints survive, capped at the ceiling."""
    if RateLimitedError.from_header(header).retry_after != expected:
        raise AssertionError


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("cursor", "error_type"),
    [
        ("forbid", AuthExpiredError),
        ("expired", CursorExpiredError),
        ("bad-request", TransportError),
        ("boom", TransportError),
        ("garbage", MalformedResponseError),
    ],
)
async def test_fetch_page_maps_statuses_to_error_taxonomy(
    feed_client: HttpFeedClient,
    cursor: str,
    error_type: type[Exception],
) -> None:
    """Ensure every non-success answer surfaces as its typed feed error."""
    with pytest.raises(error_type):
        _ = await feed_client.fetch_page(cursor=cursor, limit=10)


@pytest.mark.asyncio
async def test_unexpected_status_keeps_http_status(feed_client: HttpFeedClient) -> None:
    """Ensure transport errors expose the status code."""
    with pytest.raises(TransportError) as exc_info:
        _ = await feed_client.fetch_page(cursor="boom", limit=10)

    if exc_info.value.status != SERVER_ERROR_STATUS:
        raise AssertionError


@pytest.mark.asyncio
async def test_connection_failure_maps_to_transport_error(
    feed_server: test_utils.TestServer,
) -> None:
    """Ensure refused connections surface as TransportError."""
    base_url = str(feed_server.make_url("/"))
    await feed_server.close()

    async with HttpFeedClient(base_url=base_url, api_key=API_KEY) as client:
        with pytest.raises(TransportError, match="Request failed"):
            _ = await client.fetch_page(cursor=None, limit=10)


def test_parse_credential_accepts_unwrapped_body_and_defaults_header() -> None:
    """Ensure bare credential objects decode and get the default token header."""
    credential = parse_credential({"endpoint": "stream/events", "token": "t"})

    if credential.endpoint != "/stream/events":
        raise AssertionError
    if credential.token_header != "X-Stream-Token":  # noqa: S105
        raise AssertionError


def test_parse_credential_rejects_missing_token() -> None:
    """Ensure incomplete credential bodies are malformed."""
    with pytest.raises(MalformedResponseError, match="missing `token`"):
        _ = parse_credential({"streamAccess": {"endpoint": "/x"}})
