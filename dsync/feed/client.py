"""aiohttp transport for the paginated event feed and credential endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from http import HTTPStatus
from typing import TYPE_CHECKING, Protocol, Self, cast

import aiohttp

from dsync.feed.errors import (
    AuthExpiredError,
    CursorExpiredError,
    MalformedResponseError,
    RateLimitedError,
    TransportError,
)
from dsync.feed.records import FeedPage, parse_page

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

STANDARD_EVENTS_PATH = "/api/v1/events"
CREDENTIAL_PATH = "/internal/dashboard/stream-access"
API_KEY_HEADER = "X-API-Key"
DEFAULT_TOKEN_HEADER = "X-Stream-Token"  # noqa: S105
CURSOR_EXPIRED_MARKERS: tuple[str, ...] = ("CURSOR_EXPIRED", "Cursor expired")


@dataclass(slots=True, frozen=True)
class Credential:
    """Privileged feed access grant; replaced wholesale on every refresh."""

    endpoint: str
    token: str
    token_header: str
    expires_in_seconds: int
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class FeedClient(Protocol):
    """Page retrieval surface consumed by the ingestion engine."""

    async def fetch_page(
        self,
        *,
        cursor: str | None,
        limit: int,
        credential: Credential | None = None,
    ) -> FeedPage:
        """Return one feed page or raise a typed feed error."""
        ...


class CredentialClient(Protocol):
    """Outbound call that obtains a fresh privileged credential."""

    async def request_credential(self) -> Credential:
        """Request a new credential or raise a typed feed error."""
        ...


class HttpFeedClient:
    """Feed and credential client backed by one shared aiohttp session."""

    _base_url: str
    _api_key: str
    _timeout_seconds: float
    _session: aiohttp.ClientSession | None
    _owns_session: bool

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Create client; a session is opened lazily unless one is supplied."""
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> Self:
        """Open the HTTP session."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the HTTP session."""
        await self.close()

    async def start(self) -> None:
        """Create the HTTP session when one is not already open."""
        if self._session is not None:
            return
        connector = aiohttp.TCPConnector(
            limit=100,
            ttl_dns_cache=300,
            keepalive_timeout=60,
        )
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            headers={"Accept-Encoding": "gzip"},
        )
        self._owns_session = True
        logger.debug("Feed HTTP session created (base=%s)", self._base_url)

    async def close(self) -> None:
        """Close the HTTP session if this client opened it."""
        session = self._session
        self._session = None
        if session is not None and self._owns_session:
            await session.close()

    async def fetch_page(
        self,
        *,
        cursor: str | None,
        limit: int,
        credential: Credential | None = None,
    ) -> FeedPage:
        """Fetch one page from the privileged or standard endpoint."""
        headers = {API_KEY_HEADER: self._api_key}
        if credential is not None:
            url = f"{self._base_url}{credential.endpoint}"
            headers[credential.token_header] = credential.token
        else:
            url = f"{self._base_url}{STANDARD_EVENTS_PATH}"
        params: dict[str, str] = {"limit": str(limit)}
        if cursor:
            params["cursor"] = cursor

        session = await self._ensure_session()
        try:
            async with session.get(url, params=params, headers=headers) as response:
                await _raise_for_feed_status(response)
                payload = await _read_json(response)
        except aiohttp.ClientError as exc:
            raise TransportError.for_exception(exc) from exc
        except TimeoutError as exc:
            raise TransportError.for_exception(exc) from exc
        return parse_page(payload)

    async def request_credential(self) -> Credential:
        """Request a privileged stream credential."""
        url = f"{self._base_url}{CREDENTIAL_PATH}"
        headers = {
            API_KEY_HEADER: self._api_key,
            "Content-Type": "application/json",
        }
        session = await self._ensure_session()
        try:
            async with session.post(url, headers=headers) as response:
                if response.status != HTTPStatus.OK:
                    body = await response.text()
                    raise TransportError.for_status(status=response.status, body=body)
                payload = await _read_json(response)
        except aiohttp.ClientError as exc:
            raise TransportError.for_exception(exc) from exc
        except TimeoutError as exc:
            raise TransportError.for_exception(exc) from exc
        return parse_credential(payload)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            await self.start()
        return cast("aiohttp.ClientSession", self._session)


def parse_credential(payload: object) -> Credential:
    """Decode a credential response, accepting a `streamAccess` wrapper."""
    if isinstance(payload, dict) and isinstance(payload.get("streamAccess"), dict):
        payload = payload["streamAccess"]
    if not isinstance(payload, dict):
        raise MalformedResponseError.from_details(
            details="credential body must be an object",
        )
    access = cast("dict[str, object]", payload)
    endpoint = access.get("endpoint")
    token = access.get("token")
    if not isinstance(endpoint, str) or not endpoint:
        raise MalformedResponseError.from_details(
            details="credential missing `endpoint`",
        )
    if not isinstance(token, str) or not token:
        raise MalformedResponseError.from_details(details="credential missing `token`")
    token_header = access.get("tokenHeader")
    expires_in = access.get("expiresIn")
    return Credential(
        endpoint=endpoint if endpoint.startswith("/") else f"/{endpoint}",
        token=token,
        token_header=(
            token_header
            if isinstance(token_header, str) and token_header
            else DEFAULT_TOKEN_HEADER
        ),
        expires_in_seconds=expires_in if isinstance(expires_in, int) else 0,
    )


async def _raise_for_feed_status(response: aiohttp.ClientResponse) -> None:
    status = response.status
    if status == HTTPStatus.OK:
        return
    if status == HTTPStatus.TOO_MANY_REQUESTS:
        raise RateLimitedError.from_header(response.headers.get("Retry-After"))
    if status == HTTPStatus.FORBIDDEN:
        raise AuthExpiredError.default_message()
    body = await response.text()
    if status == HTTPStatus.BAD_REQUEST and any(
        marker in body for marker in CURSOR_EXPIRED_MARKERS
    ):
        raise CursorExpiredError.default_message()
    raise TransportError.for_status(status=status, body=body)


async def _read_json(response: aiohttp.ClientResponse) -> object:
    try:
        return cast("object", await response.json(content_type=None))
    except (aiohttp.ContentTypeError, ValueError) as exc:
        raise MalformedResponseError.from_details(details=str(exc)) from exc

