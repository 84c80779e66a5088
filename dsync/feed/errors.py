"""Error taxonomy for feed transport and page retrieval."""

from __future__ import annotations

import math

# Longest server-provided Retry-After honored before retrying.
MAX_RETRY_AFTER_SECONDS = 300.0


class FeedError(RuntimeError):
    """Base exception for paginated feed and credential operations."""


class TransportError(FeedError):
    """Raised for network failures and unexpected HTTP statuses."""

    status: int | None

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Create transport error with optional HTTP status."""
        super().__init__(message)
        self.status = status

    @classmethod
    def for_status(cls, *, status: int, body: str) -> TransportError:
        """Build deterministic error for unexpected HTTP status codes."""
        return cls(f"HTTP {status}: {_truncate(body)}", status=status)

    @classmethod
    def for_exception(cls, exc: BaseException) -> TransportError:
        """Build error wrapping a client/connection failure."""
        return cls(f"Request failed: {type(exc).__name__}: {exc}")


class RateLimitedError(FeedError):
    """Raised when the feed answers 429 Too Many Requests."""

    retry_after: float | None

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        """Create rate-limit error with the server-provided wait hint."""
        super().__init__(message)
        self.retry_after = retry_after

    @classmethod
    def from_header(cls, value: str | None) -> RateLimitedError:
        """Build error from a raw Retry-After header value."""
        retry_after: float | None = None
        if value is not None:
            try:
                parsed = float(value.strip())
            except ValueError:
                parsed = -1.0
            if math.isfinite(parsed) and parsed >= 0:
                retry_after = min(parsed, MAX_RETRY_AFTER_SECONDS)
        return cls(
            f"Rate limited (Retry-After={value or 'none'})",
            retry_after=retry_after,
        )


class AuthExpiredError(FeedError):
    """Raised when the feed rejects the request as forbidden."""

    @classmethod
    def default_message(cls) -> AuthExpiredError:
        """Build deterministic error for forbidden responses."""
        return cls("HTTP 403: access token rejected")


class CursorExpiredError(FeedError):
    """Raised when the feed reports the pagination cursor as expired."""

    @classmethod
    def default_message(cls) -> CursorExpiredError:
        """Build deterministic error for expired cursor responses."""
        return cls("Pagination cursor expired")


class MalformedResponseError(FeedError):
    """Raised when a response body cannot be decoded into a feed page."""

    @classmethod
    def from_details(cls, *, details: str) -> MalformedResponseError:
        """Build deterministic decode error message."""
        return cls(f"Malformed feed response: {details}")


class ExhaustedRetriesError(FeedError):
    """Raised when an operation keeps failing after its retry budget."""

    @classmethod
    def for_operation(
        cls,
        *,
        operation: str,
        attempts: int,
        last_error: BaseException | None,
    ) -> ExhaustedRetriesError:
        """Build deterministic error naming the operation and last failure."""
        detail = f": {last_error}" if last_error is not None else ""
        return cls(f"{operation} failed after {attempts} attempts{detail}")


def _truncate(body: str, limit: int = 200) -> str:
    body = body.strip()
    if len(body) <= limit:
        return body
    return f"{body[:limit]}..."
