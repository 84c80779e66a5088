"""Feed transport, cursor codec and record normalization."""

from .client import (
    CREDENTIAL_PATH,
    DEFAULT_TOKEN_HEADER,
    STANDARD_EVENTS_PATH,
    Credential,
    CredentialClient,
    FeedClient,
    HttpFeedClient,
    parse_credential,
)
from .cursor import (
    CURSOR_FORMAT_VERSION,
    CursorFormatError,
    CursorPosition,
    decode_cursor,
    fabricate_cursor,
)
from .errors import (
    AuthExpiredError,
    CursorExpiredError,
    ExhaustedRetriesError,
    FeedError,
    MalformedResponseError,
    RateLimitedError,
    TransportError,
)
from .records import (
    EventRecord,
    EventRow,
    EventRowError,
    FeedPage,
    parse_page,
    to_event_row,
    to_event_rows,
)
from .timestamps import normalize_timestamp, timestamp_ms

__all__ = [
    "CREDENTIAL_PATH",
    "CURSOR_FORMAT_VERSION",
    "DEFAULT_TOKEN_HEADER",
    "STANDARD_EVENTS_PATH",
    "AuthExpiredError",
    "Credential",
    "CredentialClient",
    "CursorExpiredError",
    "CursorFormatError",
    "CursorPosition",
    "EventRecord",
    "EventRow",
    "EventRowError",
    "ExhaustedRetriesError",
    "FeedClient",
    "FeedError",
    "FeedPage",
    "HttpFeedClient",
    "MalformedResponseError",
    "RateLimitedError",
    "TransportError",
    "decode_cursor",
    "fabricate_cursor",
    "normalize_timestamp",
    "parse_credential",
    "parse_page",
    "timestamp_ms",
    "to_event_row",
    "to_event_rows",
]
