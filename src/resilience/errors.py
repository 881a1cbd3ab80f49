"""Error taxonomy for the failure-mode resilience layer.

Every exception carries a short, user-safe message as ``str(exc)``. Backend
details (HTTP status, PostgREST error code, raw message) live on attributes
so they can be logged without reaching the caller.

``classify_response`` and ``classify_transport_error`` map transport-specific
shapes onto the taxonomy; ``is_retryable`` is the single predicate the retry
and fallback logic consults.
"""

from datetime import datetime

import httpx

# PostgREST error codes with special meaning
PGRST_TIMEOUT = "PGRST301"
PGRST_NOT_FOUND = "PGRST116"

SEARCH_UNAVAILABLE_MESSAGE = "Search temporarily unavailable. Please try again."


class FailureModeError(Exception):
    """Base class for all errors raised by the failure-mode layer."""


class RateLimitExceeded(FailureModeError):
    """Admission denied by the rate limiter. Never retried automatically."""

    def __init__(self, remaining: int, reset_time: float) -> None:
        self.remaining = remaining
        self.reset_time = reset_time
        reset_at = datetime.fromtimestamp(reset_time).strftime("%H:%M:%S")
        super().__init__(f"Rate limit exceeded. {remaining} requests remaining. Resets at {reset_at}")


class RemoteError(FailureModeError):
    """A remote table query failed."""

    def __init__(
        self,
        message: str = "Failed to fetch failure modes",
        *,
        status: int | None = None,
        code: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.status = status
        self.code = code
        self.detail = detail
        super().__init__(message)


class TransientRemoteError(RemoteError):
    """Retryable failure: network error, timeout, 5xx, 429 or backend timeout code."""


class PermanentRemoteError(RemoteError):
    """Non-retryable failure: 4xx other than 429, malformed query or response."""


class SearchUnavailable(FailureModeError):
    """Search failed after exhausting retries and fallbacks."""

    def __init__(self, message: str = SEARCH_UNAVAILABLE_MESSAGE) -> None:
        super().__init__(message)


class StorageError(FailureModeError):
    """Base class for local persistent store failures."""


class StorageUnavailable(StorageError):
    """The local store cannot be opened or read."""


class StorageWriteError(StorageError):
    """A write or clear against the local store failed."""


def _is_transient_status(status: int) -> bool:
    return 500 <= status < 600 or status == 429


def classify_response(
    status: int,
    body: object,
    message: str = "Failed to fetch failure modes",
) -> RemoteError:
    """Build the RemoteError subclass matching an error response.

    Args:
        status: HTTP status code of the response.
        body: Decoded JSON body (PostgREST returns ``{code, message, details, hint}``)
              or None when the body is not JSON.
        message: User-safe message for the resulting exception.
    """
    code: str | None = None
    detail: str | None = None
    if isinstance(body, dict):
        raw_code = body.get("code")
        code = str(raw_code) if raw_code is not None else None
        raw_detail = body.get("message")
        detail = str(raw_detail) if raw_detail is not None else None

    if _is_transient_status(status) or code == PGRST_TIMEOUT:
        return TransientRemoteError(message, status=status, code=code, detail=detail)
    return PermanentRemoteError(message, status=status, code=code, detail=detail)


def classify_transport_error(
    exc: httpx.HTTPError,
    message: str = "Failed to fetch failure modes",
) -> RemoteError:
    """Map an httpx exception raised before a response arrived."""
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(exc.response.status_code, None, message)
    if isinstance(exc, httpx.TransportError):
        return TransientRemoteError(message, detail=str(exc) or type(exc).__name__)
    return PermanentRemoteError(message, detail=str(exc) or type(exc).__name__)


def is_retryable(exc: BaseException) -> bool:
    """Return True if the error is worth another attempt."""
    if isinstance(exc, TransientRemoteError):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_transient_status(exc.response.status_code)
    return False
