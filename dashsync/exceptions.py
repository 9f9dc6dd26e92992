"""
Error Taxonomy

Errors raised by the sync layer and the classifiers that decide whether a
loader failure is worth retrying.

Transient failures (network unreachable, timeouts, connection resets) are
retried by the RetryExecutor. Permanent failures (authorization, validation)
surface immediately and are recorded on the cache entry.
"""

from __future__ import annotations

import asyncio

import httpx
import redis.exceptions


class SyncError(Exception):
    """Base exception for the sync layer."""

    pass


class TransientError(SyncError):
    """A failure that is expected to clear up on its own."""

    pass


class NetworkUnavailableError(TransientError):
    """The remote store could not be reached."""

    pass


class RequestTimeoutError(TransientError):
    """The remote store did not answer in time."""

    pass


class PermanentError(SyncError):
    """A failure that retrying cannot fix."""

    pass


class AuthorizationError(PermanentError):
    """The session is not allowed to read the requested data."""

    pass


class DataValidationError(PermanentError):
    """A request or change message was rejected as malformed."""

    pass


class SchedulerClosedError(SyncError):
    """Raised when work is submitted to a closed invalidation scheduler."""

    pass


class SessionClosedError(SyncError):
    """Raised when a closed sync session is used."""

    pass


# Exception types that always indicate a transient condition
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)

# Message fragments of errors raised by clients without a typed hierarchy
TRANSIENT_SIGNATURES = ("network", "timeout", "timed out", "connection", "offline", "unreachable")
PERMISSION_SIGNATURES = ("permission", "unauthorized", "forbidden", "access denied")
VALIDATION_SIGNATURES = ("invalid", "required", "duplicate", "constraint")


def _message(exc: BaseException) -> str:
    return str(exc).lower()


def is_permanent_error(exc: BaseException) -> bool:
    """Check whether an error is an authorization or validation failure."""
    if isinstance(exc, PermanentError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (400, 401, 403, 404, 409, 422)

    message = _message(exc)
    return any(s in message for s in PERMISSION_SIGNATURES + VALIDATION_SIGNATURES)


def is_transient_error(exc: BaseException) -> bool:
    """
    Default retry predicate.

    Matches the recognized transient-failure signatures: network
    unreachability, timeouts and connection resets, either by exception
    type or by message for untyped client errors. Permanent failures never
    match, even if their message mentions the network.
    """
    if isinstance(exc, PermanentError):
        return False
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (408, 429, 502, 503, 504)
    if is_permanent_error(exc):
        return False

    message = _message(exc)
    return any(s in message for s in TRANSIENT_SIGNATURES)
