from __future__ import annotations

import asyncio
from enum import Enum

import asyncpg  # type: ignore[import-untyped]
import httpx


class ErrorKind(str, Enum):
    POISON = "poison"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    THROTTLED = "throttled"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = {
    ErrorKind.TRANSIENT,
    ErrorKind.THROTTLED,
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.UNKNOWN,
}


class JobError(Exception):
    """Base job error carrying a structured kind."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class PoisonMessageError(JobError):
    """Raised when a queue message cannot become a valid envelope."""

    kind = ErrorKind.POISON


class JobValidationError(JobError):
    """Raised for schema or business-rule failures; never retried."""

    kind = ErrorKind.VALIDATION


class JobNotFoundError(JobError):
    """Raised when the entity a job references does not exist."""

    kind = ErrorKind.NOT_FOUND


class TransientJobError(JobError):
    """Raised for failures that are expected to clear on retry."""

    kind = ErrorKind.TRANSIENT


_RETRYABLE_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)

_RETRYABLE_FRAGMENTS = (
    "rate limit",
    "throttl",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "temporar",
    "try again",
    "500",
    "502",
    "503",
    "504",
    "overloaded",
    "capacity",
)
_NON_RETRYABLE_FRAGMENTS = ("validation", "invalid")


def classify_error(exc: BaseException) -> ErrorKind:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind) and kind is not ErrorKind.UNKNOWN:
        return kind

    if isinstance(exc, _RETRYABLE_EXCEPTION_TYPES):
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return ErrorKind.TIMEOUT
        if isinstance(exc, (ConnectionError, httpx.TransportError, asyncpg.exceptions.PostgresConnectionError)):
            return ErrorKind.NETWORK
        return ErrorKind.TRANSIENT

    # Substring matching only covers integrations that do not report a kind yet.
    message = str(exc).lower()
    code = str(getattr(exc, "code", "") or type(exc).__name__)
    if "throttl" in code.lower() or "rate limit" in message or "throttl" in message:
        return ErrorKind.THROTTLED
    if "ECONNRESET" in code or "ETIMEDOUT" in code:
        return ErrorKind.NETWORK
    if any(fragment in message for fragment in _RETRYABLE_FRAGMENTS):
        return ErrorKind.TRANSIENT
    if any(fragment in message for fragment in _NON_RETRYABLE_FRAGMENTS):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN
