"""Error taxonomy for the BigQuery write path.

Every remote failure ends up as one of:
- RetryableError: the condition should clear if the same chunk is re-delivered.
- UnretryableError: permanent; the caller must not re-deliver the chunk.
- ConfigError: static configuration is wrong; fatal.
- TableAutoCreatedError: the destination table was just created, re-deliver later.

A request that never got an HTTP answer (RemoteTransportError) is retryable.

The classifier functions here are the only place that decides retry eligibility.
"""

from __future__ import annotations

from enum import Enum


class ErrorClassification(str, Enum):
    """How a failure should be treated by the caller."""

    retryable = "retryable"
    unretryable = "unretryable"
    config_error = "config_error"


# Reasons for tables.insert / jobs.insert / job error results.
RETRYABLE_ERROR_REASONS = frozenset(
    {"backendError", "internalError", "rateLimitExceeded", "tableUnavailable"}
)

# Reasons reported per row by tabledata.insertAll.
RETRYABLE_INSERT_ERROR_REASONS = frozenset(
    {"timeout", "backendError", "internalError", "rateLimitExceeded"}
)

RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


class RemoteServiceError(Exception):
    """Structured failure raised by a remote BigQuery service call."""

    def __init__(self, message: str, *, status_code: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status_code={self.status_code!r}, reason={self.reason!r}, message={self.message!r})"


class RemoteTransportError(RemoteServiceError):
    """The request got no HTTP answer (timeout, connection reset, DNS failure...)."""


class BigQueryWriterError(Exception):
    """Base class for errors surfaced by the writer."""

    retryable = False

    def __init__(self, message: str | None = None, cause: RemoteServiceError | None = None) -> None:
        if message is None:
            message = cause.message if cause is not None else self.__class__.__name__
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def status_code(self) -> int | None:
        return self.cause.status_code if self.cause is not None else None

    @property
    def reason(self) -> str | None:
        return self.cause.reason if self.cause is not None else None


class ConfigError(BigQueryWriterError):
    """Invalid static configuration (unknown auth method, unreadable key...)."""


class RetryableError(BigQueryWriterError):
    retryable = True


class UnretryableError(BigQueryWriterError):
    pass


class TableAutoCreatedError(BigQueryWriterError):
    """The destination table was missing and has just been created.

    Not a malfunction, but the chunk was not written: re-deliver it.
    """

    retryable = True


def is_retryable_error_reason(reason: str | None) -> bool:
    return reason in RETRYABLE_ERROR_REASONS


def is_retryable_insert_error_reason(reason: str | None) -> bool:
    return reason in RETRYABLE_INSERT_ERROR_REASONS


def classify(status_code: int | None, reason: str | None) -> ErrorClassification:
    """Classify a table/job level failure by HTTP status and service reason.

    A known transient reason is retryable regardless of status. Without one, a
    5xx gateway/server status is still worth retrying. Anything else is not.
    """
    if is_retryable_error_reason(reason):
        return ErrorClassification.retryable
    if status_code in RETRYABLE_STATUS_CODES:
        return ErrorClassification.retryable
    return ErrorClassification.unretryable


def classify_insert_error_reason(reason: str | None) -> ErrorClassification:
    """Classify one per-row error reason from a streaming insert response."""
    if is_retryable_insert_error_reason(reason):
        return ErrorClassification.retryable
    return ErrorClassification.unretryable


def wrap(error: RemoteServiceError, message: str | None = None, *, force_unretryable: bool = False) -> BigQueryWriterError:
    """Turn a remote failure into the matching writer error."""
    if force_unretryable:
        return UnretryableError(message, error)
    if isinstance(error, RemoteTransportError):
        return RetryableError(message, error)
    if classify(error.status_code, error.reason) is ErrorClassification.retryable:
        return RetryableError(message, error)
    return UnretryableError(message, error)
