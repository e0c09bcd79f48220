from __future__ import annotations

import logging
from typing import Literal

logger = logging.getLogger(__name__)

FailureDisposition = Literal["terminal", "retryable", "soft_success", "conflict"]


class IngestionError(Exception):
    """Base error for everything that can go wrong while ingesting a profile page."""

    code = "INGESTION_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidUrlError(IngestionError):
    """Raised when a URL cannot be parsed or uses an unsupported scheme."""

    code = "INVALID_URL"


class InvalidHostError(IngestionError):
    """Raised when a URL (or a redirect hop) leaves the strategy's host allowlist."""

    code = "INVALID_HOST"


class InvalidHandleError(IngestionError):
    """Raised when the profile handle in a URL does not match the platform's rules."""

    code = "INVALID_HANDLE"


class FetchTimeoutError(IngestionError):
    code = "FETCH_TIMEOUT"


class FetchFailedError(IngestionError):
    """Raised for network errors, 5xx responses, oversized bodies and redirect failures."""

    code = "FETCH_FAILED"


class RateLimitedError(IngestionError):
    code = "RATE_LIMITED"


class NotFoundError(IngestionError):
    code = "NOT_FOUND"


class ParseError(IngestionError):
    """Raised when a fetched document holds nothing usable."""

    code = "PARSE_ERROR"


class EmptyResponseError(IngestionError):
    code = "EMPTY_RESPONSE"


class MergeConflictError(IngestionError):
    """Raised when the merge transaction loses a serialization race."""

    code = "MERGE_CONFLICT"


TERMINAL_ERRORS: tuple[type[IngestionError], ...] = (
    InvalidUrlError,
    InvalidHostError,
    InvalidHandleError,
    NotFoundError,
    RateLimitedError,
)
RETRYABLE_FETCH_ERRORS: tuple[type[IngestionError], ...] = (
    FetchTimeoutError,
    FetchFailedError,
    EmptyResponseError,
)


def failure_disposition(exc: BaseException) -> FailureDisposition:
    if isinstance(exc, TERMINAL_ERRORS):
        return "terminal"
    if isinstance(exc, ParseError):
        return "soft_success"
    if isinstance(exc, MergeConflictError):
        return "conflict"
    if not isinstance(exc, IngestionError):
        logger.warning("unclassified ingestion failure %s treated as retryable", type(exc).__name__)
    return "retryable"


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, IngestionError):
        return str(exc)
    message = str(exc).strip()
    return f"UNEXPECTED: {type(exc).__name__}: {message}" if message else f"UNEXPECTED: {type(exc).__name__}"
