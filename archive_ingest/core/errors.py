"""Exception hierarchy for archive_ingest.

Every error carries an ``ErrorKind`` so the pipeline can record why a job
failed without inspecting exception types, and so failures can be grouped
for reporting.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification of pipeline failures."""

    TRANSIENT = "transient"
    PERMANENT_FETCH = "permanent_fetch"
    HASH_MISMATCH = "hash_mismatch"
    CORRUPT_ARCHIVE = "corrupt_archive"
    UNSUPPORTED_COMPRESSION = "unsupported_compression"
    EMPTY_ARCHIVE = "empty_archive"
    STORE = "store"
    STORE_CONFLICT = "store_conflict"
    CONFIGURATION = "configuration"
    UNEXPECTED = "unexpected"


class IngestError(Exception):
    """Base exception for archive_ingest errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


# --- Fetch ----------------------------------------------------------------


class FetchError(IngestError):
    """Failure to retrieve a remote resource.

    Attributes:
        url: The URL being fetched.
        status_code: HTTP status of the last response, if any.
        attempts: Number of attempts made before giving up.
    """

    kind = ErrorKind.PERMANENT_FETCH

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.attempts = attempts


class TransientFetchError(FetchError):
    """Retryable fetch failure (timeout, connection reset, 5xx)."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code, attempts=attempts)
        self.retry_after = retry_after


class PermanentFetchError(FetchError):
    """Non-retryable fetch failure (4xx, malformed URL, oversized body)."""

    kind = ErrorKind.PERMANENT_FETCH


class HashMismatchError(PermanentFetchError):
    """Downloaded bytes do not match the expected content hash."""

    kind = ErrorKind.HASH_MISMATCH

    def __init__(self, url: str, expected: str, actual: str, attempts: int = 0) -> None:
        super().__init__(
            f"Content hash mismatch for {url}: expected {expected}, got {actual}",
            url=url,
            attempts=attempts,
        )
        self.expected = expected
        self.actual = actual


# --- Extraction -----------------------------------------------------------


class ExtractError(IngestError):
    """Failure to read an archive."""

    kind = ErrorKind.CORRUPT_ARCHIVE


class CorruptArchiveError(ExtractError):
    """Truncated or invalid archive, or declared sizes above the ceilings."""

    kind = ErrorKind.CORRUPT_ARCHIVE


class UnsupportedCompressionError(ExtractError):
    """Archive member uses a compression method we cannot decode."""

    kind = ErrorKind.UNSUPPORTED_COMPRESSION


class EmptyArchiveError(ExtractError):
    """Archive produced no entries."""

    kind = ErrorKind.EMPTY_ARCHIVE


# --- Store ----------------------------------------------------------------


class StoreError(IngestError):
    """Failure of the cache store or its backend."""

    kind = ErrorKind.STORE


class BackendUnavailableError(StoreError):
    """Backend temporarily unreachable; the operation may be retried."""

    kind = ErrorKind.TRANSIENT


class StoreConflictError(StoreError):
    """A content-addressed key already maps to different content."""

    kind = ErrorKind.STORE_CONFLICT

    def __init__(self, key: str) -> None:
        super().__init__(f"Key {key} already holds different content")
        self.key = key


class CacheMissError(StoreError, KeyError):
    """Requested key is not in the cache."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Cache entry not found: {key}")
        self.key = key

    def __str__(self) -> str:
        return self.args[0]


# --- Configuration --------------------------------------------------------


class ConfigurationError(IngestError, ValueError):
    """Invalid configuration or descriptor; aborts a batch before it starts."""

    kind = ErrorKind.CONFIGURATION


__all__ = [
    "BackendUnavailableError",
    "CacheMissError",
    "ConfigurationError",
    "CorruptArchiveError",
    "EmptyArchiveError",
    "ErrorKind",
    "ExtractError",
    "FetchError",
    "HashMismatchError",
    "IngestError",
    "PermanentFetchError",
    "StoreConflictError",
    "StoreError",
    "TransientFetchError",
    "UnsupportedCompressionError",
]
