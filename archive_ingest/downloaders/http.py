"""HTTP(S) fetcher with bounded retries and integrity verification.

This module provides the HttpFetcher class, which downloads a resource
descriptor's bytes into memory over a shared ``requests`` session, retrying
transient failures with exponential backoff and verifying the payload against
the descriptor's expected hash.
"""

from __future__ import annotations

import hashlib
import logging
import random
from typing import Callable, Dict, Optional

import requests

from ..core.errors import (
    FetchError,
    HashMismatchError,
    PermanentFetchError,
    TransientFetchError,
)
from ..core.events import EventKind, EventSink, NullSink, PipelineEvent
from ..core.state import ResourceDescriptor
from ..utils.logging import get_logger, mask_sensitive_data, mask_url_sensitive_parts
from ..utils.timeutil import (
    BACKOFF_MULTIPLIER,
    DEFAULT_JITTER,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    Clock,
    calculate_backoff,
)

# Default configuration
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB
DEFAULT_TIMEOUT = 30.0  # seconds, per attempt
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_USER_AGENT = "archive-ingest/0.1"

# Statuses worth retrying besides 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})

# requests errors caused by the URL itself; retrying cannot help
_MALFORMED_URL_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
    requests.exceptions.URLRequired,
)


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Return the hex digest of ``data`` with the given hashlib algorithm."""
    return hashlib.new(algorithm, data).hexdigest()


class HttpFetcher:
    """Downloads resources with retry/backoff and hash verification.

    Attributes:
        max_attempts: Maximum number of attempts per fetch (>= 1).
        timeout: Per-attempt timeout in seconds.
        chunk_size: Size of chunks read from the response stream.
        max_download_bytes: Optional ceiling on the body size.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
        max_download_bytes: Optional[int] = None,
        backoff_initial: float = INITIAL_BACKOFF_SECONDS,
        backoff_multiplier: float = BACKOFF_MULTIPLIER,
        backoff_max: float = MAX_BACKOFF_SECONDS,
        jitter: float = DEFAULT_JITTER,
        session: Optional[requests.Session] = None,
        clock: Optional[Clock] = None,
        rng: Optional[Callable[[], float]] = None,
        sink: Optional[EventSink] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            max_attempts: Maximum attempts per fetch, including the first.
            timeout: Per-attempt timeout in seconds.
            chunk_size: Size of chunks for streaming reads.
            headers: Extra headers sent with every request.
            token: Optional bearer token for the Authorization header.
            max_download_bytes: Reject bodies larger than this many bytes.
            backoff_initial: Delay after the first failed attempt.
            backoff_multiplier: Growth factor between attempts.
            backoff_max: Upper bound on a single delay.
            jitter: Randomised fraction of each delay.
            session: Optional preconfigured requests session.
            clock: Time source; its ``sleep`` is used between attempts.
            rng: Uniform random source used for jitter.
            sink: Destination for attempt and progress events.
            logger: Optional logger instance.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        self.max_attempts = max_attempts
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.max_download_bytes = max_download_bytes
        self.backoff_initial = backoff_initial
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self.jitter = jitter
        self._clock = clock or Clock()
        self._rng = rng or random.random
        self._sink = sink or NullSink()
        self._logger = logger or get_logger("downloaders.http")

        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": DEFAULT_USER_AGENT})
        if headers:
            self._session.headers.update(headers)
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

        self._logger.debug(
            f"HttpFetcher initialized: max_attempts={max_attempts}, timeout={timeout}s, "
            f"token={mask_sensitive_data(token) if token else 'none'}"
        )

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fetch(
        self,
        descriptor: ResourceDescriptor,
        job_id: Optional[str] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> bytes:
        """Download a descriptor's bytes.

        Transient failures are retried up to ``max_attempts`` in total with
        backoff in between. Permanent failures and hash mismatches are
        raised immediately.

        Args:
            descriptor: The resource to fetch.
            job_id: Job identifier attached to emitted events.
            on_attempt: Called with the 1-based attempt number before each
                attempt starts.

        Returns:
            The verified response body.

        Raises:
            TransientFetchError: Retries exhausted on transient failures.
            PermanentFetchError: Non-retryable failure.
            HashMismatchError: Body does not match the expected hash.
        """
        url = descriptor.uri
        safe_url = mask_url_sensitive_parts(url)
        last_error: Optional[TransientFetchError] = None
        data: Optional[bytes] = None
        attempt = 0

        while attempt < self.max_attempts:
            attempt += 1
            if on_attempt:
                on_attempt(attempt)
            self._sink.emit(
                PipelineEvent(EventKind.FETCH_ATTEMPT, job_id=job_id, uri=url, attempt=attempt)
            )

            try:
                data = self._attempt(url, job_id)
                break
            except PermanentFetchError as e:
                e.attempts = attempt
                self._logger.error(f"Permanent failure fetching {safe_url}: {e}")
                raise
            except TransientFetchError as e:
                e.attempts = attempt
                last_error = e
                if attempt >= self.max_attempts:
                    break
                delay = calculate_backoff(
                    attempt - 1,
                    initial=self.backoff_initial,
                    multiplier=self.backoff_multiplier,
                    maximum=self.backoff_max,
                    jitter=self.jitter,
                    retry_after=e.retry_after,
                    rng=self._rng,
                )
                self._sink.emit(
                    PipelineEvent(
                        EventKind.FETCH_RETRY,
                        job_id=job_id,
                        uri=url,
                        attempt=attempt,
                        message=f"{e}; retrying in {delay:.1f}s",
                        data={"delay": delay},
                    )
                )
                self._clock.sleep(delay)

        if data is None:
            message = f"Fetch failed after {attempt} attempt(s): {last_error}"
            self._logger.error(f"{safe_url}: {message}")
            raise TransientFetchError(
                message,
                url=url,
                status_code=last_error.status_code if last_error else None,
                attempts=attempt,
            ) from last_error

        self._verify(descriptor, data, attempt)
        self._sink.emit(
            PipelineEvent(
                EventKind.FETCH_COMPLETE,
                job_id=job_id,
                uri=url,
                attempt=attempt,
                message=f"{len(data):,} bytes",
                data={"bytes": len(data)},
            )
        )
        return data

    def _attempt(self, url: str, job_id: Optional[str]) -> bytes:
        """Perform a single GET and return the body.

        Raises:
            TransientFetchError: Retryable failure.
            PermanentFetchError: Non-retryable failure.
        """
        try:
            response = self._session.get(url, stream=True, timeout=self.timeout)
        except _MALFORMED_URL_ERRORS as e:
            raise PermanentFetchError(f"Malformed URL: {e}", url=url) from e
        except requests.exceptions.RequestException as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}", url=url) from e

        try:
            self._check_status(response, url)
            return self._read_body(response, url, job_id)
        finally:
            response.close()

    def _check_status(self, response: requests.Response, url: str) -> None:
        """Raise the right error class for a non-2xx response."""
        status_code = response.status_code
        if 200 <= status_code < 300:
            return

        reason = getattr(response, "reason", "") or ""
        message = f"HTTP {status_code} {reason}".strip()

        if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
            raise TransientFetchError(
                message,
                url=url,
                status_code=status_code,
                retry_after=self._parse_retry_after(response),
            )
        raise PermanentFetchError(message, url=url, status_code=status_code)

    @staticmethod
    def _parse_retry_after(response: requests.Response) -> Optional[float]:
        value = response.headers.get("Retry-After") if response.headers else None
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            # HTTP-date form is not worth the parsing; fall back to backoff
            return None

    def _read_body(self, response: requests.Response, url: str, job_id: Optional[str]) -> bytes:
        """Stream the body into memory, enforcing the size ceiling."""
        total: Optional[int] = None
        length_header = response.headers.get("Content-Length") if response.headers else None
        if length_header is not None:
            try:
                total = int(length_header)
            except (TypeError, ValueError):
                total = None

        limit = self.max_download_bytes
        if limit is not None and total is not None and total > limit:
            raise PermanentFetchError(
                f"Declared size {total:,} bytes exceeds limit of {limit:,} bytes",
                url=url,
                status_code=response.status_code,
            )

        buffer = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if not chunk:
                    continue
                buffer.extend(chunk)
                if limit is not None and len(buffer) > limit:
                    raise PermanentFetchError(
                        f"Body exceeds limit of {limit:,} bytes",
                        url=url,
                        status_code=response.status_code,
                    )
                if job_id:
                    self._sink.progress(job_id, len(buffer), total)
        except requests.exceptions.RequestException as e:
            raise TransientFetchError(
                f"Connection dropped after {len(buffer):,} bytes: {e}",
                url=url,
                status_code=response.status_code,
            ) from e

        if total is not None and len(buffer) < total:
            raise TransientFetchError(
                f"Truncated body: expected {total:,} bytes, got {len(buffer):,}",
                url=url,
                status_code=response.status_code,
            )
        return bytes(buffer)

    def _verify(self, descriptor: ResourceDescriptor, data: bytes, attempts: int) -> None:
        """Check ``data`` against the descriptor's expected hash, if any."""
        try:
            expected = descriptor.expected_digest()
        except ValueError as e:
            raise PermanentFetchError(str(e), url=descriptor.uri, attempts=attempts) from e
        if expected is None:
            return

        algorithm, digest = expected
        actual = compute_digest(data, algorithm)
        if actual != digest:
            self._logger.error(
                f"Hash mismatch for {mask_url_sensitive_parts(descriptor.uri)}: "
                f"expected {algorithm}:{digest}, got {algorithm}:{actual}"
            )
            raise HashMismatchError(
                descriptor.uri,
                expected=f"{algorithm}:{digest}",
                actual=f"{algorithm}:{actual}",
                attempts=attempts,
            )


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_TIMEOUT",
    "FetchError",
    "HttpFetcher",
    "compute_digest",
]
