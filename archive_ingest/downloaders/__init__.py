"""
archive_ingest.downloaders - Remote resource fetchers.

Currently a single HTTP(S) fetcher with retry/backoff and content hash
verification.
"""

from archive_ingest.downloaders.http import (
    HttpFetcher,
    compute_digest,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT,
)

__all__ = [
    "HttpFetcher",
    "compute_digest",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_TIMEOUT",
]
