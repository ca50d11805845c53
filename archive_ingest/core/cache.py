"""Content-addressed cache store over a key-value backend.

The store turns archive entries into ``CacheEntry`` records keyed by the
SHA-256 of their payload, so identical content fetched twice collapses into
one record. Writes to the same key are serialised through a per-key lock
table; writes to different keys never wait on each other.

Serialized form (what the backend sees) is a UTF-8 JSON document::

    {
        "key": "<sha256 hex or logical key>",
        "payload": "<base64>",
        "fetched_at": "2024-10-19T16:45:35+00:00",
        "ttl": 86400.0,
        "source": {"uri": "https://...", "version": "v1"},
        "name": "data/records.csv"
    }
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import random
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterator, Optional, TypeVar

from ..storage.base import KeyValueBackend
from ..utils.extract import ArchiveEntry
from ..utils.logging import get_logger
from ..utils.timeutil import (
    Clock,
    calculate_backoff,
    expires_at,
    format_timestamp,
    is_expired,
    parse_timestamp,
)
from .errors import BackendUnavailableError, CacheMissError, StoreConflictError, StoreError
from .state import ResourceDescriptor

T = TypeVar("T")

MANIFEST_PREFIX = "manifest:"

# Store-level retry of transient backend failures
DEFAULT_STORE_ATTEMPTS = 3
STORE_BACKOFF_INITIAL = 0.2
STORE_BACKOFF_MAX = 5.0


def content_key(payload: bytes) -> str:
    """Derive the cache key of a payload (SHA-256 hex digest)."""
    return hashlib.sha256(payload).hexdigest()


def manifest_key(algorithm: str, digest: str) -> str:
    """Logical key of the manifest for an archive with the given digest."""
    return f"{MANIFEST_PREFIX}{algorithm.lower()}:{digest.lower()}"


def is_logical_key(key: str) -> bool:
    """Logical keys name things; content keys are derived from payloads."""
    return ":" in key


class PutStatus(Enum):
    """What a put actually did."""

    CREATED = "created"
    UNCHANGED = "unchanged"
    REFRESHED = "refreshed"


@dataclass(frozen=True)
class PutResult:
    """Acknowledgement of a successful put."""

    key: str
    status: PutStatus


@dataclass
class CacheEntry:
    """The persisted unit of the cache.

    Attributes:
        key: SHA-256 hex of ``payload``, or a logical key such as a manifest key.
        payload: Raw content bytes.
        fetched_at: When the source archive was fetched.
        ttl: Time-to-live in seconds, None for no expiry.
        source_uri: URI of the descriptor that produced the entry.
        source_version: Version tag of that descriptor.
        name: Entry name inside the source archive.
    """

    key: str
    payload: bytes = field(repr=False)
    fetched_at: datetime
    ttl: Optional[float] = None
    source_uri: str = ""
    source_version: str = ""
    name: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def expires_at(self) -> Optional[datetime]:
        return expires_at(self.fetched_at, self.ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return is_expired(self.fetched_at, self.ttl, now)

    def to_bytes(self) -> bytes:
        """Serialize to the JSON document stored in the backend."""
        document = {
            "key": self.key,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "fetched_at": format_timestamp(self.fetched_at),
            "ttl": self.ttl,
            "source": {"uri": self.source_uri, "version": self.source_version},
            "name": self.name,
        }
        return json.dumps(document, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "CacheEntry":
        """Rebuild an entry from its serialized form.

        Raises:
            StoreError: If the document is malformed.
        """
        try:
            document = json.loads(data.decode("utf-8"))
            source = document.get("source") or {}
            ttl = document.get("ttl")
            return cls(
                key=document["key"],
                payload=base64.b64decode(document["payload"], validate=True),
                fetched_at=parse_timestamp(document["fetched_at"]),
                ttl=float(ttl) if ttl is not None else None,
                source_uri=source.get("uri", ""),
                source_version=source.get("version", ""),
                name=document.get("name"),
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError,
                ValueError, binascii.Error) as e:
            raise StoreError(f"Malformed cache record: {e}") from e

    def metadata(self) -> dict:
        """Everything but the payload, for display."""
        deadline = self.expires_at
        return {
            "key": self.key,
            "name": self.name,
            "size": self.size,
            "fetched_at": format_timestamp(self.fetched_at),
            "ttl": self.ttl,
            "expires_at": format_timestamp(deadline) if deadline else None,
            "source_uri": self.source_uri,
            "source_version": self.source_version,
        }


class CacheStore:
    """Transactional get/put/exists/evict over a ``KeyValueBackend``.

    A single instance is meant to be shared by every worker of a batch.

    Attributes:
        backend: The key-value backend holding serialized entries.
        max_attempts: Attempts per backend operation on transient failures.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        clock: Optional[Clock] = None,
        max_attempts: int = DEFAULT_STORE_ATTEMPTS,
        backoff_initial: float = STORE_BACKOFF_INITIAL,
        backoff_max: float = STORE_BACKOFF_MAX,
        rng: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.backend = backend
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._clock = clock or Clock()
        self._rng = rng or random.random
        self._logger = logger or get_logger("cache")

        # Locks live only while some caller holds them
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a backend operation, retrying while the backend is unavailable."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except BackendUnavailableError as e:
                if attempt >= self.max_attempts:
                    raise StoreError(
                        f"{operation} failed after {attempt} attempt(s): {e}"
                    ) from e
                delay = calculate_backoff(
                    attempt - 1,
                    initial=self.backoff_initial,
                    maximum=self.backoff_max,
                    rng=self._rng,
                )
                self._logger.warning(
                    f"Store {operation} unavailable (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                self._clock.sleep(delay)

    # --- Reads ------------------------------------------------------------

    def exists(self, key: str) -> bool:
        return self._call("exists", lambda: self.backend.exists(key))

    def get(self, key: str) -> CacheEntry:
        """Fetch an entry.

        Raises:
            CacheMissError: The key is not stored.
            StoreError: Backend failure or malformed record.
        """
        raw = self._call("get", lambda: self.backend.get(key))
        if raw is None:
            raise CacheMissError(key)
        return CacheEntry.from_bytes(raw)

    def keys(self, prefix: str = "") -> Iterator[str]:
        return iter(self._call("scan", lambda: list(self.backend.scan(prefix))))

    # --- Writes -----------------------------------------------------------

    def put(self, entry: CacheEntry) -> PutResult:
        """Persist an entry idempotently.

        Re-putting byte-identical content is acknowledged as ``UNCHANGED``,
        or ``REFRESHED`` when the stored copy had expired (its fetched-at
        and TTL are replaced by the new entry's).

        Raises:
            StoreConflictError: The key already holds different content.
            StoreError: Backend failure after retries, or a content key that
                does not match the payload.
        """
        if not is_logical_key(entry.key) and entry.key != content_key(entry.payload):
            raise StoreError(f"Key {entry.key} is not the SHA-256 of the entry payload")

        data = entry.to_bytes()
        with self._lock_for(entry.key):
            while True:
                if self._call("set_if_absent", lambda: self.backend.set_if_absent(entry.key, data)):
                    self._logger.debug(f"Stored {entry.key} ({entry.size:,} bytes)")
                    return PutResult(entry.key, PutStatus.CREATED)
                try:
                    existing = self.get(entry.key)
                except CacheMissError:
                    # Deleted by another process between the two calls
                    continue
                break

            if existing.payload != entry.payload:
                self._logger.error(
                    f"Store conflict on {entry.key}: stored {existing.size:,} bytes "
                    f"from {existing.source_uri}, new {entry.size:,} bytes from {entry.source_uri}"
                )
                raise StoreConflictError(entry.key)

            if existing.is_expired(self._clock.now()):
                self._call("set", lambda: self.backend.set(entry.key, data))
                self._logger.debug(f"Refreshed expired entry {entry.key}")
                return PutResult(entry.key, PutStatus.REFRESHED)
            return PutResult(entry.key, PutStatus.UNCHANGED)

    def evict(self, key: str) -> bool:
        """Remove an entry; return whether it existed."""
        with self._lock_for(key):
            removed = self._call("delete", lambda: self.backend.delete(key))
        if removed:
            self._logger.debug(f"Evicted {key}")
        return removed

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Evict every expired entry.

        Args:
            now: Reference time, the clock's current time by default.

        Returns:
            Number of entries evicted.
        """
        now = now or self._clock.now()
        evicted = 0
        for key in list(self.keys()):
            with self._lock_for(key):
                raw = self._call("get", lambda: self.backend.get(key))
                if raw is None:
                    continue
                try:
                    entry = CacheEntry.from_bytes(raw)
                except StoreError as e:
                    self._logger.warning(f"Skipping unreadable record {key}: {e}")
                    continue
                if entry.is_expired(now) and self._call(
                    "delete", lambda: self.backend.delete(key)
                ):
                    evicted += 1
        self._logger.info(f"Sweep evicted {evicted} expired entr{'y' if evicted == 1 else 'ies'}")
        return evicted

    # --- Archive helpers --------------------------------------------------

    def entry_from_archive(
        self,
        archive_entry: ArchiveEntry,
        descriptor: ResourceDescriptor,
        ttl: Optional[float] = None,
        fetched_at: Optional[datetime] = None,
    ) -> CacheEntry:
        """Build the content-addressed entry for one archive member."""
        return CacheEntry(
            key=content_key(archive_entry.content),
            payload=archive_entry.content,
            fetched_at=fetched_at or self._clock.now(),
            ttl=ttl,
            source_uri=descriptor.uri,
            source_version=descriptor.version,
            name=archive_entry.name,
        )

    def put_manifest(
        self,
        algorithm: str,
        digest: str,
        entry_keys: list[str],
        descriptor: ResourceDescriptor,
        ttl: Optional[float] = None,
        fetched_at: Optional[datetime] = None,
    ) -> PutResult:
        """Record which entries an archive produced, in archive order."""
        payload = json.dumps(entry_keys).encode("utf-8")
        entry = CacheEntry(
            key=manifest_key(algorithm, digest),
            payload=payload,
            fetched_at=fetched_at or self._clock.now(),
            ttl=ttl,
            source_uri=descriptor.uri,
            source_version=descriptor.version,
            name=descriptor.name,
        )
        return self.put(entry)

    def get_manifest(self, algorithm: str, digest: str) -> list[str]:
        """Return the entry keys recorded for an archive.

        Raises:
            CacheMissError: No manifest for this archive.
            StoreError: The manifest payload is malformed.
        """
        entry = self.get(manifest_key(algorithm, digest))
        try:
            keys = json.loads(entry.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreError(f"Malformed manifest {entry.key}: {e}") from e
        if not isinstance(keys, list):
            raise StoreError(f"Malformed manifest {entry.key}: expected a list")
        return [str(k) for k in keys]

    def is_archive_cached(
        self, algorithm: str, digest: str, now: Optional[datetime] = None
    ) -> bool:
        """Check an archive's manifest and all of its entries are present and fresh."""
        key = manifest_key(algorithm, digest)
        if not self.exists(key):
            return False
        try:
            manifest = self.get(key)
            entry_keys = self.get_manifest(algorithm, digest)
        except CacheMissError:
            return False
        if manifest.is_expired(now or self._clock.now()):
            return False
        return all(self.exists(k) for k in entry_keys)

    def close(self) -> None:
        self.backend.close()

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "CacheEntry",
    "CacheStore",
    "MANIFEST_PREFIX",
    "PutResult",
    "PutStatus",
    "content_key",
    "manifest_key",
]
