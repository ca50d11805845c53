"""Key-value backend contract used by the cache store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_NAMESPACE = "archive-ingest:"


@dataclass
class StoreConfig:
    """Connection settings for the cache backend.

    Attributes:
        backend: ``"sqlite"`` or ``"redis"``.
        path: SQLite database file (sqlite backend only).
        url: Redis connection URL (redis backend only).
        namespace: Prefix applied to every key.
        socket_timeout: Redis socket timeout in seconds.
    """

    backend: str = "sqlite"
    path: Path = Path("cache.db")
    url: str = "redis://localhost:6379/0"
    namespace: str = DEFAULT_NAMESPACE
    socket_timeout: Optional[float] = 5.0


class KeyValueBackend(ABC):
    """Minimal GET/SET/EXISTS/DEL contract over opaque byte values.

    Keys passed in are logical keys; implementations prefix them with their
    namespace. ``set_if_absent`` must be atomic: when two callers race on
    the same key exactly one of them gets True.
    """

    def __init__(self, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.namespace = namespace

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def set_if_absent(self, key: str, value: bytes) -> bool:
        """Store ``value`` only if ``key`` is free; return whether it was written."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether ``key`` is present."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; return whether something was deleted."""

    @abstractmethod
    def scan(self, prefix: str = "") -> Iterator[str]:
        """Yield logical keys starting with ``prefix``."""

    @abstractmethod
    def close(self) -> None:
        """Release underlying resources."""

    def ping(self) -> bool:
        """Check the backend is reachable."""
        self.exists("__ping__")
        return True


__all__ = ["DEFAULT_NAMESPACE", "KeyValueBackend", "StoreConfig"]
