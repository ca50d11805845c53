"""Redis implementation of the key-value backend."""

from __future__ import annotations

import re
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import redis

from ..core.errors import BackendUnavailableError, ConfigurationError, StoreError
from ..utils.logging import get_logger, mask_url_sensitive_parts
from .base import DEFAULT_NAMESPACE, KeyValueBackend

logger = get_logger("storage.redis")

SCAN_BATCH_SIZE = 500

# Characters with special meaning in a SCAN MATCH pattern
_GLOB_CHARS = re.compile(r"([*?\[\]\\])")


def _escape_glob(text: str) -> str:
    return _GLOB_CHARS.sub(r"\\\1", text)


class RedisBackend(KeyValueBackend):
    """Key-value backend over a redis-py client.

    Values are stored as plain redis strings. Connection and timeout errors
    are reported as ``BackendUnavailableError`` so the cache store retries
    them; any other redis error becomes a ``StoreError``.

    Attributes:
        client: The underlying ``redis.Redis`` client.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        namespace: str = DEFAULT_NAMESPACE,
        socket_timeout: Optional[float] = 5.0,
        client: Optional[redis.Redis] = None,
    ) -> None:
        super().__init__(namespace)
        if client is None:
            if not url:
                raise ValueError("RedisBackend needs either a url or a client")
            try:
                client = redis.from_url(
                    url,
                    decode_responses=False,
                    socket_connect_timeout=socket_timeout,
                    socket_timeout=socket_timeout,
                )
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid redis URL {mask_url_sensitive_parts(url)}: {e}"
                ) from e
            logger.debug(f"Redis client created for {mask_url_sensitive_parts(url)}")
        self.client = client

    @contextmanager
    def _guard(self, operation: str) -> Generator[None, None, None]:
        try:
            yield
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise BackendUnavailableError(f"Redis {operation} failed: {e}") from e
        except redis.RedisError as e:
            raise StoreError(f"Redis {operation} failed: {e}") from e

    def get(self, key: str) -> Optional[bytes]:
        with self._guard("GET"):
            value = self.client.get(self._full_key(key))
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    def set(self, key: str, value: bytes) -> None:
        with self._guard("SET"):
            self.client.set(self._full_key(key), value)

    def set_if_absent(self, key: str, value: bytes) -> bool:
        with self._guard("SET NX"):
            return bool(self.client.set(self._full_key(key), value, nx=True))

    def exists(self, key: str) -> bool:
        with self._guard("EXISTS"):
            return bool(self.client.exists(self._full_key(key)))

    def delete(self, key: str) -> bool:
        with self._guard("DEL"):
            return bool(self.client.delete(self._full_key(key)))

    def scan(self, prefix: str = "") -> Iterator[str]:
        pattern = _escape_glob(self._full_key(prefix)) + "*"
        offset = len(self.namespace)
        with self._guard("SCAN"):
            keys = list(self.client.scan_iter(match=pattern, count=SCAN_BATCH_SIZE))
        for raw in sorted(keys):
            key = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            yield key[offset:]

    def ping(self) -> bool:
        with self._guard("PING"):
            return bool(self.client.ping())

    def close(self) -> None:
        with self._guard("close"):
            self.client.close()


__all__ = ["RedisBackend"]
