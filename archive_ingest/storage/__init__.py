"""Key-value backends for the cache store."""

from __future__ import annotations

from ..core.errors import ConfigurationError
from .base import DEFAULT_NAMESPACE, KeyValueBackend, StoreConfig
from .redis_backend import RedisBackend
from .sqlite_backend import SQLiteBackend

BACKENDS = ("sqlite", "redis")


def create_backend(config: StoreConfig) -> KeyValueBackend:
    """Build the backend named by ``config.backend``.

    Raises:
        ConfigurationError: Unknown backend name.
    """
    if config.backend == "sqlite":
        return SQLiteBackend(config.path, namespace=config.namespace)
    if config.backend == "redis":
        return RedisBackend(
            config.url,
            namespace=config.namespace,
            socket_timeout=config.socket_timeout,
        )
    raise ConfigurationError(
        f"Unknown store backend {config.backend!r}; expected one of {', '.join(BACKENDS)}"
    )


__all__ = [
    "BACKENDS",
    "DEFAULT_NAMESPACE",
    "KeyValueBackend",
    "RedisBackend",
    "SQLiteBackend",
    "StoreConfig",
    "create_backend",
]
