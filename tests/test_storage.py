"""Tests for the key-value backends."""

import sqlite3
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from archive_ingest.core.errors import (
    BackendUnavailableError,
    ConfigurationError,
    ErrorKind,
    StoreError,
)
from archive_ingest.storage import BACKENDS, StoreConfig, create_backend
from archive_ingest.storage.redis_backend import RedisBackend
from archive_ingest.storage.sqlite_backend import SQLiteBackend
from archive_ingest.utils.timeutil import parse_timestamp


class TestSQLiteBackendInit:
    """Tests for SQLiteBackend initialization."""

    def test_creates_database_file(self, temp_dir):
        """Test that the database file and parent directories are created."""
        db_path = temp_dir / "nested" / "dir" / "cache.db"
        SQLiteBackend(db_path)
        assert db_path.exists()

    def test_init_is_idempotent(self, temp_dir):
        backend = SQLiteBackend(temp_dir / "cache.db")
        backend.set("k", b"v")
        backend.init_db()
        assert backend.get("k") == b"v"

    def test_repr(self, sqlite_backend):
        assert "namespace='test:'" in repr(sqlite_backend)


class TestSQLiteBackendOperations:
    """Tests for get/set/exists/delete."""

    def test_get_missing_returns_none(self, sqlite_backend):
        assert sqlite_backend.get("missing") is None

    def test_set_and_get(self, sqlite_backend):
        sqlite_backend.set("k", b"\x00\xffbinary")
        assert sqlite_backend.get("k") == b"\x00\xffbinary"
        assert sqlite_backend.exists("k") is True

    def test_set_overwrites(self, sqlite_backend):
        sqlite_backend.set("k", b"one")
        sqlite_backend.set("k", b"two")
        assert sqlite_backend.get("k") == b"two"
        assert sqlite_backend.count() == 1

    def test_set_if_absent(self, sqlite_backend):
        """Only the first writer wins."""
        assert sqlite_backend.set_if_absent("k", b"first") is True
        assert sqlite_backend.set_if_absent("k", b"second") is False
        assert sqlite_backend.get("k") == b"first"

    def test_delete(self, sqlite_backend):
        sqlite_backend.set("k", b"v")
        assert sqlite_backend.delete("k") is True
        assert sqlite_backend.delete("k") is False
        assert sqlite_backend.exists("k") is False

    def test_ping(self, sqlite_backend):
        assert sqlite_backend.ping() is True

    def test_updated_at_is_utc(self, sqlite_backend):
        sqlite_backend.set("k", b"v")
        sqlite_backend.set_if_absent("other", b"v")
        with sqlite3.connect(str(sqlite_backend.db_path)) as conn:
            stamps = [row[0] for row in conn.execute("SELECT updated_at FROM kv")]
        assert len(stamps) == 2
        for stamp in stamps:
            assert parse_timestamp(stamp).utcoffset() == timedelta(0)
            assert stamp.endswith("+00:00")


class TestSQLiteBackendNamespaces:
    """Tests for key prefixing and scans."""

    def test_scan_strips_namespace_and_sorts(self, sqlite_backend):
        for key in ("manifest:sha256:bb", "cc", "manifest:sha256:aa"):
            sqlite_backend.set(key, b"x")
        assert list(sqlite_backend.scan()) == ["cc", "manifest:sha256:aa", "manifest:sha256:bb"]
        assert list(sqlite_backend.scan("manifest:")) == ["manifest:sha256:aa", "manifest:sha256:bb"]

    def test_namespaces_are_isolated(self, temp_dir):
        """Two namespaces over the same file never see each other's keys."""
        first = SQLiteBackend(temp_dir / "shared.db", namespace="one:")
        second = SQLiteBackend(temp_dir / "shared.db", namespace="two:")
        first.set("k", b"1")

        assert second.get("k") is None
        assert list(second.scan()) == []
        assert first.count() == 1

    def test_scan_prefix_is_literal(self, sqlite_backend):
        """LIKE wildcards in the prefix have no special meaning."""
        sqlite_backend.set("a_b", b"x")
        sqlite_backend.set("axb", b"x")
        assert list(sqlite_backend.scan("a_")) == ["a_b"]


class TestRedisBackend:
    """Tests for RedisBackend with a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def backend(self, client):
        return RedisBackend(namespace="ns:", client=client)

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisBackend()

    def test_invalid_url_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            RedisBackend(url="ftp://localhost:6379")

    def test_get_prefixes_key(self, backend, client):
        client.get.return_value = b"value"
        assert backend.get("k") == b"value"
        client.get.assert_called_once_with("ns:k")

    def test_get_missing(self, backend, client):
        client.get.return_value = None
        assert backend.get("k") is None

    def test_set_if_absent_uses_nx(self, backend, client):
        client.set.return_value = True
        assert backend.set_if_absent("k", b"v") is True
        client.set.assert_called_once_with("ns:k", b"v", nx=True)

        client.set.return_value = None
        assert backend.set_if_absent("k", b"v") is False

    def test_exists_and_delete(self, backend, client):
        client.exists.return_value = 1
        client.delete.return_value = 0
        assert backend.exists("k") is True
        assert backend.delete("k") is False

    def test_scan_escapes_and_strips(self, backend, client):
        client.scan_iter.return_value = iter([b"ns:b*", b"ns:a*"])
        assert list(backend.scan("a*")) == ["a*", "b*"]
        client.scan_iter.assert_called_once_with(match="ns:a\\**", count=500)

    def test_connection_error_is_backend_unavailable(self, backend, client):
        """Connection problems are retryable."""
        client.get.side_effect = redis.ConnectionError("refused")
        with pytest.raises(BackendUnavailableError) as exc_info:
            backend.get("k")
        assert exc_info.value.kind is ErrorKind.TRANSIENT

    def test_timeout_is_backend_unavailable(self, backend, client):
        client.set.side_effect = redis.TimeoutError("slow")
        with pytest.raises(BackendUnavailableError):
            backend.set("k", b"v")

    def test_other_redis_errors_are_store_errors(self, backend, client):
        client.get.side_effect = redis.ResponseError("WRONGTYPE")
        with pytest.raises(StoreError) as exc_info:
            backend.get("k")
        assert not isinstance(exc_info.value, BackendUnavailableError)

    def test_ping_and_close(self, backend, client):
        client.ping.return_value = True
        assert backend.ping() is True
        backend.close()
        client.close.assert_called_once()


class TestCreateBackend:
    """Tests for the backend factory."""

    def test_known_backends(self):
        assert BACKENDS == ("sqlite", "redis")

    def test_sqlite(self, temp_dir):
        backend = create_backend(StoreConfig(backend="sqlite", path=temp_dir / "c.db", namespace="x:"))
        assert isinstance(backend, SQLiteBackend)
        assert backend.namespace == "x:"

    def test_redis(self):
        backend = create_backend(StoreConfig(backend="redis", url="redis://localhost:6399/1"))
        assert isinstance(backend, RedisBackend)

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            create_backend(StoreConfig(backend="memcached"))
