"""SQLite implementation of the key-value backend.

A single ``kv`` table holds namespaced keys and opaque blob values. A fresh
connection is opened per operation, so one backend instance can be shared by
every worker thread.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator, Optional

from ..core.errors import BackendUnavailableError, StoreError
from ..utils.timeutil import format_timestamp, utc_now
from .base import DEFAULT_NAMESPACE, KeyValueBackend

# Seconds a connection waits on a locked database before giving up
DEFAULT_BUSY_TIMEOUT = 10.0


class SQLiteBackend(KeyValueBackend):
    """SQLite-backed key-value store.

    The database is created automatically if it doesn't exist.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(
        self,
        db_path: Path,
        namespace: str = DEFAULT_NAMESPACE,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        super().__init__(namespace)
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise BackendUnavailableError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Yield a cursor; commit on success, roll back and translate errors otherwise."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                if "locked" in str(e) or "busy" in str(e):
                    raise BackendUnavailableError(f"SQLite busy: {e}") from e
                raise StoreError(f"SQLite error: {e}") from e
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"SQLite error: {e}") from e

    def init_db(self) -> None:
        """Create the ``kv`` table if needed. Safe to call repeatedly."""
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def get(self, key: str) -> Optional[bytes]:
        with self._transaction() as cursor:
            cursor.execute("SELECT value FROM kv WHERE key = ?", (self._full_key(key),))
            row = cursor.fetchone()
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (self._full_key(key), sqlite3.Binary(value), format_timestamp(utc_now())),
            )

    def set_if_absent(self, key: str, value: bytes) -> bool:
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                (self._full_key(key), sqlite3.Binary(value), format_timestamp(utc_now())),
            )
            return cursor.rowcount > 0

    def exists(self, key: str) -> bool:
        with self._transaction() as cursor:
            cursor.execute("SELECT 1 FROM kv WHERE key = ?", (self._full_key(key),))
            return cursor.fetchone() is not None

    def delete(self, key: str) -> bool:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM kv WHERE key = ?", (self._full_key(key),))
            return cursor.rowcount > 0

    def scan(self, prefix: str = "") -> Iterator[str]:
        full_prefix = self._full_key(prefix)
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(full_prefix), full_prefix),
            )
            rows = cursor.fetchall()
        offset = len(self.namespace)
        for (key,) in rows:
            yield key[offset:]

    def count(self) -> int:
        """Number of keys in this backend's namespace."""
        return sum(1 for _ in self.scan())

    def close(self) -> None:
        # Connections are per operation; nothing is held open
        pass

    def __repr__(self) -> str:
        return f"SQLiteBackend(db_path={self.db_path!r}, namespace={self.namespace!r})"


__all__ = ["SQLiteBackend"]
