"""Shared pytest fixtures for archive_ingest tests."""

import io
import tempfile
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from archive_ingest.utils.timeutil import Clock

EPOCH = datetime(2024, 10, 19, 16, 45, 35, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Clock whose time only moves when told to; sleeps are recorded, not slept."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start
        self.sleeps = []
        super().__init__(now=self._now, monotonic=self._monotonic, sleep=self._sleep)

    def _now(self) -> datetime:
        return self.current

    def _monotonic(self) -> float:
        return (self.current - EPOCH).total_seconds()

    def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def build_zip(files, compression=zipfile.ZIP_DEFLATED) -> bytes:
    """Build an in-memory ZIP from ``{name: content}`` pairs (order kept)."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression) as zf:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests.

    Yields:
        Path to the temporary directory that is automatically
        cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_clock():
    """A FakeClock starting at a fixed UTC instant."""
    return FakeClock()


@pytest.fixture
def make_zip():
    """Factory fixture returning ZIP bytes for a ``{name: content}`` mapping."""
    return build_zip


@pytest.fixture
def sample_zip_bytes():
    """A small deflated archive with three files, one in a subdirectory."""
    return build_zip(
        {
            "file1.txt": "Content of file 1",
            "file2.txt": "Content of file 2",
            "subdir/file3.txt": "Content of file 3 in subdir",
        }
    )


@pytest.fixture
def empty_zip_bytes():
    """A valid archive with no members."""
    return build_zip({})


@pytest.fixture
def sqlite_backend(temp_dir):
    """SQLite backend in a temporary directory.

    Args:
        temp_dir: Temporary directory fixture.

    Returns:
        Initialized SQLiteBackend instance.
    """
    from archive_ingest.storage.sqlite_backend import SQLiteBackend

    return SQLiteBackend(temp_dir / "cache.db", namespace="test:")


@pytest.fixture
def store(sqlite_backend, fake_clock):
    """CacheStore over the temporary SQLite backend, driven by the fake clock."""
    from archive_ingest.core.cache import CacheStore

    return CacheStore(sqlite_backend, clock=fake_clock, rng=lambda: 0.5)


@pytest.fixture
def sample_resource_list(temp_dir):
    """Create a resource list file mixing positional and named fields.

    Returns:
        Path to the created list file.
    """
    content = """# Monthly dumps
https://example.org/data/2024-09.zip  sha256:9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08  2024-09

https://example.org/data/2024-10.zip  -  2024-10   # no hash yet
https://example.org/data/extra.zip version=v2 name=extras
"""
    path = temp_dir / "resources.txt"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def workdir_manager(temp_dir):
    """Create a WorkdirManager with a temporary directory.

    Args:
        temp_dir: Temporary directory fixture.

    Returns:
        Initialized WorkdirManager instance.
    """
    from archive_ingest.utils.paths import WorkdirManager

    manager = WorkdirManager(temp_dir)
    manager.ensure_dirs()
    return manager
