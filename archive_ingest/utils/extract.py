"""In-memory ZIP extraction with decompression-bomb ceilings.

``extract_archive`` reads a downloaded archive from a byte buffer and yields
its members lazily, in archive order. Declared sizes in the central
directory are checked against the configured ceilings before anything is
decompressed, and every read is bounded by the size the entry declared.
"""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Iterator, Optional

from ..core.errors import CorruptArchiveError, UnsupportedCompressionError
from .logging import get_logger

# Magic bytes for archive detection
ZIP_MAGIC = (
    b"PK\x03\x04",  # Standard ZIP
    b"PK\x05\x06",  # Empty ZIP
    b"PK\x07\x08",  # Spanned ZIP
)

SUPPORTED_COMPRESSION = {
    zipfile.ZIP_STORED: "stored",
    zipfile.ZIP_DEFLATED: "deflate",
    zipfile.ZIP_BZIP2: "bzip2",
    zipfile.ZIP_LZMA: "lzma",
}

# Default ceilings
DEFAULT_MAX_ENTRY_SIZE = 256 * 1024 * 1024  # 256MB per entry
DEFAULT_MAX_TOTAL_SIZE = 1024 * 1024 * 1024  # 1GB per archive
DEFAULT_MAX_ENTRIES = 10_000
READ_CHUNK_SIZE = 64 * 1024


@dataclass
class ArchiveEntry:
    """A single member read out of an archive.

    Attributes:
        name: Member path inside the archive.
        size: Length of ``content`` in bytes.
        content: Decompressed member bytes.
        index: Position of the member in archive order.
    """

    name: str
    size: int
    content: bytes = field(repr=False)
    index: int = 0


@dataclass
class ExtractionLimits:
    """Ceilings applied to every archive.

    Attributes:
        max_entry_size: Largest declared uncompressed size of one member.
        max_total_size: Largest sum of declared uncompressed sizes.
        max_entries: Largest number of file members.
    """

    max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE
    max_total_size: int = DEFAULT_MAX_TOTAL_SIZE
    max_entries: int = DEFAULT_MAX_ENTRIES


def is_zip(data: bytes) -> bool:
    """Check the buffer starts with a ZIP signature."""
    return any(data.startswith(magic) for magic in ZIP_MAGIC)


def _open(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data), "r")
    except zipfile.BadZipFile as e:
        raise CorruptArchiveError(f"Invalid or truncated ZIP archive: {e}") from e
    except (OSError, EOFError, ValueError) as e:
        raise CorruptArchiveError(f"Unreadable ZIP archive: {e}") from e


def _check_central_directory(
    members: list[zipfile.ZipInfo], limits: ExtractionLimits
) -> None:
    """Validate declared sizes and methods before decompressing anything."""
    if len(members) > limits.max_entries:
        raise CorruptArchiveError(
            f"Archive declares {len(members)} entries, limit is {limits.max_entries}"
        )

    total = 0
    for info in members:
        if info.compress_type not in SUPPORTED_COMPRESSION:
            raise UnsupportedCompressionError(
                f"Entry {info.filename!r} uses unsupported compression method "
                f"{info.compress_type}"
            )
        if info.file_size > limits.max_entry_size:
            raise CorruptArchiveError(
                f"Entry {info.filename!r} declares {info.file_size:,} bytes, "
                f"limit is {limits.max_entry_size:,}"
            )
        total += info.file_size
        if total > limits.max_total_size:
            raise CorruptArchiveError(
                f"Archive declares more than {limits.max_total_size:,} uncompressed bytes"
            )


def _read_member(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    """Read one member, never producing more than its declared size."""
    declared = info.file_size
    buffer = bytearray()
    with archive.open(info, "r") as stream:
        while True:
            chunk = stream.read(min(READ_CHUNK_SIZE, declared - len(buffer) + 1))
            if not chunk:
                break
            buffer.extend(chunk)
            if len(buffer) > declared:
                raise CorruptArchiveError(
                    f"Entry {info.filename!r} inflates beyond its declared {declared:,} bytes"
                )
    if len(buffer) != declared:
        raise CorruptArchiveError(
            f"Entry {info.filename!r} is truncated: {len(buffer):,} of {declared:,} bytes"
        )
    return bytes(buffer)


def extract_archive(
    data: bytes,
    limits: Optional[ExtractionLimits] = None,
    logger: Optional[logging.Logger] = None,
) -> Iterator[ArchiveEntry]:
    """Lazily yield the file members of a ZIP archive held in memory.

    The whole central directory is validated before the first entry is
    produced, so an archive declaring an oversized member fails without
    decompressing anything. Errors discovered while reading a member (CRC
    mismatch, truncated data) surface at that point of the iteration, after
    the entries before it have already been yielded.

    Every call works on a fresh reader, so iterating twice requires calling
    this function twice with the same bytes.

    Args:
        data: Raw archive bytes.
        limits: Size and count ceilings, defaults when None.
        logger: Optional logger for progress messages.

    Yields:
        ArchiveEntry for each file member, in archive order.

    Raises:
        CorruptArchiveError: Invalid structure or a ceiling was exceeded.
        UnsupportedCompressionError: A member uses an unknown method.

    Example:
        >>> for entry in extract_archive(payload):
        ...     print(entry.name, entry.size)
    """
    log = logger or get_logger("extract")
    limits = limits or ExtractionLimits()

    archive = _open(data)
    try:
        members = [info for info in archive.infolist() if not info.is_dir()]
        _check_central_directory(members, limits)
        log.debug(f"ZIP contains {len(members)} file entries")

        for index, info in enumerate(members):
            try:
                content = _read_member(archive, info)
            except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
                raise CorruptArchiveError(
                    f"Entry {info.filename!r} (#{index}) is corrupt: {e}"
                ) from e
            except NotImplementedError as e:
                raise UnsupportedCompressionError(
                    f"Entry {info.filename!r} cannot be decompressed: {e}"
                ) from e
            log.debug(f"Extracted: {info.filename} ({len(content):,} bytes)")
            yield ArchiveEntry(name=info.filename, size=len(content), content=content, index=index)
    finally:
        archive.close()


def list_entries(data: bytes) -> list[tuple[str, int]]:
    """Return ``(name, declared_size)`` for every file member without reading them."""
    with _open(data) as archive:
        return [(info.filename, info.file_size) for info in archive.infolist() if not info.is_dir()]


__all__ = [
    "ArchiveEntry",
    "ExtractionLimits",
    "SUPPORTED_COMPRESSION",
    "ZIP_MAGIC",
    "extract_archive",
    "is_zip",
    "list_entries",
]
