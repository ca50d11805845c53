"""
archive_ingest.utils - Utility functions and helpers.

This module contains shared utilities for:
- Logging configuration
- Time and backoff arithmetic
- Archive extraction
- Path handling

Configuration loading (``utils.config``) and resource lists
(``utils.manifest``) depend on the core package and are imported directly.
"""

from archive_ingest.utils.logging import (
    setup_logging,
    get_logger,
    header,
    JobLogAdapter,
    mask_sensitive_data,
    mask_url_sensitive_parts,
)
from archive_ingest.utils.paths import WorkdirManager
from archive_ingest.utils.timeutil import (
    Clock,
    calculate_backoff,
    format_timestamp,
    is_expired,
    parse_timestamp,
    utc_now,
)
from archive_ingest.utils.extract import (
    extract_archive,
    ArchiveEntry,
    ExtractionLimits,
    is_zip,
    list_entries,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "header",
    "JobLogAdapter",
    "mask_sensitive_data",
    "mask_url_sensitive_parts",
    # Paths
    "WorkdirManager",
    # Time
    "Clock",
    "calculate_backoff",
    "format_timestamp",
    "is_expired",
    "parse_timestamp",
    "utc_now",
    # Extraction
    "extract_archive",
    "ArchiveEntry",
    "ExtractionLimits",
    "is_zip",
    "list_entries",
]
