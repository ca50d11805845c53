"""
archive-ingest: fetch remote ZIP archives and cache their entries.

Downloads archives over HTTP(S) with retries and hash verification,
extracts them in memory with decompression-bomb limits, and stores every
entry in a content-addressed key-value cache (SQLite or Redis).
"""

from archive_ingest.core.cache import CacheEntry, CacheStore
from archive_ingest.core.pipeline import Pipeline, PipelineConfig, PipelineResult
from archive_ingest.core.state import Job, JobState, ResourceDescriptor

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CacheEntry",
    "CacheStore",
    "Job",
    "JobState",
    "Pipeline",
    "PipelineConfig",
    "PipelineResult",
    "ResourceDescriptor",
]
