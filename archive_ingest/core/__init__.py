"""
archive_ingest.core - Core functionality and business logic.

This module contains:
- Job state and the job state machine
- The error taxonomy
- The content-addressed cache store
- The pipeline orchestrator and its events
"""

from archive_ingest.core.cache import CacheEntry, CacheStore, PutResult, PutStatus
from archive_ingest.core.errors import ErrorKind, IngestError
from archive_ingest.core.pipeline import Pipeline, PipelineConfig, PipelineResult
from archive_ingest.core.state import Job, JobState, ResourceDescriptor

__all__ = [
    "CacheEntry",
    "CacheStore",
    "ErrorKind",
    "IngestError",
    "Job",
    "JobState",
    "Pipeline",
    "PipelineConfig",
    "PipelineResult",
    "PutResult",
    "PutStatus",
    "ResourceDescriptor",
]
