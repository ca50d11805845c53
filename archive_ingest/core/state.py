"""In-memory job state for pipeline runs.

This module defines the resource descriptor handed in by callers, the Job
record the pipeline keeps per descriptor, and the state machine that governs
how a job moves from Pending to a terminal state. Job state is never
persisted; only cache entries outlive a batch.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..utils.timeutil import format_timestamp, utc_now
from .errors import ErrorKind

# Bare hex digests are recognised by length
DIGEST_LENGTHS = {
    32: "md5",
    40: "sha1",
    64: "sha256",
    128: "sha512",
}

_HEX_PATTERN = re.compile(r"^[0-9a-f]+$")


def split_hash(value: str) -> tuple[str, str]:
    """Split an expected-hash string into ``(algorithm, hexdigest)``.

    Accepts ``algo:hexdigest`` (e.g. ``sha256:ab12...``) or a bare hex digest
    whose length identifies the algorithm.

    Args:
        value: Hash string to parse.

    Returns:
        Tuple of lowercase algorithm name and lowercase hex digest.

    Raises:
        ValueError: If the string is not a recognised hash.
    """
    text = value.strip().lower()
    if ":" in text:
        algorithm, digest = text.split(":", 1)
    else:
        algorithm = DIGEST_LENGTHS.get(len(text), "")
        digest = text

    # shake_* digests have no fixed length
    if algorithm not in hashlib.algorithms_guaranteed or algorithm.startswith("shake"):
        raise ValueError(f"Unsupported hash algorithm in {value!r}")
    if not digest or not _HEX_PATTERN.match(digest):
        raise ValueError(f"Hash digest is not hexadecimal: {value!r}")

    expected_length = hashlib.new(algorithm).digest_size * 2
    if len(digest) != expected_length:
        raise ValueError(
            f"{algorithm} digest must be {expected_length} hex characters, got {len(digest)}"
        )
    return algorithm, digest


@dataclass(frozen=True)
class ResourceDescriptor:
    """Identifies a remote archive to ingest.

    Attributes:
        uri: Location of the archive (http or https URL).
        expected_hash: Optional ``algo:hexdigest`` of the archive bytes.
        version: Logical version tag of the resource.
        name: Optional display name.
    """

    uri: str
    expected_hash: Optional[str] = None
    version: str = ""
    name: Optional[str] = None

    @property
    def label(self) -> str:
        """Human-readable identity for logs and tables."""
        base = self.name or self.uri
        return f"{base}@{self.version}" if self.version else base

    def expected_digest(self) -> Optional[tuple[str, str]]:
        """Return the parsed expected hash, or None when not provided."""
        if not self.expected_hash:
            return None
        return split_hash(self.expected_hash)

    def to_dict(self) -> dict:
        return {
            "uri": self.uri,
            "expected_hash": self.expected_hash,
            "version": self.version,
            "name": self.name,
        }


class JobState(Enum):
    """Enumeration of possible job states."""

    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    STORING = "storing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED, JobState.CANCELLED})

# Pending -> Done is the already-cached short circuit
ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset(
        {JobState.FETCHING, JobState.DONE, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.FETCHING: frozenset({JobState.EXTRACTING, JobState.FAILED}),
    JobState.EXTRACTING: frozenset({JobState.STORING, JobState.FAILED}),
    JobState.STORING: frozenset({JobState.DONE, JobState.FAILED}),
    JobState.DONE: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a job is moved along an edge the state machine forbids."""


class EntryStatus(Enum):
    """Outcome of persisting a single archive entry."""

    STORED = "stored"
    DEDUPLICATED = "deduplicated"
    REFRESHED = "refreshed"


@dataclass
class EntryOutcome:
    """Per-entry record of what happened during the store phase."""

    name: str
    key: str
    size: int
    status: EntryStatus


@dataclass
class Job:
    """Represents one descriptor's trip through the pipeline.

    Attributes:
        id: Unique job identifier (UUID).
        descriptor: The resource being ingested.
        index: Position of the descriptor in the batch.
        state: Current job state.
        attempts: Number of fetch attempts made.
        error_kind: Classification of the failure, if the job failed.
        error: Failure message, if the job failed.
        annotation: Short note such as ``already-cached``.
        warnings: Non-fatal problems noticed while processing.
        entries: Per-entry store outcomes, in archive order.
        archive_key: Manifest key written for the archive, once stored.
        created_at: When the job was created.
        last_attempted_at: Start of the most recent fetch attempt.
        finished_at: When the job reached a terminal state.
    """

    descriptor: ResourceDescriptor
    index: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.PENDING
    attempts: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    annotation: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    entries: list[EntryOutcome] = field(default_factory=list)
    archive_key: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    last_attempted_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def transition(self, new_state: JobState, now: Optional[datetime] = None) -> None:
        """Move the job to ``new_state``.

        Raises:
            InvalidTransitionError: If the edge is not part of the state machine.
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.short_id}: cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        if new_state.is_terminal:
            self.finished_at = now or utc_now()

    def fail(self, kind: ErrorKind, message: str, now: Optional[datetime] = None) -> None:
        """Record a failure and move the job to FAILED."""
        self.error_kind = kind
        self.error = message
        self.transition(JobState.FAILED, now)

    def to_dict(self) -> dict:
        """Convert job to dictionary representation."""
        return {
            "id": self.id,
            "index": self.index,
            "descriptor": self.descriptor.to_dict(),
            "state": self.state.value,
            "attempts": self.attempts,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "annotation": self.annotation,
            "warnings": list(self.warnings),
            "entries": [
                {"name": e.name, "key": e.key, "size": e.size, "status": e.status.value}
                for e in self.entries
            ],
            "archive_key": self.archive_key,
            "created_at": format_timestamp(self.created_at),
            "last_attempted_at": (
                format_timestamp(self.last_attempted_at) if self.last_attempted_at else None
            ),
            "finished_at": format_timestamp(self.finished_at) if self.finished_at else None,
        }


__all__ = [
    "ALLOWED_TRANSITIONS",
    "EntryOutcome",
    "EntryStatus",
    "InvalidTransitionError",
    "Job",
    "JobState",
    "ResourceDescriptor",
    "TERMINAL_STATES",
    "split_hash",
]
