"""Pipeline orchestrator for the fetch -> extract -> store workflow.

This module provides the Pipeline class that takes a batch of resource
descriptors and runs each one through the Fetcher, the Archive Extractor and
the Cache Store on a bounded pool of worker threads. A failing job never
aborts the batch; its failure is recorded and reported in the PipelineResult.
"""

from __future__ import annotations

import logging
import queue
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from ..downloaders.http import HttpFetcher, compute_digest
from ..utils.extract import (
    DEFAULT_MAX_ENTRIES,
    DEFAULT_MAX_ENTRY_SIZE,
    DEFAULT_MAX_TOTAL_SIZE,
    ExtractionLimits,
    extract_archive,
)
from ..utils.logging import JobLogAdapter, get_logger, header
from ..utils.manifest import validate_descriptor
from ..utils.timeutil import Clock
from .cache import CacheStore, PutStatus
from .errors import (
    ConfigurationError,
    EmptyArchiveError,
    ErrorKind,
    FetchError,
    IngestError,
)
from .events import EventKind, EventSink, NullSink, PipelineEvent
from .state import (
    EntryOutcome,
    EntryStatus,
    Job,
    JobState,
    ResourceDescriptor,
)

EMPTY_ARCHIVE_POLICIES = ("fail", "warn")
ALREADY_CACHED = "already-cached"

_ENTRY_STATUS = {
    PutStatus.CREATED: EntryStatus.STORED,
    PutStatus.UNCHANGED: EntryStatus.DEDUPLICATED,
    PutStatus.REFRESHED: EntryStatus.REFRESHED,
}


@dataclass
class PipelineConfig:
    """Configuration for the pipeline.

    Attributes:
        concurrency: Number of jobs in flight at once (default 4).
        max_attempts: Fetch attempts per descriptor, first one included.
        timeout: Per-attempt fetch timeout in seconds.
        backoff_initial: Delay after the first failed fetch attempt.
        backoff_multiplier: Growth factor of the fetch backoff.
        backoff_max: Upper bound of a single fetch backoff delay.
        jitter: Randomised fraction of each backoff delay.
        store_max_attempts: Attempts per store operation on transient errors.
        ttl: Time-to-live of written entries in seconds, None for no expiry.
        max_download_bytes: Reject archives larger than this.
        max_entry_size: Largest declared uncompressed size of one entry.
        max_total_size: Largest declared uncompressed size of one archive.
        max_entries: Largest number of entries in one archive.
        empty_archive_policy: ``"fail"`` or ``"warn"`` for zero-entry archives.
        sweep_before_run: Evict expired entries before the batch starts.
        headers: Extra HTTP headers sent with every request.
        token: Optional bearer token for the remote source.
    """

    concurrency: int = 4
    max_attempts: int = 3
    timeout: float = 30.0
    backoff_initial: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max: float = 60.0
    jitter: float = 0.1
    store_max_attempts: int = 3
    ttl: Optional[float] = None
    max_download_bytes: Optional[int] = None
    max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE
    max_total_size: int = DEFAULT_MAX_TOTAL_SIZE
    max_entries: int = DEFAULT_MAX_ENTRIES
    empty_archive_policy: str = "fail"
    sweep_before_run: bool = False
    headers: Dict[str, str] = field(default_factory=dict)
    token: Optional[str] = None

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigurationError: If any setting is out of range.
        """
        if self.concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.store_max_attempts < 1:
            raise ConfigurationError(
                f"store_max_attempts must be >= 1, got {self.store_max_attempts}"
            )
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be > 0, got {self.timeout}")
        if self.backoff_initial < 0 or self.backoff_max < 0 or self.backoff_multiplier < 1:
            raise ConfigurationError("backoff settings must be non-negative, multiplier >= 1")
        if not 0 <= self.jitter <= 1:
            raise ConfigurationError(f"jitter must be within [0, 1], got {self.jitter}")
        if self.ttl is not None and self.ttl <= 0:
            raise ConfigurationError(f"ttl must be > 0 when set, got {self.ttl}")
        for name in ("max_entry_size", "max_total_size", "max_entries"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        if self.empty_archive_policy not in EMPTY_ARCHIVE_POLICIES:
            raise ConfigurationError(
                f"empty_archive_policy must be one of {', '.join(EMPTY_ARCHIVE_POLICIES)}, "
                f"got {self.empty_archive_policy!r}"
            )

    @property
    def limits(self) -> ExtractionLimits:
        return ExtractionLimits(
            max_entry_size=self.max_entry_size,
            max_total_size=self.max_total_size,
            max_entries=self.max_entries,
        )


@dataclass
class JobFailure:
    """A failed job, as reported in the PipelineResult.

    Attributes:
        descriptor: The descriptor whose job failed.
        kind: Error classification.
        attempts: Fetch attempts made.
        message: Failure detail.
        stored_entries: Keys of entries persisted before the failure.
    """

    descriptor: ResourceDescriptor
    kind: ErrorKind
    attempts: int
    message: str
    stored_entries: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "descriptor": self.descriptor.to_dict(),
            "kind": self.kind.value,
            "attempts": self.attempts,
            "message": self.message,
            "stored_entries": list(self.stored_entries),
        }


@dataclass
class PipelineResult:
    """Aggregate outcome of one batch run.

    Attributes:
        jobs: Every job of the batch, in descriptor order.
        started_at: Batch start timestamp.
        finished_at: Batch end timestamp.
        cancelled: Whether cancellation was requested during the batch.
        swept: Entries evicted by the pre-run sweep, None if no sweep ran or it
            failed.
        warnings: Batch-level problems that did not stop the batch.
    """

    jobs: List[Job] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    swept: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    def _count(self, state: JobState) -> int:
        return sum(1 for job in self.jobs if job.state is state)

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def skipped(self) -> int:
        return sum(
            1 for job in self.jobs if job.state is JobState.DONE and job.annotation == ALREADY_CACHED
        )

    @property
    def succeeded(self) -> int:
        return self._count(JobState.DONE) - self.skipped

    @property
    def failed(self) -> int:
        return self._count(JobState.FAILED)

    @property
    def cancelled_count(self) -> int:
        return self._count(JobState.CANCELLED)

    @property
    def failures(self) -> List[JobFailure]:
        return [
            JobFailure(
                descriptor=job.descriptor,
                kind=job.error_kind or ErrorKind.UNEXPECTED,
                attempts=job.attempts,
                message=job.error or "",
                stored_entries=[e.key for e in job.entries],
            )
            for job in self.jobs
            if job.state is JobState.FAILED
        ]

    @property
    def failure_fraction(self) -> float:
        """Failed jobs over all jobs, 0.0 for an empty batch."""
        return self.failed / self.total if self.total else 0.0

    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> str:
        """Generate a summary string of the batch.

        Returns:
            Human-readable one-line summary.
        """
        return (
            f"Batch of {self.total} finished in {self.duration_seconds():.1f}s: "
            f"{self.succeeded} succeeded, {self.skipped} skipped, "
            f"{self.failed} failed, {self.cancelled_count} cancelled"
        )

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled_count,
            "failure_fraction": self.failure_fraction,
            "warnings": list(self.warnings),
            "failures": [f.to_dict() for f in self.failures],
            "jobs": [job.to_dict() for job in self.jobs],
        }


class Pipeline:
    """Orchestrator for the fetch -> extract -> store workflow.

    Features:
    - Bounded concurrency: at most ``config.concurrency`` jobs in flight
    - Per-job failure isolation
    - Skip of descriptors whose archive is already cached
    - Cooperative cancellation via ``cancel()``, SIGINT or SIGTERM

    Attributes:
        config: Pipeline configuration.
        store: Cache store shared by all workers.
        fetcher: Fetcher used by all workers.
        logger: Logger instance for the pipeline.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: CacheStore,
        fetcher: Optional[HttpFetcher] = None,
        sink: Optional[EventSink] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Pipeline configuration object.
            store: Cache store handle shared by every worker.
            fetcher: Optional fetcher; built from ``config`` when None.
            sink: Destination for progress events.
            logger: Optional logger instance.
            clock: Time source used for job timestamps.

        Raises:
            ConfigurationError: If ``config`` is invalid.
        """
        config.validate()
        self.config = config
        self.store = store
        self.logger = logger or get_logger("pipeline")
        self._sink = sink or NullSink()
        self._clock = clock or Clock()
        self.fetcher = fetcher or HttpFetcher(
            max_attempts=config.max_attempts,
            timeout=config.timeout,
            headers=config.headers,
            token=config.token,
            max_download_bytes=config.max_download_bytes,
            backoff_initial=config.backoff_initial,
            backoff_multiplier=config.backoff_multiplier,
            backoff_max=config.backoff_max,
            jitter=config.jitter,
            clock=self._clock,
            sink=self._sink,
        )

        self._owns_fetcher = fetcher is None
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()

    def close(self) -> None:
        """Close the fetcher if this pipeline created it."""
        if self._owns_fetcher:
            self.fetcher.close()

    def __enter__(self) -> "Pipeline":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def cancel(self) -> None:
        """Request cancellation of the running batch.

        Jobs already started run to completion; jobs not yet started are
        marked cancelled.
        """
        if not self._cancel_event.is_set():
            self.logger.warning("Cancellation requested, finishing in-flight jobs...")
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def sweep(self) -> int:
        """Evict expired entries from the store."""
        evicted = self.store.sweep(self._clock.now())
        self._sink.emit(
            PipelineEvent(
                EventKind.SWEEP_FINISHED,
                message=f"{evicted} expired entries evicted",
                data={"evicted": evicted},
            )
        )
        return evicted

    def _sweep_before_run(self, result: PipelineResult) -> None:
        """Sweep, recording a store failure as a batch warning."""
        try:
            result.swept = self.sweep()
        except IngestError as e:
            warning = f"Pre-run sweep failed ({e.kind.value}): {e}"
            self.logger.warning(warning)
            result.warnings.append(warning)

    def run(
        self,
        descriptors: Sequence[ResourceDescriptor],
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineResult:
        """Process a batch of descriptors.

        Args:
            descriptors: Resources to ingest. Order is preserved in the result.
            cancel_event: Optional external event; setting it cancels the batch.

        Returns:
            PipelineResult with one job per descriptor.

        Raises:
            ConfigurationError: A descriptor is invalid. Raised before any job
                starts.
        """
        for index, descriptor in enumerate(descriptors):
            try:
                validate_descriptor(descriptor)
            except ConfigurationError as e:
                raise ConfigurationError(f"Descriptor #{index} ({descriptor.uri!r}): {e}") from e

        with self._run_lock:
            if cancel_event is not None:
                self._cancel_event = cancel_event
            else:
                self._cancel_event = threading.Event()

            result = PipelineResult(started_at=self._clock.now())
            result.jobs = [
                Job(descriptor=d, index=i, created_at=result.started_at)
                for i, d in enumerate(descriptors)
            ]

            self.logger.info(
                header(
                    "BATCH",
                    f"{len(result.jobs)} descriptor(s), concurrency {self.config.concurrency}\n"
                    f"store: {self.store.backend!r}",
                )
            )
            self._sink.emit(
                PipelineEvent(EventKind.BATCH_STARTED, data={"total": len(result.jobs)})
            )

            restore = self._register_signal_handlers()
            try:
                if self.config.sweep_before_run:
                    self._sweep_before_run(result)
                self._process_jobs(result.jobs)
            finally:
                restore()
                result.cancelled = self._cancel_event.is_set()
                result.finished_at = self._clock.now()

            self.logger.info(result.summary())
            self._sink.emit(
                PipelineEvent(
                    EventKind.BATCH_FINISHED, message=result.summary(), data=result.to_dict()
                )
            )
            return result

    def _process_jobs(self, jobs: List[Job]) -> None:
        """Run jobs on a bounded worker pool fed from a shared queue."""
        work: "queue.Queue[Job]" = queue.Queue()
        for job in jobs:
            work.put(job)

        workers = min(self.config.concurrency, len(jobs))
        if workers:
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="ingest-worker"
            ) as executor:
                futures = [executor.submit(self._worker, work) for _ in range(workers)]
                for future in futures:
                    # Workers catch per-job errors; anything here is a bug
                    future.result()

        # Whatever is still queued was never started
        for job in jobs:
            if job.state is JobState.PENDING:
                self._mark_cancelled(job)

    def _worker(self, work: "queue.Queue[Job]") -> None:
        while not self._cancel_event.is_set():
            try:
                job = work.get_nowait()
            except queue.Empty:
                return
            try:
                self._process_job(job)
            finally:
                work.task_done()

    def _process_job(self, job: Job) -> None:
        """Process a single job: skip check -> fetch -> extract -> store.

        Never raises for job-level failures; they end up on the job.
        """
        job_logger = JobLogAdapter(self.logger, job.id)
        descriptor = job.descriptor

        try:
            if self._is_cached(descriptor):
                job.annotation = ALREADY_CACHED
                job.transition(JobState.DONE, self._clock.now())
                job_logger.info(f"Already cached: {descriptor.label}")
                self._emit(EventKind.JOB_SKIPPED, job, ALREADY_CACHED)
                return

            job.transition(JobState.FETCHING)
            self._emit(EventKind.JOB_STARTED, job)
            job_logger.info(f"Fetching {descriptor.label}")
            data = self._fetch(job)

            job.transition(JobState.EXTRACTING)
            job_logger.debug(f"Fetched {len(data):,} bytes, extracting")
            self._extract_and_store(job, data, job_logger)

            job.transition(JobState.DONE, self._clock.now())
            job_logger.info(f"Done: {len(job.entries)} entr{'y' if len(job.entries) == 1 else 'ies'}")
            self._emit(EventKind.JOB_DONE, job, f"{len(job.entries)} entries")
        except IngestError as e:
            self._mark_failed(job, e.kind, str(e), job_logger)
        except Exception as e:
            # Unknown errors still must not take the batch down
            job_logger.exception(f"Unexpected error: {e}")
            self._mark_failed(job, ErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}", job_logger)

    def _is_cached(self, descriptor: ResourceDescriptor) -> bool:
        expected = descriptor.expected_digest()
        if expected is None:
            return False
        return self.store.is_archive_cached(*expected, now=self._clock.now())

    def _fetch(self, job: Job) -> bytes:
        def on_attempt(attempt: int) -> None:
            job.attempts = attempt
            job.last_attempted_at = self._clock.now()

        try:
            return self.fetcher.fetch(job.descriptor, job_id=job.id, on_attempt=on_attempt)
        except FetchError as e:
            job.attempts = max(job.attempts, e.attempts)
            raise

    def _extract_and_store(self, job: Job, data: bytes, job_logger: JobLogAdapter) -> None:
        """Stream entries from the archive into the store, then write the manifest."""
        descriptor = job.descriptor
        fetched_at = job.last_attempted_at or self._clock.now()
        ttl = self.config.ttl

        for archive_entry in extract_archive(data, limits=self.config.limits, logger=self.logger):
            if job.state is JobState.EXTRACTING:
                job.transition(JobState.STORING)
            entry = self.store.entry_from_archive(archive_entry, descriptor, ttl, fetched_at)
            put = self.store.put(entry)
            job.entries.append(
                EntryOutcome(archive_entry.name, put.key, entry.size, _ENTRY_STATUS[put.status])
            )
            self._sink.emit(
                PipelineEvent(
                    EventKind.ENTRY_STORED,
                    job_id=job.id,
                    uri=descriptor.uri,
                    message=f"{archive_entry.name} -> {put.key[:12]} ({put.status.value})",
                )
            )

        if not job.entries:
            if self.config.empty_archive_policy == "fail":
                raise EmptyArchiveError("Archive contains no entries")
            warning = "Archive contains no entries"
            job.warnings.append(warning)
            job_logger.warning(warning)
            job.transition(JobState.STORING)

        algorithm, digest = descriptor.expected_digest() or (
            "sha256",
            compute_digest(data, "sha256"),
        )
        self.store.put_manifest(
            algorithm,
            digest,
            [e.key for e in job.entries],
            descriptor,
            ttl=ttl,
            fetched_at=fetched_at,
        )
        job.archive_key = f"{algorithm}:{digest}"

    def _mark_failed(
        self, job: Job, kind: ErrorKind, message: str, job_logger: JobLogAdapter
    ) -> None:
        if job.state.is_terminal:
            # Raised while reporting an outcome already recorded on the job
            job_logger.error(f"Error after job reached {job.state.value} ({kind.value}): {message}")
            return
        job.fail(kind, message, self._clock.now())
        job_logger.error(f"Failed ({kind.value}): {message}")
        self._emit(EventKind.JOB_FAILED, job, message)

    def _mark_cancelled(self, job: Job) -> None:
        job.transition(JobState.CANCELLED, self._clock.now())
        self._emit(EventKind.JOB_CANCELLED, job)

    def _emit(self, kind: EventKind, job: Job, message: str = "") -> None:
        self._sink.emit(
            PipelineEvent(kind, job_id=job.id, uri=job.descriptor.uri, message=message)
        )

    def _register_signal_handlers(self) -> Callable[[], None]:
        """Route SIGINT/SIGTERM to ``cancel()`` for the duration of a batch.

        Returns:
            Callable restoring the previous handlers.
        """
        if threading.current_thread() is not threading.main_thread():
            self.logger.debug("Not on the main thread, signal handlers not installed")
            return lambda: None

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, self._handle_shutdown)
            except (ValueError, OSError):
                self.logger.debug(f"Could not register handler for {signum}")

        def restore() -> None:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        return restore

    def _handle_shutdown(self, signum: int, frame: object) -> None:
        """Handle graceful shutdown on SIGINT/SIGTERM.

        Args:
            signum: Signal number.
            frame: Current stack frame.
        """
        signal_name = signal.Signals(signum).name
        self.logger.warning(f"Received {signal_name}, initiating graceful shutdown...")
        self.cancel()

    def __repr__(self) -> str:
        return (
            f"Pipeline(concurrency={self.config.concurrency}, "
            f"max_attempts={self.config.max_attempts}, store={self.store.backend!r})"
        )


__all__ = [
    "ALREADY_CACHED",
    "EMPTY_ARCHIVE_POLICIES",
    "JobFailure",
    "Pipeline",
    "PipelineConfig",
    "PipelineResult",
]
