"""Structured pipeline events and the sinks that consume them.

Components never read from a sink; they only emit. ``LoggingSink`` turns
events into log lines, ``RichProgressSink`` additionally drives progress
bars, and ``NullSink`` discards everything.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from ..utils.logging import get_logger, mask_url_sensitive_parts


class EventKind(Enum):
    """Kinds of events emitted while a batch runs."""

    BATCH_STARTED = "batch_started"
    BATCH_FINISHED = "batch_finished"
    SWEEP_FINISHED = "sweep_finished"
    JOB_STARTED = "job_started"
    JOB_SKIPPED = "job_skipped"
    JOB_DONE = "job_done"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    FETCH_ATTEMPT = "fetch_attempt"
    FETCH_RETRY = "fetch_retry"
    FETCH_COMPLETE = "fetch_complete"
    ENTRY_STORED = "entry_stored"


JOB_FINISHED_KINDS = frozenset(
    {EventKind.JOB_SKIPPED, EventKind.JOB_DONE, EventKind.JOB_FAILED, EventKind.JOB_CANCELLED}
)

_LEVELS = {
    EventKind.FETCH_RETRY: logging.WARNING,
    EventKind.JOB_FAILED: logging.ERROR,
    EventKind.JOB_CANCELLED: logging.WARNING,
    EventKind.FETCH_ATTEMPT: logging.DEBUG,
    EventKind.ENTRY_STORED: logging.DEBUG,
}


@dataclass(frozen=True)
class PipelineEvent:
    """A single structured event.

    Attributes:
        kind: What happened.
        job_id: Job the event belongs to, if any.
        uri: Resource URI involved, if any.
        attempt: Fetch attempt number (1-based), if relevant.
        message: Human-readable detail.
        data: Extra machine-readable fields.
    """

    kind: EventKind
    job_id: Optional[str] = None
    uri: Optional[str] = None
    attempt: Optional[int] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


class EventSink:
    """Write-only destination for events and progress updates."""

    def emit(self, event: PipelineEvent) -> None:
        raise NotImplementedError

    def progress(self, job_id: str, done: int, total: Optional[int]) -> None:
        """Report bytes transferred for a job; ``total`` may be unknown."""
        raise NotImplementedError


class NullSink(EventSink):
    """Sink that drops everything."""

    def emit(self, event: PipelineEvent) -> None:
        pass

    def progress(self, job_id: str, done: int, total: Optional[int]) -> None:
        pass


class LoggingSink(EventSink):
    """Sink that writes each event as a log line."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or get_logger("events")

    def emit(self, event: PipelineEvent) -> None:
        level = _LEVELS.get(event.kind, logging.INFO)
        parts = []
        if event.job_id:
            parts.append(f"[JOB {event.job_id[:8]}]")
        parts.append(event.kind.value)
        if event.attempt is not None:
            parts.append(f"attempt={event.attempt}")
        if event.uri:
            parts.append(mask_url_sensitive_parts(event.uri))
        if event.message:
            parts.append(f"- {event.message}")
        self.logger.log(level, " ".join(parts))

    def progress(self, job_id: str, done: int, total: Optional[int]) -> None:
        pass


class RichProgressSink(LoggingSink):
    """Logging sink that also renders rich progress bars.

    An overall bar counts finished jobs; every job in flight gets its own
    download bar that disappears when the job finishes. Use as a context
    manager so the live display is started and stopped cleanly.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger)
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console or Console(),
            transient=False,
        )
        self._overall: Optional[TaskID] = None
        self._job_bars: Dict[str, TaskID] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "RichProgressSink":
        self._progress.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._progress.stop()

    def emit(self, event: PipelineEvent) -> None:
        super().emit(event)
        with self._lock:
            if event.kind is EventKind.BATCH_STARTED:
                self._overall = self._progress.add_task(
                    "[cyan]Overall Progress", total=event.data.get("total", 0)
                )
            elif event.kind is EventKind.JOB_STARTED and event.job_id:
                self._job_bars[event.job_id] = self._progress.add_task(
                    f"[yellow]Fetching {event.job_id[:8]}...", total=None
                )
            elif event.kind in JOB_FINISHED_KINDS:
                bar = self._job_bars.pop(event.job_id, None) if event.job_id else None
                if bar is not None:
                    self._progress.remove_task(bar)
                if self._overall is not None:
                    self._progress.update(self._overall, advance=1)

    def progress(self, job_id: str, done: int, total: Optional[int]) -> None:
        with self._lock:
            bar = self._job_bars.get(job_id)
            if bar is not None:
                self._progress.update(bar, completed=done, total=total)


__all__ = [
    "EventKind",
    "EventSink",
    "LoggingSink",
    "NullSink",
    "PipelineEvent",
    "RichProgressSink",
]
