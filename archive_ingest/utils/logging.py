"""Logging setup with rich console output and optional file logging.

Provides:
- Console output through RichHandler, file output under ``<workdir>/logs``
- ``JobLogAdapter`` prefixing every message with the job it belongs to
- ``header`` for labelled, multi-line status messages
- Masking of credentials before they reach a log line
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

LOGGER_NAME = "archive_ingest"

# Width of the right-aligned "[LABEL]:" column used by header()
HEADER_WIDTH = 12


def setup_logging(
    workdir: Optional[Path] = None,
    verbose: bool = False,
) -> logging.Logger:
    """Configure the ``archive_ingest`` logger.

    The console always gets a RichHandler (DEBUG when verbose, INFO
    otherwise). When ``workdir`` is given, everything down to DEBUG is also
    written to ``workdir/logs/run_YYYYMMDD_HHMMSS.log``.

    Args:
        workdir: Directory under which ``logs/`` is created, or None for
            console-only logging.
        verbose: Show DEBUG messages on the console.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console_handler = RichHandler(
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=verbose,
        markup=True,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    if workdir is not None:
        logs_dir = Path(workdir) / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = logs_dir / f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger.debug(f"Logging initialized. Log file: {log_file}")

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get the package logger or one of its children.

    Args:
        name: Optional sub-logger name, e.g. ``"downloaders.http"``.
    """
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)


class JobLogAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with a job ID.

    Usage:
        log = JobLogAdapter(base_logger, job_id="3f2a9c1e-...")
        log.info("Fetching")  # Logs: [JOB 3f2a9c1e] Fetching
    """

    def __init__(self, logger: logging.Logger, job_id: str) -> None:
        super().__init__(logger, {"job_id": job_id})
        self.job_id = job_id

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        return f"[JOB {self.job_id[:8]}] {msg}", kwargs


def header(label: str, message: str, color: str = "cyan") -> str:
    """Format a message under a right-aligned bold ``[LABEL]:`` header.

    Continuation lines of a multi-line message are indented to line up with
    the first one, so blocks such as configuration dumps stay readable.

    Args:
        label: Short tag such as ``CONFIG`` or ``HTTP``.
        message: Text to log, may span several lines.
        color: Rich color name for the label.

    Returns:
        A rich-markup string ready to hand to a logger.
    """
    lines = message.split("\n")
    tag = f"[{label}]:".rjust(HEADER_WIDTH + 1)
    # Escape the literal bracket so rich does not parse it as markup
    tag = tag.replace("[", "\\[")
    first = f"[bold {color}]{tag}[/bold {color}] {lines[0]}"
    indent = " " * (HEADER_WIDTH + 2)
    return "\n".join([first] + [indent + line for line in lines[1:]])


def mask_sensitive_data(value: str, visible_chars: int = 4) -> str:
    """Mask sensitive data, showing only the last few characters.

    Args:
        value: The sensitive string to mask (e.g., a bearer token).
        visible_chars: Number of characters to show at the end.

    Returns:
        Masked string with asterisks and visible suffix.

    Examples:
        >>> mask_sensitive_data("tok-1234567890abcdef")
        '****************cdef'
        >>> mask_sensitive_data("")
        ''
    """
    if not value:
        return ""

    if len(value) <= visible_chars:
        if len(value) <= 1:
            return "*" * len(value)
        return "*" * (len(value) - 1) + value[-1]

    return "*" * (len(value) - visible_chars) + value[-visible_chars:]


_SENSITIVE_PARAMS = re.compile(
    r"((?:api[_-]?key|token|secret|password|auth|key|access[_-]?token|signature)=)([^&\s]+)",
    re.IGNORECASE,
)
_URL_CREDENTIALS = re.compile(r"(://[^:/@\s]*:)([^@/\s]+)(@)")


def mask_url_sensitive_parts(url: str) -> str:
    """Mask credentials embedded in a URL.

    Covers sensitive query parameters (``?token=...``) and passwords in the
    userinfo part (``redis://:secret@host``).
    """
    masked = _SENSITIVE_PARAMS.sub(
        lambda m: m.group(1) + mask_sensitive_data(m.group(2)), url
    )
    return _URL_CREDENTIALS.sub(
        lambda m: m.group(1) + mask_sensitive_data(m.group(2)) + m.group(3), masked
    )


__all__ = [
    "JobLogAdapter",
    "LOGGER_NAME",
    "get_logger",
    "header",
    "mask_sensitive_data",
    "mask_url_sensitive_parts",
    "setup_logging",
]
