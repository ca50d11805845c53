"""Path utilities and working directory management.

This module provides the WorkdirManager class for the working directory
layout used by the archive-ingest CLI.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional


class WorkdirManager:
    """Manages the working directory holding logs, reports and the local cache.

    The working directory follows this structure:
        workdir/
        ├── archive-ingest.toml # Configuration file
        ├── cache.db            # SQLite cache (sqlite backend)
        ├── logs/               # Log files, one per run
        └── reports/            # JSON batch reports, one per run

    Attributes:
        workdir: The root working directory path.
    """

    CONFIG_NAME = "archive-ingest.toml"
    CACHE_DB_NAME = "cache.db"

    def __init__(self, workdir: Path) -> None:
        """Initialize the WorkdirManager with a root working directory.

        Args:
            workdir: Path to the root working directory. Can be a string
                that will be converted to Path.
        """
        self._workdir = Path(workdir).resolve()

    @property
    def workdir(self) -> Path:
        """Absolute path to the working directory."""
        return self._workdir

    @property
    def logs_dir(self) -> Path:
        return self._workdir / "logs"

    @property
    def reports_dir(self) -> Path:
        return self._workdir / "reports"

    @property
    def config_path(self) -> Path:
        return self._workdir / self.CONFIG_NAME

    @property
    def cache_db_path(self) -> Path:
        """Default location of the SQLite cache database."""
        return self._workdir / self.CACHE_DB_NAME

    def ensure_dirs(self) -> None:
        """Create the workdir, ``logs/`` and ``reports/`` if they don't exist."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.reports_dir.mkdir(parents=True, exist_ok=True)

    def report_path(self, when: Optional[datetime] = None) -> Path:
        """Path of the JSON report for a run started at ``when``.

        Args:
            when: Run start time, now by default.

        Returns:
            ``reports/run_YYYYMMDD_HHMMSS.json``.
        """
        stamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S")
        return self.reports_dir / f"run_{stamp}.json"

    def list_reports(self) -> list[Path]:
        """Existing reports, oldest first."""
        if not self.reports_dir.exists():
            return []
        return sorted(self.reports_dir.glob("run_*.json"))

    def latest_report(self) -> Optional[Path]:
        reports = self.list_reports()
        return reports[-1] if reports else None

    def get_disk_usage(self) -> dict[str, int]:
        """Calculate disk usage of logs, reports and the cache database.

        Returns:
            Dictionary with area names as keys and bytes used as values.
        """
        usage = {
            "logs": 0,
            "reports": 0,
            "cache": 0,
            "total": 0,
        }

        for name, path in [("logs", self.logs_dir), ("reports", self.reports_dir)]:
            if path.exists():
                usage[name] = sum(f.stat().st_size for f in path.rglob("*") if f.is_file())

        if self.cache_db_path.exists():
            usage["cache"] = self.cache_db_path.stat().st_size

        usage["total"] = usage["logs"] + usage["reports"] + usage["cache"]
        return usage

    def __repr__(self) -> str:
        return f"WorkdirManager(workdir={self._workdir!r})"
