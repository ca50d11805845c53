"""Tests for path utilities and WorkdirManager."""

from datetime import datetime

from archive_ingest.utils.paths import WorkdirManager


class TestWorkdirManagerInitialization:
    """Tests for WorkdirManager initialization."""

    def test_init_with_path(self, temp_dir):
        """Initialize with Path object."""
        manager = WorkdirManager(temp_dir)
        assert manager.workdir == temp_dir.resolve()

    def test_init_with_string(self, temp_dir):
        """Initialize with string path."""
        manager = WorkdirManager(str(temp_dir))
        assert manager.workdir == temp_dir.resolve()

    def test_workdir_is_absolute(self, temp_dir):
        """Workdir is converted to absolute path."""
        manager = WorkdirManager(temp_dir)
        assert manager.workdir.is_absolute()

    def test_repr(self, temp_dir):
        """WorkdirManager has useful string representation."""
        repr_str = repr(WorkdirManager(temp_dir))
        assert "WorkdirManager" in repr_str
        assert "workdir" in repr_str


class TestDirectoryProperties:
    """Tests for directory property methods."""

    def test_logs_dir(self, workdir_manager):
        assert workdir_manager.logs_dir == workdir_manager.workdir / "logs"

    def test_reports_dir(self, workdir_manager):
        assert workdir_manager.reports_dir == workdir_manager.workdir / "reports"

    def test_config_path(self, workdir_manager):
        assert workdir_manager.config_path == workdir_manager.workdir / "archive-ingest.toml"

    def test_cache_db_path(self, workdir_manager):
        assert workdir_manager.cache_db_path == workdir_manager.workdir / "cache.db"


class TestEnsureDirs:
    """Tests for the ensure_dirs() method."""

    def test_creates_all_directories(self, temp_dir):
        """ensure_dirs creates nested directories that don't exist yet."""
        manager = WorkdirManager(temp_dir / "new" / "workdir")
        manager.ensure_dirs()

        assert manager.logs_dir.is_dir()
        assert manager.reports_dir.is_dir()

    def test_idempotent(self, workdir_manager):
        """Calling ensure_dirs multiple times is safe."""
        workdir_manager.ensure_dirs()
        workdir_manager.ensure_dirs()
        assert workdir_manager.logs_dir.exists()


class TestReports:
    """Tests for report paths."""

    def test_report_path_format(self, workdir_manager):
        path = workdir_manager.report_path(datetime(2024, 10, 19, 16, 45, 35))
        assert path == workdir_manager.reports_dir / "run_20241019_164535.json"

    def test_list_and_latest(self, workdir_manager):
        older = workdir_manager.report_path(datetime(2024, 1, 1, 0, 0, 0))
        newer = workdir_manager.report_path(datetime(2024, 6, 1, 12, 0, 0))
        newer.write_text("{}")
        older.write_text("{}")

        assert workdir_manager.list_reports() == [older, newer]
        assert workdir_manager.latest_report() == newer

    def test_no_reports(self, temp_dir):
        manager = WorkdirManager(temp_dir / "fresh")
        assert manager.list_reports() == []
        assert manager.latest_report() is None


class TestDiskUsage:
    """Tests for the get_disk_usage() method."""

    def test_empty_workdir(self, workdir_manager):
        usage = workdir_manager.get_disk_usage()
        assert usage == {"logs": 0, "reports": 0, "cache": 0, "total": 0}

    def test_counts_each_area(self, workdir_manager):
        (workdir_manager.logs_dir / "run.log").write_bytes(b"x" * 100)
        (workdir_manager.reports_dir / "run_1.json").write_bytes(b"x" * 50)
        workdir_manager.cache_db_path.write_bytes(b"x" * 25)

        usage = workdir_manager.get_disk_usage()

        assert usage["logs"] == 100
        assert usage["reports"] == 50
        assert usage["cache"] == 25
        assert usage["total"] == 175
