"""Tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from archive_ingest.cli import (
    EXIT_CANCELLED,
    EXIT_CONFIG,
    EXIT_FAILURES,
    EXIT_OK,
    app,
    exit_code_for,
)
from archive_ingest.core.cache import content_key
from archive_ingest.core.errors import ErrorKind, PermanentFetchError
from archive_ingest.core.pipeline import PipelineResult
from archive_ingest.core.state import Job, JobState, ResourceDescriptor
from archive_ingest.utils.logging import get_logger

runner = CliRunner()


class StubFetcher:
    def __init__(self, responses):
        self.responses = responses

    def fetch(self, descriptor, job_id=None, on_attempt=None):
        if on_attempt:
            on_attempt(1)
        response = self.responses[descriptor.uri]
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = get_logger()
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


@pytest.fixture
def workdir(temp_dir):
    return temp_dir / "work"


def run_batch(workdir, resource_file, responses, *extra):
    with patch("archive_ingest.core.pipeline.HttpFetcher", return_value=StubFetcher(responses)):
        return runner.invoke(
            app,
            ["run", "--workdir", str(workdir), "--resources", str(resource_file), "--no-progress", *extra],
        )


class TestExitCodes:
    """Tests for exit_code_for()."""

    def _result(self, states, cancelled=False):
        jobs = []
        for state in states:
            job = Job(ResourceDescriptor("https://x/a.zip"))
            if state is JobState.FAILED:
                job.fail(ErrorKind.TRANSIENT, "timeout")
            else:
                job.transition(state)
            jobs.append(job)
        return PipelineResult(jobs=jobs, cancelled=cancelled)

    def test_all_done(self):
        assert exit_code_for(self._result([JobState.DONE, JobState.DONE])) == EXIT_OK

    def test_any_failure_by_default(self):
        assert exit_code_for(self._result([JobState.DONE, JobState.FAILED])) == EXIT_FAILURES

    def test_tolerated_fraction(self):
        result = self._result([JobState.DONE, JobState.FAILED])
        assert exit_code_for(result, max_failure_fraction=0.5) == EXIT_OK
        assert exit_code_for(result, max_failure_fraction=0.4) == EXIT_FAILURES

    def test_cancelled_wins(self):
        result = self._result([JobState.DONE, JobState.CANCELLED], cancelled=True)
        assert exit_code_for(result) == EXIT_CANCELLED


class TestInitConfig:
    def test_writes_file(self, workdir):
        result = runner.invoke(app, ["init-config", "--workdir", str(workdir)])
        assert result.exit_code == EXIT_OK
        assert (workdir / "archive-ingest.toml").exists()

    def test_refuses_overwrite_without_force(self, workdir):
        runner.invoke(app, ["init-config", "--workdir", str(workdir)])
        result = runner.invoke(app, ["init-config", "--workdir", str(workdir)])
        assert result.exit_code == EXIT_FAILURES

        result = runner.invoke(app, ["init-config", "--workdir", str(workdir), "--force"])
        assert result.exit_code == EXIT_OK


class TestRunCommand:
    """Tests for the run command."""

    def test_no_resources(self, workdir):
        result = runner.invoke(app, ["run", "--workdir", str(workdir), "--no-progress"])
        assert result.exit_code == EXIT_OK
        assert "No resources" in result.output
        # First run creates the configuration file
        assert (workdir / "archive-ingest.toml").exists()

    def test_invalid_config_exits_2(self, workdir):
        workdir.mkdir(parents=True)
        (workdir / "archive-ingest.toml").write_text("[pipeline]\nconcurrency = 0\n")
        result = runner.invoke(app, ["run", "--workdir", str(workdir), "--no-progress"])
        assert result.exit_code == EXIT_CONFIG

    def test_invalid_resource_list_exits_2(self, workdir, temp_dir):
        resource_file = temp_dir / "list.txt"
        resource_file.write_text("ftp://x/a.zip\n")
        result = run_batch(workdir, resource_file, {})
        assert result.exit_code == EXIT_CONFIG

    def test_missing_resource_list_exits_2(self, workdir, temp_dir):
        result = run_batch(workdir, temp_dir / "absent.txt", {})
        assert result.exit_code == EXIT_CONFIG

    def test_successful_batch(self, workdir, temp_dir, make_zip):
        resource_file = temp_dir / "list.txt"
        resource_file.write_text("https://x/a.zip - v1\n")
        result = run_batch(workdir, resource_file, {"https://x/a.zip": make_zip({"a.txt": "alpha"})})

        assert result.exit_code == EXIT_OK, result.output
        reports = list((workdir / "reports").glob("run_*.json"))
        assert len(reports) == 1
        report = json.loads(reports[0].read_text())
        assert report["succeeded"] == 1
        assert report["jobs"][0]["entries"][0]["key"] == content_key(b"alpha")
        assert (workdir / "cache.db").exists()

    def test_failures_exit_1(self, workdir, temp_dir, make_zip):
        resource_file = temp_dir / "list.txt"
        resource_file.write_text("https://x/a.zip\nhttps://x/b.zip\n")
        responses = {
            "https://x/a.zip": make_zip({"a.txt": "alpha"}),
            "https://x/b.zip": PermanentFetchError("HTTP 404", url="https://x/b.zip", status_code=404),
        }

        result = run_batch(workdir, resource_file, responses)
        assert result.exit_code == EXIT_FAILURES

        tolerant = run_batch(workdir, resource_file, responses, "--max-failure-fraction", "0.5")
        assert tolerant.exit_code == EXIT_OK


class TestStoreCommands:
    """Tests for show, evict and sweep."""

    @pytest.fixture
    def populated(self, workdir, temp_dir, make_zip):
        resource_file = temp_dir / "list.txt"
        resource_file.write_text("https://x/a.zip\n")
        result = run_batch(workdir, resource_file, {"https://x/a.zip": make_zip({"a.txt": "alpha"})})
        assert result.exit_code == EXIT_OK
        return workdir

    def test_show_lists_keys(self, populated):
        result = runner.invoke(app, ["show", "--workdir", str(populated)])
        assert result.exit_code == EXIT_OK
        assert content_key(b"alpha") in result.output
        assert "2 key(s)" in result.output

    def test_show_entry_writes_payload(self, populated, temp_dir):
        out = temp_dir / "payload.bin"
        result = runner.invoke(
            app, ["show", content_key(b"alpha"), "--workdir", str(populated), "--output", str(out)]
        )
        assert result.exit_code == EXIT_OK
        assert out.read_bytes() == b"alpha"

    def test_show_missing_key(self, populated):
        result = runner.invoke(app, ["show", "0" * 64, "--workdir", str(populated)])
        assert result.exit_code == EXIT_FAILURES

    def test_show_without_config(self, workdir):
        result = runner.invoke(app, ["show", "--workdir", str(workdir)])
        assert result.exit_code == EXIT_CONFIG

    def test_evict(self, populated):
        key = content_key(b"alpha")
        result = runner.invoke(app, ["evict", key, "--workdir", str(populated), "--force"])
        assert result.exit_code == EXIT_OK

        again = runner.invoke(app, ["evict", key, "--workdir", str(populated), "--force"])
        assert again.exit_code == EXIT_FAILURES

    def test_evict_declined(self, populated):
        result = runner.invoke(
            app, ["evict", content_key(b"alpha"), "--workdir", str(populated)], input="n\n"
        )
        assert result.exit_code == EXIT_OK
        assert "Cancelled" in result.output

    def test_sweep(self, populated):
        result = runner.invoke(app, ["sweep", "--workdir", str(populated)])
        assert result.exit_code == EXIT_OK
        assert "Evicted 0 expired entries" in result.output


class TestCheckCommand:
    def test_check_with_defaults(self, workdir):
        result = runner.invoke(app, ["check", "--workdir", str(workdir)])
        assert result.exit_code == EXIT_OK, result.output
        assert "All checks passed" in result.output
