"""Tests for the HTTP fetcher."""

import hashlib
from unittest.mock import MagicMock

import pytest
import requests

from archive_ingest.core.errors import (
    ErrorKind,
    HashMismatchError,
    PermanentFetchError,
    TransientFetchError,
)
from archive_ingest.core.events import EventKind, EventSink
from archive_ingest.core.state import ResourceDescriptor
from archive_ingest.downloaders.http import HttpFetcher, compute_digest

URL = "https://example.org/data.zip"
BODY = b"archive bytes"
BODY_SHA256 = hashlib.sha256(BODY).hexdigest()


def make_response(status_code=200, chunks=(BODY,), headers=None, reason="OK"):
    """Build a mock streaming response."""
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.headers = headers or {}
    response.iter_content.return_value = iter(chunks)
    return response


class RecordingSink(EventSink):
    def __init__(self):
        self.events = []
        self.progress_calls = []

    def emit(self, event):
        self.events.append(event)

    def progress(self, job_id, done, total):
        self.progress_calls.append((job_id, done, total))


@pytest.fixture
def session():
    s = requests.Session()
    s.get = MagicMock()
    return s


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fetcher(session, fake_clock, sink):
    return HttpFetcher(
        max_attempts=3,
        session=session,
        clock=fake_clock,
        rng=lambda: 0.5,
        sink=sink,
    )


class TestComputeDigest:
    def test_sha256(self):
        assert compute_digest(BODY) == BODY_SHA256

    def test_md5(self):
        assert compute_digest(BODY, "md5") == hashlib.md5(BODY).hexdigest()


class TestHttpFetcherInit:
    """Tests for HttpFetcher initialization."""

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            HttpFetcher(max_attempts=0)

    def test_sets_user_agent_and_token(self, session):
        HttpFetcher(session=session, token="tok-1234567890abcdef", headers={"X-Test": "1"})
        assert session.headers["User-Agent"].startswith("archive-ingest/")
        assert session.headers["Authorization"] == "Bearer tok-1234567890abcdef"
        assert session.headers["X-Test"] == "1"

    def test_context_manager_closes_session(self):
        session = MagicMock()
        with HttpFetcher(session=session):
            pass
        session.close.assert_called_once()


class TestFetchSuccess:
    """Tests for successful fetches."""

    def test_returns_body(self, fetcher, session):
        session.get.return_value = make_response(chunks=(b"archive ", b"bytes"))
        assert fetcher.fetch(ResourceDescriptor(URL)) == BODY
        session.get.assert_called_once_with(URL, stream=True, timeout=30.0)

    def test_verifies_matching_hash(self, fetcher, session):
        session.get.return_value = make_response()
        descriptor = ResourceDescriptor(URL, expected_hash=f"sha256:{BODY_SHA256}")
        assert fetcher.fetch(descriptor) == BODY

    def test_emits_attempt_and_complete_events(self, fetcher, session, sink):
        session.get.return_value = make_response()
        fetcher.fetch(ResourceDescriptor(URL), job_id="job-1")
        kinds = [e.kind for e in sink.events]
        assert kinds == [EventKind.FETCH_ATTEMPT, EventKind.FETCH_COMPLETE]
        assert sink.events[0].attempt == 1
        assert sink.events[0].job_id == "job-1"

    def test_reports_progress(self, fetcher, session, sink):
        session.get.return_value = make_response(
            chunks=(b"archive ", b"bytes"), headers={"Content-Length": str(len(BODY))}
        )
        fetcher.fetch(ResourceDescriptor(URL), job_id="job-1")
        assert sink.progress_calls == [("job-1", 8, 13), ("job-1", 13, 13)]

    def test_response_is_closed(self, fetcher, session):
        response = make_response()
        session.get.return_value = response
        fetcher.fetch(ResourceDescriptor(URL))
        response.close.assert_called_once()


class TestHashVerification:
    """Tests for integrity checks."""

    def test_mismatch_is_fatal_and_not_retried(self, fetcher, session, fake_clock):
        """A 200 with the wrong content still fails, after a single attempt."""
        session.get.return_value = make_response(chunks=(b"tampered",))
        descriptor = ResourceDescriptor(URL, expected_hash=f"sha256:{BODY_SHA256}")

        with pytest.raises(HashMismatchError) as exc_info:
            fetcher.fetch(descriptor)

        assert session.get.call_count == 1
        assert fake_clock.sleeps == []
        assert exc_info.value.kind is ErrorKind.HASH_MISMATCH
        assert exc_info.value.expected == f"sha256:{BODY_SHA256}"
        assert exc_info.value.attempts == 1

    def test_mismatch_with_other_algorithm(self, fetcher, session):
        session.get.return_value = make_response(chunks=(b"tampered",))
        descriptor = ResourceDescriptor(URL, expected_hash="md5:" + hashlib.md5(BODY).hexdigest())
        with pytest.raises(HashMismatchError):
            fetcher.fetch(descriptor)


class TestRetries:
    """Tests for the retry policy."""

    def test_transient_then_success(self, fetcher, session, fake_clock, sink):
        session.get.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            make_response(status_code=503, reason="Service Unavailable"),
            make_response(),
        ]
        assert fetcher.fetch(ResourceDescriptor(URL)) == BODY
        assert session.get.call_count == 3
        # rng=0.5 means no jitter offset
        assert fake_clock.sleeps == [1.0, 2.0]
        retries = [e for e in sink.events if e.kind is EventKind.FETCH_RETRY]
        assert [e.attempt for e in retries] == [1, 2]

    @pytest.mark.parametrize("max_attempts", [1, 2, 3, 5])
    def test_attempts_never_exceed_maximum(self, session, fake_clock, max_attempts):
        """A permanently flaky source is tried exactly max_attempts times."""
        session.get.side_effect = requests.exceptions.Timeout("slow")
        fetcher = HttpFetcher(max_attempts=max_attempts, session=session, clock=fake_clock)

        with pytest.raises(TransientFetchError) as exc_info:
            fetcher.fetch(ResourceDescriptor(URL))

        assert session.get.call_count == max_attempts
        assert exc_info.value.attempts == max_attempts
        # No sleep after the final attempt
        assert len(fake_clock.sleeps) == max_attempts - 1

    def test_on_attempt_callback(self, fetcher, session):
        session.get.side_effect = [requests.exceptions.Timeout("slow"), make_response()]
        seen = []
        fetcher.fetch(ResourceDescriptor(URL), on_attempt=seen.append)
        assert seen == [1, 2]

    def test_retry_after_is_honoured(self, fetcher, session, fake_clock):
        session.get.side_effect = [
            make_response(status_code=429, headers={"Retry-After": "12"}, reason="Too Many Requests"),
            make_response(),
        ]
        fetcher.fetch(ResourceDescriptor(URL))
        assert fake_clock.sleeps == [12.0]

    def test_retry_after_never_exceeds_backoff_max(self, session, fake_clock):
        fetcher = HttpFetcher(
            max_attempts=2, session=session, clock=fake_clock, backoff_max=60, rng=lambda: 0.5
        )
        session.get.side_effect = [
            make_response(status_code=503, headers={"Retry-After": "86400"}),
            make_response(),
        ]
        assert fetcher.fetch(ResourceDescriptor(URL)) == BODY
        assert fake_clock.sleeps == [60.0]

    def test_unparseable_retry_after_falls_back_to_backoff(self, fetcher, session, fake_clock):
        session.get.side_effect = [
            make_response(status_code=503, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            make_response(),
        ]
        fetcher.fetch(ResourceDescriptor(URL))
        assert fake_clock.sleeps == [1.0]

    def test_truncated_body_is_transient(self, fetcher, session):
        session.get.side_effect = [
            make_response(chunks=(b"arch",), headers={"Content-Length": "13"}),
            make_response(),
        ]
        assert fetcher.fetch(ResourceDescriptor(URL)) == BODY
        assert session.get.call_count == 2

    def test_dropped_connection_mid_body_is_transient(self, fetcher, session):
        broken = make_response()
        broken.iter_content.side_effect = requests.exceptions.ChunkedEncodingError("gone")
        session.get.side_effect = [broken, make_response()]
        assert fetcher.fetch(ResourceDescriptor(URL)) == BODY


class TestPermanentFailures:
    """Tests for non-retryable failures."""

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 410])
    def test_client_errors_not_retried(self, fetcher, session, fake_clock, status_code):
        session.get.return_value = make_response(status_code=status_code, reason="Nope")

        with pytest.raises(PermanentFetchError) as exc_info:
            fetcher.fetch(ResourceDescriptor(URL))

        assert session.get.call_count == 1
        assert fake_clock.sleeps == []
        assert exc_info.value.status_code == status_code
        assert exc_info.value.kind is ErrorKind.PERMANENT_FETCH

    def test_malformed_url_not_retried(self, fetcher, session):
        session.get.side_effect = requests.exceptions.InvalidURL("bad")
        with pytest.raises(PermanentFetchError):
            fetcher.fetch(ResourceDescriptor("https://"))
        assert session.get.call_count == 1

    def test_declared_length_over_limit(self, session, fake_clock):
        fetcher = HttpFetcher(session=session, clock=fake_clock, max_download_bytes=4)
        session.get.return_value = make_response(headers={"Content-Length": "13"})
        with pytest.raises(PermanentFetchError):
            fetcher.fetch(ResourceDescriptor(URL))
        assert session.get.call_count == 1

    def test_streamed_body_over_limit(self, session, fake_clock):
        fetcher = HttpFetcher(session=session, clock=fake_clock, max_download_bytes=10)
        session.get.return_value = make_response(chunks=(b"archive ", b"bytes"))
        with pytest.raises(PermanentFetchError):
            fetcher.fetch(ResourceDescriptor(URL))
