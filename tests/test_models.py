"""Tests for jobs/models.py"""

import pytest
from pydantic import ValidationError

from hlsconvert.core.exceptions import InvalidRequest
from hlsconvert.jobs.models import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    Job,
    JobStatus,
    validate_source_url,
)


class TestValidateSourceUrl:

    @pytest.mark.parametrize("url", [
        "http://example.com/stream.m3u8",
        "https://cdn.example.com/live/index.m3u8?token=abc",
        "http://127.0.0.1:8080/playlist.m3u8",
    ])
    def test_accepts_absolute_http_urls(self, url):
        assert validate_source_url(url) == url

    def test_strips_surrounding_whitespace(self):
        assert validate_source_url("  https://example.com/a.m3u8 ") == "https://example.com/a.m3u8"

    @pytest.mark.parametrize("url", [
        None,
        "",
        "   ",
        "not-a-url",
        "/relative/stream.m3u8",
        "ftp://example.com/stream.m3u8",
        "file:///etc/passwd",
        "http:/example.com/stream.m3u8",
        "https://",
        42,
    ])
    def test_rejects_invalid_urls(self, url):
        with pytest.raises(InvalidRequest) as exc_info:
            validate_source_url(url)
        assert exc_info.value.status_code == 400


class TestJobStateMachine:

    def test_terminal_statuses_have_no_outgoing_transitions(self):
        for status in TERMINAL_STATUSES:
            assert status.is_terminal
            assert TRANSITIONS[status] == frozenset()

    def test_pending_cannot_skip_to_success(self):
        assert JobStatus.SUCCEEDED not in TRANSITIONS[JobStatus.PENDING]
        assert JobStatus.FAILED not in TRANSITIONS[JobStatus.PENDING]
        assert JobStatus.CANCELLED in TRANSITIONS[JobStatus.PENDING]

    def test_job_defaults(self):
        job = Job(source_url="http://example.com/a.m3u8", output_path="/tmp/out.mp4")
        assert job.status == JobStatus.PENDING
        assert job.progress_percent is None
        assert job.error_message is None
        assert job.finished_at is None
        assert len(job.id) == 32

    def test_job_is_immutable(self):
        job = Job(source_url="http://example.com/a.m3u8", output_path="/tmp/out.mp4")
        with pytest.raises(ValidationError):
            job.status = JobStatus.RUNNING
