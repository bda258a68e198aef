"""Tests for jobs/scheduler.py"""

import asyncio
import os
import time

import pytest

from hlsconvert.core.exceptions import InvalidRequest, NotFound, ServiceStopping
from hlsconvert.jobs.models import JobStatus
from hlsconvert.jobs.runner import ProcessRunner
from ffmpeg_scripts import FAILURE_SCRIPT, STUBBORN_SCRIPT, SUCCESS_SCRIPT

URL = "http://example.com/stream.m3u8"
URL_A = "http://example.com/a.m3u8"
URL_B = "http://example.com/b.m3u8"
URL_C = "http://example.com/c.m3u8"


async def wait_terminal(scheduler, job_id, timeout=10):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await scheduler.get_status(job_id)
        if job.is_terminal:
            return job
        assert loop.time() < deadline, "job never finished"
        await asyncio.sleep(0.01)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_returns_without_waiting_for_process(self, make_scheduler, fake_runner):
        scheduler = make_scheduler(max_concurrent=1)

        started = time.monotonic()
        job = await scheduler.submit(URL)
        elapsed = time.monotonic() - started

        # The fake run never finishes on its own.
        assert elapsed < 0.5
        assert job.status == JobStatus.RUNNING
        assert fake_runner.started_urls == [URL]

    @pytest.mark.asyncio
    async def test_invalid_url_creates_no_job(self, make_scheduler, store, fake_runner):
        scheduler = make_scheduler()

        with pytest.raises(InvalidRequest):
            await scheduler.submit("not-a-url")

        assert store.count() == 0
        assert fake_runner.started == []

    @pytest.mark.asyncio
    async def test_queued_job_runs_when_slot_frees(self, make_scheduler, fake_runner, store):
        scheduler = make_scheduler(max_concurrent=1)
        first = await scheduler.submit(URL_A)

        second = await scheduler.submit(URL)
        assert second.status == JobStatus.PENDING
        assert scheduler.queued_count == 1

        await fake_runner.complete(fake_runner.handle_for(URL_A))

        assert store.get(first.id).status == JobStatus.SUCCEEDED
        assert store.get(second.id).status == JobStatus.RUNNING

        await fake_runner.complete(fake_runner.handle_for(URL))
        assert store.get(second.id).status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_fifo_start_order(self, make_scheduler, fake_runner):
        scheduler = make_scheduler(max_concurrent=1)
        for url in (URL_A, URL_B, URL_C):
            await scheduler.submit(url)

        assert fake_runner.started_urls == [URL_A]
        await fake_runner.fail(fake_runner.handle_for(URL_A), "boom")
        assert fake_runner.started_urls == [URL_A, URL_B]
        await fake_runner.complete(fake_runner.handle_for(URL_B))
        assert fake_runner.started_urls == [URL_A, URL_B, URL_C]

    @pytest.mark.asyncio
    async def test_never_more_than_limit_running(self, make_scheduler, fake_runner, store):
        scheduler = make_scheduler(max_concurrent=2)
        urls = [f"http://example.com/{i}.m3u8" for i in range(5)]
        for url in urls:
            await scheduler.submit(url)
            assert store.count(JobStatus.RUNNING) <= 2

        for _ in urls:
            assert store.count(JobStatus.RUNNING) <= 2
            assert scheduler.running_count <= 2
            unfinished = [h for h in fake_runner.started if not h.finished]
            await fake_runner.complete(unfinished[0])

        assert store.count(JobStatus.SUCCEEDED) == 5
        assert scheduler.running_count == 0


class TestEvents:

    @pytest.mark.asyncio
    async def test_progress_then_success(self, make_scheduler, fake_runner, store):
        scheduler = make_scheduler()
        job = await scheduler.submit(URL)
        handle = fake_runner.handle_for(URL)

        observed = []
        for percent in (30, 70):
            await fake_runner.progress(handle, percent)
            observed.append((await scheduler.get_status(job.id)).progress_percent)
        await fake_runner.complete(handle)
        final = await scheduler.get_status(job.id)

        assert observed == [30, 70]
        assert final.status == JobStatus.SUCCEEDED
        assert final.progress_percent == 70
        assert final.artifact_url == f"/downloads/converted_{job.id}.mp4"
        assert os.path.exists(final.output_path)

    @pytest.mark.asyncio
    async def test_failure_records_message_and_removes_partial_file(self, make_scheduler, fake_runner):
        scheduler = make_scheduler()
        job = await scheduler.submit(URL)

        await fake_runner.fail(fake_runner.handle_for(URL), "Server returned 404 Not Found")

        final = await scheduler.get_status(job.id)
        assert final.status == JobStatus.FAILED
        assert final.error_message == "Server returned 404 Not Found"
        assert final.artifact_url is None
        assert not os.path.exists(final.output_path)

    @pytest.mark.asyncio
    async def test_completed_without_output_fails(self, make_scheduler, fake_runner):
        scheduler = make_scheduler()
        job = await scheduler.submit(URL)

        await fake_runner.complete(fake_runner.handle_for(URL), data=b"")

        final = await scheduler.get_status(job.id)
        assert final.status == JobStatus.FAILED
        assert final.error_message.startswith("finalize failed")
        assert not os.path.exists(final.output_path)
        assert scheduler.running_count == 0


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_pending_never_invokes_tool(self, make_scheduler, fake_runner):
        scheduler = make_scheduler(max_concurrent=1)
        await scheduler.submit(URL_A)
        queued = await scheduler.submit(URL_B)

        cancelled = await scheduler.cancel(queued.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert fake_runner.started_urls == [URL_A]
        assert fake_runner.cancel_calls == 0

        # The cancelled job is skipped when the slot frees.
        await fake_runner.complete(fake_runner.handle_for(URL_A))
        assert fake_runner.started_urls == [URL_A]

    @pytest.mark.asyncio
    async def test_cancel_running_removes_artifact(self, make_scheduler, fake_runner):
        scheduler = make_scheduler()
        job = await scheduler.submit(URL)
        handle = fake_runner.handle_for(URL)
        with open(handle.output_path, "wb") as f:
            f.write(b"partial")

        snapshot = await scheduler.cancel(job.id)
        assert snapshot.status == JobStatus.RUNNING
        assert handle.cancel_requested

        final = await wait_terminal(scheduler, job.id)
        assert final.status == JobStatus.CANCELLED
        assert fake_runner.cancel_calls == 1
        assert not os.path.exists(job.output_path)
        assert scheduler.running_count == 0

    @pytest.mark.asyncio
    async def test_cancel_twice_is_idempotent(self, make_scheduler, fake_runner):
        scheduler = make_scheduler()
        job = await scheduler.submit(URL)

        await scheduler.cancel(job.id)
        await scheduler.cancel(job.id)
        first = await wait_terminal(scheduler, job.id)
        second = await scheduler.cancel(job.id)

        assert first == second
        assert second.status == JobStatus.CANCELLED
        assert fake_runner.cancel_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_finished_job_keeps_terminal_state(self, make_scheduler, fake_runner):
        scheduler = make_scheduler()
        job = await scheduler.submit(URL)
        await fake_runner.complete(fake_runner.handle_for(URL))

        after = await scheduler.cancel(job.id)

        assert after.status == JobStatus.SUCCEEDED
        assert os.path.exists(after.output_path)

    @pytest.mark.asyncio
    async def test_unknown_job(self, make_scheduler):
        scheduler = make_scheduler()
        with pytest.raises(NotFound):
            await scheduler.cancel("missing")
        with pytest.raises(NotFound):
            await scheduler.get_status("missing")


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_cancels_queued_and_running(self, make_scheduler, fake_runner, store):
        scheduler = make_scheduler(max_concurrent=1)
        await scheduler.start()
        running = await scheduler.submit(URL_A)
        queued = await scheduler.submit(URL_B)

        await scheduler.stop()

        assert store.get(running.id).status == JobStatus.CANCELLED
        assert store.get(queued.id).status == JobStatus.CANCELLED
        assert fake_runner.started_urls == [URL_A]

    @pytest.mark.asyncio
    async def test_submit_after_stop_is_rejected(self, make_scheduler, fake_runner, store):
        scheduler = make_scheduler()
        await scheduler.start()
        await scheduler.stop()

        with pytest.raises(ServiceStopping) as exc_info:
            await scheduler.submit(URL)

        assert exc_info.value.status_code == 503
        assert store.count() == 0
        assert fake_runner.started == []

    @pytest.mark.asyncio
    async def test_list_jobs_filters_by_status(self, make_scheduler, fake_runner):
        scheduler = make_scheduler(max_concurrent=1)
        a = await scheduler.submit(URL_A)
        b = await scheduler.submit(URL_B)

        assert [j.id for j in await scheduler.list_jobs()] == [a.id, b.id]
        assert [j.id for j in await scheduler.list_jobs(JobStatus.PENDING)] == [b.id]

    def test_rejects_zero_concurrency(self, make_scheduler):
        with pytest.raises(ValueError):
            make_scheduler(max_concurrent=0)


class TestWithProcessRunner:

    @pytest.mark.asyncio
    async def test_real_process_success(self, make_scheduler, fake_ffmpeg):
        runner = ProcessRunner(ffmpeg_path=fake_ffmpeg(SUCCESS_SCRIPT))
        scheduler = make_scheduler(max_concurrent=1, runner=runner)

        job = await scheduler.submit(URL)
        final = await wait_terminal(scheduler, job.id)

        assert final.status == JobStatus.SUCCEEDED
        assert final.artifact_url.endswith(f"converted_{job.id}.mp4")
        with open(final.output_path, "rb") as f:
            assert f.read() == b"converted-bytes"

    @pytest.mark.asyncio
    async def test_real_process_failure_then_queue_drains(self, make_scheduler, fake_ffmpeg):
        runner = ProcessRunner(ffmpeg_path=fake_ffmpeg(FAILURE_SCRIPT))
        scheduler = make_scheduler(max_concurrent=1, runner=runner)

        first = await scheduler.submit(URL_A)
        second = await scheduler.submit(URL_B)
        assert second.status == JobStatus.PENDING

        for job in (first, second):
            final = await wait_terminal(scheduler, job.id)
            assert final.status == JobStatus.FAILED
            assert "404 Not Found" in final.error_message
            assert not os.path.exists(final.output_path)

    @pytest.mark.asyncio
    async def test_cancel_returns_before_stubborn_process_exits(self, make_scheduler, fake_ffmpeg):
        runner = ProcessRunner(ffmpeg_path=fake_ffmpeg(STUBBORN_SCRIPT), grace_seconds=1.5)
        scheduler = make_scheduler(max_concurrent=1, runner=runner)
        job = await scheduler.submit(URL)
        # Let the shell install its SIGTERM trap.
        await asyncio.sleep(0.3)

        started = time.monotonic()
        snapshot = await scheduler.cancel(job.id)
        elapsed = time.monotonic() - started

        assert elapsed < 0.5
        assert snapshot.status in (JobStatus.RUNNING, JobStatus.CANCELLED)
        final = await wait_terminal(scheduler, job.id)
        assert final.status == JobStatus.CANCELLED
        assert not os.path.exists(final.output_path)
        await scheduler.stop()
