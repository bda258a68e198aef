"""In-process conversion scheduler using asyncio.

Runs up to ``max_concurrent`` conversions at a time; further jobs wait in a
FIFO queue and start as slots free up. Callers never wait on a process:
``submit`` registers the job and returns, process outcomes arrive as runner
events and are recorded in the JobStore.
"""

import asyncio
from collections import deque
from functools import partial
from typing import Deque, Dict, List, Optional

from hlsconvert.core.exceptions import ArtifactError, InvalidRequest, NotFound, ServiceStopping
from hlsconvert.core.logging import get_logger
from hlsconvert.jobs.dispatcher import JobDispatcher
from hlsconvert.jobs.models import Job, JobStatus, validate_source_url
from hlsconvert.jobs.runner import Completed, Failed, Progress, RunEvent, RunHandle
from hlsconvert.jobs.store import JobStore
from hlsconvert.storage.artifacts import ArtifactManager

logger = get_logger(__name__)


class JobScheduler(JobDispatcher):
    """Local async job scheduler with a concurrency cap and FIFO queue."""

    def __init__(
        self,
        store: JobStore,
        runner,
        artifacts: ArtifactManager,
        max_concurrent: int = 2,
        sweep_interval_seconds: float = 300,
    ):
        """
        runner: ProcessRunner-compatible object exposing
            start(source_url, output_path, on_event) -> RunHandle,
            request_cancel(handle) and
            async cancel(handle).
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._store = store
        self._runner = runner
        self._artifacts = artifacts
        self._max_concurrent = max_concurrent
        self._sweep_interval = sweep_interval_seconds
        self._queue: Deque[str] = deque()
        self._running: Dict[str, RunHandle] = {}
        self._cancelling: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def runner(self):
        return self._runner

    async def submit(self, source_url: str) -> Job:
        source_url = validate_source_url(source_url)
        if not self._active:
            raise ServiceStopping()
        job = self._store.create(source_url)
        self._queue.append(job.id)
        self._fill_slots()
        return self._store.get(job.id) or job

    async def get_status(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        return self._store.list(status)

    async def cancel(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise NotFound(job_id)
        if job.is_terminal:
            return job

        if job_id in self._queue:
            self._queue.remove(job_id)
            updated = self._store.update_status(job_id, JobStatus.CANCELLED)
            logger.info("Queued job cancelled", job_id=job_id)
            await self._artifacts.cleanup(job_id)
            return updated or job

        handle = self._running.get(job_id)
        if handle is not None and not handle.finished:
            self._request_cancel(job_id, handle)
        return self._store.get(job_id) or job

    def _request_cancel(self, job_id: str, handle: RunHandle) -> asyncio.Task:
        """Signal the process now; grace period and kill continue in the background.

        The job turns ``cancelled`` when the runner delivers its terminal event.
        """
        task = self._cancelling.get(job_id)
        if task is not None:
            return task
        logger.info("Cancelling running job", job_id=job_id, pid=handle.pid)
        self._runner.request_cancel(handle)
        task = asyncio.create_task(self._runner.cancel(handle))
        self._cancelling[job_id] = task
        task.add_done_callback(partial(self._cancel_done, job_id))
        return task

    def _cancel_done(self, job_id: str, task: asyncio.Task) -> None:
        self._cancelling.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Cancelling job failed", job_id=job_id, error=repr(exc))

    async def sweep(self) -> int:
        return await self._artifacts.sweep(self._store)

    async def start(self) -> None:
        self._active = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        self._active = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        queued = list(self._queue)
        self._queue.clear()
        for job_id in queued:
            self._store.update_status(job_id, JobStatus.CANCELLED)
            await self._artifacts.cleanup(job_id)

        running = list(self._running.items())
        if running:
            logger.info("Cancelling running jobs for shutdown", count=len(running))
        for job_id, handle in running:
            self._request_cancel(job_id, handle)
        pending = list(self._cancelling.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _fill_slots(self) -> None:
        """Start queued jobs in FIFO order while slots are free."""
        while self._active and self._queue and len(self._running) < self._max_concurrent:
            job_id = self._queue.popleft()
            job = self._store.update_status(job_id, JobStatus.RUNNING)
            if job is None:
                continue
            try:
                handle = self._runner.start(
                    job.source_url,
                    job.output_path,
                    on_event=partial(self._on_event, job_id),
                )
            except InvalidRequest as exc:
                self._store.update_status(job_id, JobStatus.FAILED, error_message=exc.message)
                continue
            self._running[job_id] = handle
            logger.info(
                "Job started",
                job_id=job_id,
                running=len(self._running),
                queued=len(self._queue),
            )

    async def _on_event(self, job_id: str, event: RunEvent) -> None:
        if isinstance(event, Progress):
            self._store.update_status(job_id, progress_percent=event.percent)
            return
        try:
            await self._finish(job_id, event)
        finally:
            self._running.pop(job_id, None)
            self._fill_slots()

    async def _finish(self, job_id: str, event: RunEvent) -> None:
        if isinstance(event, Completed):
            try:
                reference = await self._artifacts.finalize(job_id)
            except ArtifactError as exc:
                logger.error("Finalize failed", job_id=job_id, error=exc.message)
                self._store.update_status(
                    job_id, JobStatus.FAILED, error_message=f"finalize failed: {exc.message}"
                )
                await self._artifacts.cleanup(job_id)
                return
            self._store.update_status(job_id, JobStatus.SUCCEEDED, artifact_url=reference)
            logger.info("Job succeeded", job_id=job_id, artifact=reference)
        elif isinstance(event, Failed):
            self._store.update_status(job_id, JobStatus.FAILED, error_message=event.message)
            logger.warning("Job failed", job_id=job_id, error=event.message)
            await self._artifacts.cleanup(job_id)
        else:
            self._store.update_status(job_id, JobStatus.CANCELLED)
            logger.info("Running job cancelled", job_id=job_id)
            await self._artifacts.cleanup(job_id)

    async def _sweep_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self._artifacts.sweep(self._store)
            except Exception:
                logger.exception("Retention sweep failed")
