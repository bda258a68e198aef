"""Thread-safe in-memory registry of conversion jobs.

Job records are immutable; every update swaps in a new copy under the lock,
so a reader always holds a consistent snapshot.
"""

import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from hlsconvert.core.logging import get_logger
from hlsconvert.jobs.models import TRANSITIONS, Job, JobStatus, new_job_id, utcnow

logger = get_logger(__name__)


class JobStore:
    """Maps job ids to their latest Job snapshot."""

    def __init__(self, reserve_path: Callable[[str], str]):
        """
        reserve_path: callable(job_id) -> str
            Returns the output location for a new job (ArtifactManager.reserve_path).
        """
        self._reserve_path = reserve_path
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, source_url: str) -> Job:
        job_id = new_job_id()
        output_path = self._reserve_path(job_id)
        job = Job(id=job_id, source_url=source_url, output_path=output_path)
        with self._lock:
            self._jobs[job.id] = job
        logger.info("Job created", job_id=job.id, source_url=source_url)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def update_status(
        self,
        job_id: str,
        status: Optional[JobStatus] = None,
        progress_percent: Optional[float] = None,
        error_message: Optional[str] = None,
        artifact_url: Optional[str] = None,
    ) -> Optional[Job]:
        """Apply a transition atomically. Returns the new snapshot, or None if rejected.

        Rejected when the job is unknown, already terminal, the status change
        is not permitted, or a progress update arrives outside ``running``.
        Progress never moves backwards.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning("Update for unknown job ignored", job_id=job_id)
                return None
            if job.is_terminal:
                logger.warning(
                    "Update on terminal job ignored",
                    job_id=job_id,
                    status=job.status.value,
                    requested=status.value if status else None,
                )
                return None

            changes = {}
            new_status = job.status
            if status is not None and status != job.status:
                if status not in TRANSITIONS[job.status]:
                    logger.warning(
                        "Invalid transition rejected",
                        job_id=job_id,
                        current=job.status.value,
                        requested=status.value,
                    )
                    return None
                new_status = status
                changes["status"] = status
                if status == JobStatus.RUNNING:
                    changes["started_at"] = utcnow()
                if status.is_terminal:
                    changes["finished_at"] = utcnow()
                if status == JobStatus.FAILED:
                    changes["error_message"] = error_message or "conversion failed"
                if status == JobStatus.SUCCEEDED:
                    changes["artifact_url"] = artifact_url

            if progress_percent is not None and new_status == JobStatus.RUNNING:
                percent = max(0.0, min(100.0, float(progress_percent)))
                if job.progress_percent is None or percent > job.progress_percent:
                    changes["progress_percent"] = percent

            if not changes:
                return job
            updated = job.model_copy(update=changes)
            self._jobs[job_id] = updated
            return updated

    def list(self, status: Optional[JobStatus] = None) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at)

    def count(self, status: Optional[JobStatus] = None) -> int:
        with self._lock:
            if status is None:
                return len(self._jobs)
            return sum(1 for j in self._jobs.values() if j.status == status)

    def purge_older_than(
        self, max_age: timedelta, on_purge: Optional[Callable[[Job], None]] = None
    ) -> int:
        """Remove terminal jobs that finished more than ``max_age`` ago."""
        cutoff = utcnow() - max_age
        with self._lock:
            expired = [
                j for j in self._jobs.values()
                if j.is_terminal and j.finished_at is not None and j.finished_at < cutoff
            ]
            for job in expired:
                del self._jobs[job.id]
        return self._after_purge(expired, on_purge)

    def purge_excess(self, keep: int, on_purge: Optional[Callable[[Job], None]] = None) -> int:
        """Remove the oldest terminal jobs so at most ``keep`` terminal jobs remain."""
        with self._lock:
            terminal = sorted(
                (j for j in self._jobs.values() if j.is_terminal),
                key=lambda j: j.finished_at or j.created_at,
            )
            excess = terminal[:max(0, len(terminal) - keep)]
            for job in excess:
                del self._jobs[job.id]
        return self._after_purge(excess, on_purge)

    def _after_purge(self, purged: List[Job], on_purge) -> int:
        if on_purge is not None:
            for job in purged:
                on_purge(job)
        if purged:
            logger.info("Purged jobs", count=len(purged))
        return len(purged)
