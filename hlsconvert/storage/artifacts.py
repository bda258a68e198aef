"""Output artifact lifecycle: path reservation, publishing, cleanup, retention."""

import os
import time
from datetime import timedelta
from typing import List, Optional

from hlsconvert.config import Settings
from hlsconvert.core.exceptions import ArtifactError
from hlsconvert.core.logging import get_logger
from hlsconvert.jobs.models import Job, JobStatus
from hlsconvert.storage.backends import ArtifactBackend, LocalBackend, build_backend

logger = get_logger(__name__)

FILE_PREFIX = "converted_"


class ArtifactManager:
    """Owns every create/publish/delete decision for converted files.

    The conversion process writes the bytes; this class decides where they
    go and when they are removed.
    """

    def __init__(
        self,
        base_dir: str,
        backend: Optional[ArtifactBackend] = None,
        extension: str = "mp4",
        retention_hours: float = 2,
        max_retained_jobs: int = 0,
    ):
        self._base_dir = os.path.abspath(base_dir)
        os.makedirs(self._base_dir, exist_ok=True)
        self._backend = backend or LocalBackend()
        self._extension = extension.lstrip(".")
        self._retention = timedelta(hours=retention_hours)
        self._max_retained_jobs = max_retained_jobs

    @classmethod
    def from_settings(cls, settings: Settings, backend: Optional[ArtifactBackend] = None) -> "ArtifactManager":
        return cls(
            base_dir=settings.downloads_dir,
            backend=backend or build_backend(settings),
            extension=settings.output_extension,
            retention_hours=settings.job_retention_hours,
            max_retained_jobs=settings.max_retained_jobs,
        )

    @property
    def base_dir(self) -> str:
        return self._base_dir

    @property
    def backend(self) -> ArtifactBackend:
        return self._backend

    def filename_for(self, job_id: str) -> str:
        return f"{FILE_PREFIX}{job_id}.{self._extension}"

    def path_for(self, job_id: str) -> str:
        return os.path.join(self._base_dir, self.filename_for(job_id))

    def reserve_path(self, job_id: str) -> str:
        """Output location for a new job; ensures the directory exists."""
        os.makedirs(self._base_dir, exist_ok=True)
        return self.path_for(job_id)

    async def finalize(self, job_id: str) -> str:
        """Publish a finished artifact and return its retrievable reference."""
        path = self.path_for(job_id)
        if not os.path.isfile(path) or os.path.getsize(path) == 0:
            raise ArtifactError("output file missing or empty", path=path)
        reference = await self._backend.publish(job_id, path)
        logger.info("Artifact finalized", job_id=job_id, reference=reference)
        return reference

    async def cleanup(self, job_id: str, published: bool = False) -> None:
        """Best-effort removal of a job's files. Never raises."""
        path = self.path_for(job_id)
        try:
            if os.path.exists(path):
                os.remove(path)
                logger.info("Deleted artifact", job_id=job_id, path=path)
        except OSError as exc:
            logger.error("Error deleting artifact", job_id=job_id, path=path, error=str(exc))
        if not published:
            return
        try:
            await self._backend.discard(job_id, path)
        except Exception as exc:
            logger.error(
                "Error discarding published artifact",
                job_id=job_id,
                backend=self._backend.name,
                error=str(exc),
            )

    async def sweep(self, store) -> int:
        """Purge expired terminal jobs and their artifacts. Returns jobs purged."""
        purged: List[Job] = []
        count = store.purge_older_than(self._retention, on_purge=purged.append)
        if self._max_retained_jobs:
            count += store.purge_excess(self._max_retained_jobs, on_purge=purged.append)
        for job in purged:
            await self.cleanup(job.id, published=job.status == JobStatus.SUCCEEDED)
        self.cleanup_orphans(store)
        return count

    def cleanup_orphans(self, store) -> int:
        """Remove converted files older than the retention window that no job owns."""
        now = time.time()
        ttl_seconds = self._retention.total_seconds()
        removed = 0
        if not os.path.isdir(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            if not entry.startswith(FILE_PREFIX):
                continue
            job_id = os.path.splitext(entry[len(FILE_PREFIX):])[0]
            if store.get(job_id) is not None:
                continue
            path = os.path.join(self._base_dir, entry)
            try:
                if now - os.path.getmtime(path) > ttl_seconds:
                    os.remove(path)
                    removed += 1
            except OSError as exc:
                logger.error("Error deleting orphaned artifact", path=path, error=str(exc))
        if removed:
            logger.info("Removed orphaned artifacts", count=removed)
        return removed
