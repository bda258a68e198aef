"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import List, Optional

from hlsconvert.jobs.models import Job, JobStatus


class JobDispatcher(ABC):
    """Abstract interface for conversion job dispatching."""

    @abstractmethod
    async def submit(self, source_url: str) -> Job:
        """Validate and register a conversion. Returns the pending or running job."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Job:
        """Current snapshot of a job. Raises NotFound."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> Job:
        """Cancel a queued job, or signal a running one. Idempotent. Raises NotFound.

        A running job reaches ``cancelled`` asynchronously; the returned
        snapshot may still read ``running``.
        """
        ...

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start background work (retention sweep loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Cancel outstanding jobs and stop gracefully."""
        ...
