"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from hlsconvert.api.v1.jobs import get_dispatcher
from hlsconvert.jobs.models import JobStatus

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health, conversion tool availability, and queue state."""
    dispatcher = get_dispatcher()
    runner = dispatcher.runner
    jobs = await dispatcher.list_jobs()
    counts = {s.value: 0 for s in JobStatus}
    for job in jobs:
        counts[job.status.value] += 1

    return {
        "status": "healthy",
        "ffmpeg_path": runner.ffmpeg_path,
        "ffmpeg_available": runner.tool_available(),
        "max_concurrent_jobs": dispatcher.max_concurrent,
        "running": dispatcher.running_count,
        "queued": dispatcher.queued_count,
        "jobs": counts,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
