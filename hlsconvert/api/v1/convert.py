"""Browser-facing conversion endpoint kept for the existing frontend.

  POST /api/convert-m3u8   {"url": ...}

Responds in the frontend's shape ({success, message, ...}). Unlike the old
endpoint it does not hold the request open until ffmpeg exits: it returns the
queued job, and the frontend polls /api/v1/jobs/{jobId}.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from hlsconvert.api.v1.jobs import JobSubmitRequest, get_dispatcher
from hlsconvert.core.exceptions import InvalidRequest
from hlsconvert.core.logging import get_logger
from hlsconvert.jobs.models import Job, JobStatus

router = APIRouter()
logger = get_logger(__name__)


@router.post("/convert-m3u8")
async def convert_m3u8(request: JobSubmitRequest):
    dispatcher = get_dispatcher()
    try:
        job = await dispatcher.submit(request.url)
    except InvalidRequest:
        logger.info("Invalid M3U8 URL received", url=request.url)
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Invalid or missing M3U8 URL"},
        )

    return JSONResponse(status_code=202, content=_compat_body(job))


def _compat_body(job: Job) -> dict:
    return {
        "success": True,
        "message": _status_message(job.status),
        "jobId": job.id,
        "status": job.status.value,
        "statusUrl": f"/api/v1/jobs/{job.id}",
        "downloadUrl": job.artifact_url,
    }


def _status_message(status: JobStatus) -> str:
    return {
        JobStatus.PENDING:   "Queued for conversion…",
        JobStatus.RUNNING:   "Conversion started",
    }.get(status, "Conversion submitted")
