"""Conversion job API: submit, poll status, cancel, download output."""

import os
from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse, RedirectResponse
from pydantic import BaseModel
from typing import Optional

from hlsconvert.jobs.models import Job, JobStatus

router = APIRouter()

# Set by main.create_app
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


class JobSubmitRequest(BaseModel):
    url: Optional[str] = None


def job_to_dict(job: Job) -> dict:
    """Public view of a job snapshot. The server-side output path stays internal."""
    response = {
        "job_id": job.id,
        "source_url": job.source_url,
        "status": job.status.value,
        "progress": job.progress_percent,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }
    if job.status == JobStatus.SUCCEEDED:
        response["download_url"] = job.artifact_url
    if job.status == JobStatus.FAILED:
        response["error"] = job.error_message
    return response


@router.post("/jobs", status_code=202)
async def submit_job(request: JobSubmitRequest):
    """Queue a playlist conversion. Returns immediately; poll the job for progress."""
    job = await get_dispatcher().submit(request.url)
    return job_to_dict(job)


@router.get("/jobs")
async def list_jobs(status: Optional[JobStatus] = Query(default=None)):
    jobs = await get_dispatcher().list_jobs(status)
    return {"jobs": [job_to_dict(j) for j in jobs]}


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    job = await get_dispatcher().get_status(job_id)
    return job_to_dict(job)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Cancel a queued or running job. Cancelling a finished job is a no-op."""
    job = await get_dispatcher().cancel(job_id)
    return job_to_dict(job)


@router.get("/jobs/{job_id}/download")
async def download_job_output(job_id: str):
    """Stream the converted file, or redirect to its object-storage URL."""
    job = await get_dispatcher().get_status(job_id)
    if job.status != JobStatus.SUCCEEDED or not job.artifact_url:
        raise HTTPException(status_code=404, detail="Output not available yet")

    if job.artifact_url.startswith(("http://", "https://")):
        return RedirectResponse(job.artifact_url)

    if not os.path.isfile(job.output_path):
        raise HTTPException(status_code=404, detail="Output file not found")
    filename = os.path.basename(job.output_path)
    return FileResponse(job.output_path, media_type="video/mp4", filename=filename)
