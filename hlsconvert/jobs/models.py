"""Job record data model and state machine for conversion jobs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional
from urllib.parse import urlsplit

from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError
import uuid

from hlsconvert.core.exceptions import InvalidRequest


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}
)

# Permitted status changes; terminal states have no outgoing edges.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


class Job(BaseModel):
    """Tracks the lifecycle of one playlist conversion."""
    id: str = Field(default_factory=new_job_id)
    source_url: str
    status: JobStatus = JobStatus.PENDING
    output_path: str
    progress_percent: Optional[float] = None
    error_message: Optional[str] = None
    artifact_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


_http_url = TypeAdapter(AnyHttpUrl)


def validate_source_url(url) -> str:
    """Return ``url`` unchanged if it is an absolute http(s) URL with a host.

    Raises InvalidRequest otherwise.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidRequest("Invalid or missing M3U8 URL")
    url = url.strip()
    # AnyHttpUrl is lenient about a missing "//"; require the authority form.
    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise InvalidRequest(f"URL must be an absolute http(s) URL: {url!r}")
    try:
        _http_url.validate_python(url)
    except ValidationError:
        raise InvalidRequest(f"Malformed URL: {url!r}") from None
    return url
