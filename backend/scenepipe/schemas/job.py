"""External async job handle as seen by the poller."""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, Field

# Status normalization sets
_QUEUED_STATUSES = frozenset({"queued", "pending", "submitted"})
_IN_PROGRESS_STATUSES = frozenset({"in_progress", "processing", "running"})
_COMPLETED_STATUSES = frozenset({"completed", "succeeded", "success", "done"})
_FAILED_STATUSES = frozenset({"failed", "error", "cancelled"})


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def _clamp_percent(v: Any) -> int:
    if v is None:
        return 0
    try:
        value = int(float(v))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


def normalize_job_status(raw: Optional[str]) -> JobStatus:
    """Map a provider status string onto the four job states.

    Unrecognized values count as in progress so polling continues until
    the timeout decides.
    """
    value = (raw or "").strip().lower()
    if value in _COMPLETED_STATUSES:
        return JobStatus.COMPLETED
    if value in _FAILED_STATUSES:
        return JobStatus.FAILED
    if value in _QUEUED_STATUSES:
        return JobStatus.QUEUED
    return JobStatus.IN_PROGRESS


class JobHandle(BaseModel):
    """The poller's view of one external async job."""

    external_id: str
    status: JobStatus = JobStatus.QUEUED
    progress_percent: Annotated[int, BeforeValidator(_clamp_percent)] = Field(default=0, ge=0, le=100)
    result_uri: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @classmethod
    def from_response(cls, data: dict) -> "JobHandle":
        """Build a handle from a video job API response body.

        A job reported as completed without a result URI is treated as failed.
        """
        status = normalize_job_status(data.get("status"))
        result_uri = data.get("video_url") or data.get("url")
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message") or str(error)

        if status == JobStatus.COMPLETED and not result_uri:
            status = JobStatus.FAILED
            error = error or "job completed without a video URL"

        progress = data.get("progress")
        if status == JobStatus.COMPLETED and progress is None:
            progress = 100

        return cls(
            external_id=str(data.get("id", "")),
            status=status,
            progress_percent=progress,
            result_uri=result_uri,
            error_message=error,
        )
