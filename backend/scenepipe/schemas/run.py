"""Read-only views of a batch run handed to observers."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from scenepipe.schemas.screenplay import Unit


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProgressEvent(BaseModel):
    """One progress observation emitted after a step or unit change."""

    run_id: str
    progress: float = Field(ge=0.0, le=1.0)
    images_done: int
    videos_done: int
    total_units: int
    unit: Optional[Unit] = None
    message: str = ""


class BatchRunSummary(BaseModel):
    """Snapshot of a batch run with its success/failure manifest."""

    run_id: str
    units: list[Unit]
    character_references: list[str]
    concurrency_limit: int
    cancelled: bool
    status: RunStatus
    progress: float = 0.0
    succeeded: list[int] = Field(default_factory=list)
    failed: list[int] = Field(default_factory=list)
    consistency_degraded: bool = False
