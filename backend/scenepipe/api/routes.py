"""API route handlers and Pydantic request/response schemas."""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from scenepipe.orchestrator.command_loop import LoopResult
from scenepipe.orchestrator.pipeline import Director
from scenepipe.orchestrator.state import IN_FLIGHT_STATES, UnitBusyError
from scenepipe.pipeline.screenplay import ScreenplayParseError
from scenepipe.schemas.run import BatchRunSummary
from scenepipe.schemas.screenplay import Screenplay, Unit, UnitStatus
from scenepipe.services.job_poller import JobCancelled

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_director(request: Request) -> Director:
    return request.app.state.director


# ============================================================================
# Request / Response Schemas
# ============================================================================

class CreateRunRequest(BaseModel):
    scenes: list[Unit] = Field(min_length=1)
    character_references: list[str] = Field(default_factory=list)
    user_reference_images: list[str] = Field(default_factory=list)
    concurrency_limit: Optional[int] = Field(default=None, gt=0)


class RetryUnitRequest(BaseModel):
    force_image_regeneration: bool = False


class UpdateUnitRequest(BaseModel):
    custom_video_prompt: Optional[str] = None


class DraftRequest(BaseModel):
    prompt: str = Field(min_length=1)
    images_base64: list[str] = Field(default_factory=list)


class AgentMessageRequest(BaseModel):
    message: str = Field(min_length=1)


class UnitAcceptedResponse(BaseModel):
    run_id: str
    unit: Unit


class RetryFailedResponse(BaseModel):
    run_id: str
    retried: list[int]


class AgentCancelResponse(BaseModel):
    cancelled: bool


# ============================================================================
# Background helpers
# ============================================================================

async def _retry_in_background(director: Director, run_id: str, unit_id: int, force: bool) -> None:
    try:
        await director.retry_unit(run_id, unit_id, force_image_regeneration=force)
    except UnitBusyError as e:
        logger.warning(f"Run {run_id}: retry of unit {unit_id} skipped: {e}")


async def _start_in_background(director: Director, run_id: str, unit_id: int) -> None:
    try:
        await director.start_unit(run_id, unit_id)
    except UnitBusyError as e:
        logger.warning(f"Run {run_id}: start of unit {unit_id} skipped: {e}")


def _ensure_idle(director: Director, run_id: str, unit_id: int) -> Unit:
    unit = director.get_unit(run_id, unit_id)
    if unit.status in IN_FLIGHT_STATES:
        raise UnitBusyError(f"unit {unit_id} is {unit.status.value}")
    return unit


# ============================================================================
# Runs
# ============================================================================

@router.post("/runs", status_code=202, response_model=BatchRunSummary)
async def create_run(
    body: CreateRunRequest,
    background_tasks: BackgroundTasks,
    director: Director = Depends(get_director),
):
    """Register a batch run and process it in the background."""
    run = director.create_run(
        body.scenes,
        body.character_references,
        body.user_reference_images,
        body.concurrency_limit,
    )
    background_tasks.add_task(director.execute, run.run_id)
    return run.summary()


@router.get("/runs/{run_id}", response_model=BatchRunSummary)
async def get_run(run_id: str, director: Director = Depends(get_director)):
    return director.get_run(run_id)


@router.post("/runs/{run_id}/cancel", response_model=BatchRunSummary)
async def cancel_run(run_id: str, director: Director = Depends(get_director)):
    return director.cancel(run_id)


@router.delete("/runs/{run_id}", response_model=BatchRunSummary)
async def delete_run(run_id: str, director: Director = Depends(get_director)):
    """Cancel a run if needed and remove it from the registry."""
    return director.delete_run(run_id)


@router.post("/runs/{run_id}/units/{unit_id}/retry", status_code=202, response_model=UnitAcceptedResponse)
async def retry_unit(
    run_id: str,
    unit_id: int,
    background_tasks: BackgroundTasks,
    body: Optional[RetryUnitRequest] = None,
    director: Director = Depends(get_director),
):
    """Retry one unit, reusing its image unless regeneration is forced."""
    unit = _ensure_idle(director, run_id, unit_id)
    force = body.force_image_regeneration if body is not None else False
    background_tasks.add_task(_retry_in_background, director, run_id, unit_id, force)
    return UnitAcceptedResponse(run_id=run_id, unit=unit)


@router.post("/runs/{run_id}/units/{unit_id}/start", status_code=202, response_model=UnitAcceptedResponse)
async def start_unit(
    run_id: str,
    unit_id: int,
    background_tasks: BackgroundTasks,
    director: Director = Depends(get_director),
):
    """Manually generate a Pending or Failed unit."""
    unit = _ensure_idle(director, run_id, unit_id)
    if unit.status not in (UnitStatus.PENDING, UnitStatus.FAILED):
        raise HTTPException(
            status_code=409,
            detail=f"unit {unit_id} is {unit.status.value}; use retry to regenerate it",
        )
    background_tasks.add_task(_start_in_background, director, run_id, unit_id)
    return UnitAcceptedResponse(run_id=run_id, unit=unit)


@router.patch("/runs/{run_id}/units/{unit_id}", response_model=Unit)
async def update_unit(
    run_id: str,
    unit_id: int,
    body: UpdateUnitRequest,
    director: Director = Depends(get_director),
):
    return director.update_custom_video_prompt(run_id, unit_id, body.custom_video_prompt)


@router.post("/runs/{run_id}/retry-failed", status_code=202, response_model=RetryFailedResponse)
async def retry_failed(
    run_id: str,
    background_tasks: BackgroundTasks,
    director: Director = Depends(get_director),
):
    """Retry every failed unit of the run in the background."""
    summary = director.get_run(run_id)
    background_tasks.add_task(director.retry_failed_units, run_id)
    return RetryFailedResponse(run_id=run_id, retried=summary.failed)


# ============================================================================
# Screenplays and the command loop
# ============================================================================

@router.post("/screenplays/draft", response_model=Screenplay)
async def draft_screenplay(body: DraftRequest, director: Director = Depends(get_director)):
    try:
        return await director.draft_screenplay(body.prompt, body.images_base64)
    except ScreenplayParseError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except JobCancelled:
        raise HTTPException(status_code=409, detail="screenplay draft cancelled")


@router.post("/agent/messages", response_model=LoopResult)
async def agent_message(body: AgentMessageRequest, director: Director = Depends(get_director)):
    """Run the command loop for one message and return its result."""
    return await director.run_command_loop(body.message)


@router.post("/agent/cancel", response_model=AgentCancelResponse)
async def agent_cancel(director: Director = Depends(get_director)):
    return AgentCancelResponse(cancelled=director.cancel_command_loop())
