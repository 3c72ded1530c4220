"""Caller-facing facade over the scheduler, the command loop and the planner.

The Director owns the generation service, the LLM adapters and a registry
of batch runs, so the CLI and the API only deal in run ids, unit ids and
plain values.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Sequence

from scenepipe.config import Settings
from scenepipe.orchestrator.command_loop import CommandLoop, LoopEvent, LoopResult
from scenepipe.orchestrator.scheduler import BatchScheduler, ProgressListener
from scenepipe.orchestrator.state import (
    BatchRun,
    CancelToken,
    IllegalTransitionError,
    UnitBusyError,
)
from scenepipe.pipeline.screenplay import draft_screenplay
from scenepipe.schemas.run import BatchRunSummary, ProgressEvent
from scenepipe.schemas.screenplay import Screenplay, Unit, UnitStatus
from scenepipe.services.generation import GenerationService, get_generation_service
from scenepipe.services.job_poller import AsyncJobPoller
from scenepipe.services.llm import LLMAdapter, get_adapter

logger = logging.getLogger(__name__)


class UnknownRunError(KeyError):
    """No run with the given id is registered."""


def normalize_submitted_unit(unit: Unit) -> Unit:
    """Settle a unit saved mid-flight back into a resumable state.

    An image stage that never finished restarts from scratch; a video stage
    that never finished keeps its image.
    """
    if unit.status == UnitStatus.IMAGE_IN_FLIGHT:
        return unit.evolve(status=UnitStatus.PENDING, image_artifact=None, video_artifact=None)
    if unit.status == UnitStatus.VIDEO_IN_FLIGHT:
        if unit.image_artifact:
            return unit.evolve(status=UnitStatus.IMAGE_DONE, video_artifact=None)
        return unit.evolve(status=UnitStatus.PENDING, video_artifact=None)
    return unit


class Director:
    """Entry point for batch generation, retries and the command loop.

    Args:
        generation: Backend for images, video jobs and image analysis
        llm: Model used for screenplay planning and the command loop
        settings: Application settings (sections are handed out explicitly)
        rewrite_adapter: Model for the "rewrite" prompt-safety policy
        sleep: Awaitable sleep used by the job poller
    """

    def __init__(
        self,
        generation: GenerationService,
        llm: LLMAdapter,
        settings: Settings,
        rewrite_adapter: Optional[LLMAdapter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.generation = generation
        self.llm = llm
        self.settings = settings
        self.rewrite_adapter = rewrite_adapter
        self.poller = AsyncJobPoller(generation, settings.polling, sleep=sleep)
        self.scheduler = BatchScheduler(
            self.poller,
            settings.generation,
            settings.scheduler,
            rewrite_adapter=rewrite_adapter,
        )
        self._runs: dict[str, BatchRun] = {}
        self._loop_token: Optional[CancelToken] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Director":
        generation = get_generation_service(settings.generation)
        llm = get_adapter(settings.llm, settings.google_cloud)
        rewrite_adapter = None
        if settings.scheduler.prompt_safety == "rewrite":
            rewrite_adapter = get_adapter(
                settings.llm, settings.google_cloud, model_id=settings.llm.rewrite_model
            )
        return cls(generation, llm, settings, rewrite_adapter=rewrite_adapter)

    async def aclose(self) -> None:
        for run in self._runs.values():
            if not run.finished:
                run.cancel()
        await self.generation.aclose()
        await self.llm.aclose()
        if self.rewrite_adapter is not None:
            await self.rewrite_adapter.aclose()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def create_run(
        self,
        units: Iterable[Unit],
        character_references: Sequence[str] = (),
        user_reference_images: Sequence[str] = (),
        concurrency_limit: Optional[int] = None,
    ) -> BatchRun:
        """Register a new run without starting it."""
        self._evict_finished_runs()
        run = BatchRun(
            [normalize_submitted_unit(unit) for unit in units],
            character_references=character_references,
            user_reference_images=user_reference_images,
            concurrency_limit=concurrency_limit or self.settings.scheduler.concurrency_limit,
        )
        self._runs[run.run_id] = run
        logger.info(f"Registered run {run.run_id} with {len(run.store)} units")
        return run

    def _evict_finished_runs(self) -> None:
        """Drop the oldest idle runs beyond scheduler.max_finished_runs."""
        idle = [run_id for run_id, run in self._runs.items() if run.idle]
        excess = len(idle) - self.settings.scheduler.max_finished_runs
        for run_id in idle[:max(0, excess)]:
            del self._runs[run_id]
            logger.info(f"Evicted finished run {run_id}")

    def _get(self, run_id: str) -> BatchRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise UnknownRunError(run_id) from None

    def get_run(self, run_id: str) -> BatchRunSummary:
        return self._get(run_id).summary()

    def get_unit(self, run_id: str, unit_id: int) -> Unit:
        return self._get(run_id).store.get(unit_id)

    async def execute(self, run_id: str, on_progress: Optional[ProgressListener] = None) -> BatchRunSummary:
        """Run the batch of an already registered run to its end."""
        return await self.scheduler.run(self._get(run_id), on_progress)

    async def submit_batch(
        self,
        units: Iterable[Unit],
        character_references: Sequence[str] = (),
        user_reference_images: Sequence[str] = (),
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> BatchRunSummary:
        """Create a run and process it, returning the final summary."""
        run = self.create_run(units, character_references, user_reference_images, concurrency_limit)
        return await self.scheduler.run(run, on_progress)

    async def stream_batch(
        self,
        units: Iterable[Unit],
        character_references: Sequence[str] = (),
        user_reference_images: Sequence[str] = (),
        concurrency_limit: Optional[int] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Create a run and yield its progress events until it ends."""
        run = self.create_run(units, character_references, user_reference_images, concurrency_limit)
        async for event in self.scheduler.stream(run):
            yield event

    def cancel(self, run_id: str) -> BatchRunSummary:
        run = self._get(run_id)
        run.cancel()
        return run.summary()

    def delete_run(self, run_id: str) -> BatchRunSummary:
        """Cancel the run if it is still going and forget it."""
        run = self._runs.pop(run_id, None)
        if run is None:
            raise UnknownRunError(run_id)
        if not run.idle:
            run.cancel()
        logger.info(f"Deleted run {run_id}")
        return run.summary()

    # ------------------------------------------------------------------
    # Single units
    # ------------------------------------------------------------------
    async def retry_unit(
        self,
        run_id: str,
        unit_id: int,
        force_image_regeneration: bool = False,
        on_progress: Optional[ProgressListener] = None,
    ) -> Unit:
        return await self.scheduler.retry_unit(
            self._get(run_id), unit_id, force_image_regeneration, on_progress
        )

    async def start_unit(
        self,
        run_id: str,
        unit_id: int,
        on_progress: Optional[ProgressListener] = None,
    ) -> Unit:
        """Manually generate a Pending or Failed unit from its image onward.

        Raises:
            UnitBusyError: the unit is being processed
            IllegalTransitionError: the unit already has a result
        """
        run = self._get(run_id)
        unit = run.store.get(unit_id)
        if unit.status in (UnitStatus.IMAGE_IN_FLIGHT, UnitStatus.VIDEO_IN_FLIGHT):
            raise UnitBusyError(f"unit {unit_id} is {unit.status.value}")
        if unit.status not in (UnitStatus.PENDING, UnitStatus.FAILED):
            raise IllegalTransitionError(
                f"unit {unit_id} is {unit.status.value}; use retry to regenerate it"
            )
        return await self.scheduler.retry_unit(
            run, unit_id, force_image_regeneration=True, on_progress=on_progress
        )

    async def start_all_pending(self, run_id: str) -> list[Unit]:
        """Start every Pending unit one after another."""
        run = self._get(run_id)
        started = []
        for unit_id in run.store.ids():
            if run.cancelled:
                break
            if run.store.get(unit_id).status != UnitStatus.PENDING:
                continue
            try:
                started.append(await self.start_unit(run_id, unit_id))
            except UnitBusyError:
                logger.info(f"Unit {unit_id}: claimed elsewhere, skipping")
        return started

    async def retry_failed_units(self, run_id: str) -> list[Unit]:
        """Retry every Failed unit one after another, reusing images."""
        run = self._get(run_id)
        retried = []
        for unit_id in run.store.ids():
            if run.cancelled:
                break
            if run.store.get(unit_id).status != UnitStatus.FAILED:
                continue
            try:
                retried.append(await self.scheduler.retry_unit(run, unit_id))
            except UnitBusyError:
                logger.info(f"Unit {unit_id}: claimed elsewhere, skipping")
        return retried

    def update_custom_video_prompt(self, run_id: str, unit_id: int, prompt: Optional[str]) -> Unit:
        """Set (or clear, with an empty value) the prompt for the next video stage."""
        return self._get(run_id).store.update(unit_id, custom_video_prompt=prompt or None)

    # ------------------------------------------------------------------
    # Planning and the command loop
    # ------------------------------------------------------------------
    async def draft_screenplay(
        self,
        prompt: str,
        user_images_base64: Sequence[str] = (),
        cancel_token: Optional[CancelToken] = None,
    ) -> Screenplay:
        token = cancel_token or CancelToken()
        return await draft_screenplay(
            self.llm,
            self.generation,
            prompt,
            user_images_base64,
            is_cancelled=token.is_cancelled,
        )

    async def run_command_loop(
        self,
        message: str,
        on_event: Optional[Callable[[LoopEvent], None]] = None,
    ) -> LoopResult:
        """Run the command loop for one user message.

        Starting a new loop cancels the previous one of this session.
        """
        if self._loop_token is not None:
            self._loop_token.cancel()
        token = CancelToken()
        self._loop_token = token
        loop = CommandLoop(
            self.llm,
            self.poller,
            self.settings.command_loop,
            self.settings.generation,
            on_event=on_event,
        )
        try:
            return await loop.run(message, token)
        finally:
            if self._loop_token is token:
                self._loop_token = None

    def cancel_command_loop(self) -> bool:
        """Cancel the active command loop. Returns False if none is running."""
        if self._loop_token is None:
            return False
        self._loop_token.cancel()
        return True
