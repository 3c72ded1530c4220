"""Batch scheduler: drives every unit of a run through image then video.

Units are processed in consecutive batches of `concurrency_limit`; units
inside a batch run concurrently and the next batch starts only when all of
them have settled. A unit's failure never aborts its siblings. Progress is
(image steps + video steps settled) / (2 × units), recomputed after every
step, so it never decreases.

Retrying a single unit reuses the same stage code as the batch path.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from scenepipe.config import GenerationConfig, SchedulerConfig
from scenepipe.orchestrator.state import (
    RETRYABLE_STATES,
    BatchRun,
    CancelToken,
    UnitBusyError,
    retry_entry_state,
)
from scenepipe.pipeline.keyframes import generate_unit_image
from scenepipe.pipeline.video_gen import build_video_prompt, generate_unit_video
from scenepipe.schemas.job import JobStatus
from scenepipe.schemas.run import BatchRunSummary, ProgressEvent
from scenepipe.schemas.screenplay import Unit, UnitStatus
from scenepipe.services.job_poller import AsyncJobPoller, JobCancelled
from scenepipe.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

IMAGE_STEP = "image"
VIDEO_STEP = "video"


class _ProgressTracker:
    """Counts settled (step, unit) pairs and emits ProgressEvents."""

    def __init__(
        self,
        run: BatchRun,
        listener: Optional[ProgressListener],
        total_units: Optional[int] = None,
        update_run: bool = True,
    ):
        self.run = run
        self.total_units = len(run.store) if total_units is None else total_units
        self._listener = listener
        self._update_run = update_run
        self._settled: set[tuple[str, int]] = set()

    @property
    def fraction(self) -> float:
        if self.total_units == 0:
            return 1.0
        return min(1.0, len(self._settled) / (2 * self.total_units))

    def _count(self, step: str) -> int:
        return sum(1 for settled_step, _ in self._settled if settled_step == step)

    def settle(self, step: str, unit_id: int, unit: Optional[Unit] = None, message: str = "") -> None:
        self._settled.add((step, unit_id))
        if self._update_run:
            self.run.progress = max(self.run.progress, self.fraction)
        self.emit(unit, message)

    def settle_unit(self, unit_id: int, unit: Optional[Unit] = None, message: str = "") -> None:
        self._settled.add((IMAGE_STEP, unit_id))
        self.settle(VIDEO_STEP, unit_id, unit, message)

    def emit(self, unit: Optional[Unit] = None, message: str = "") -> None:
        if self._listener is None:
            return
        event = ProgressEvent(
            run_id=self.run.run_id,
            progress=self.fraction,
            images_done=self._count(IMAGE_STEP),
            videos_done=self._count(VIDEO_STEP),
            total_units=self.total_units,
            unit=unit,
            message=message,
        )
        try:
            self._listener(event)
        except Exception:
            logger.exception("Progress listener raised; continuing run")


class BatchScheduler:
    """Runs BatchRuns against a generation service.

    Args:
        poller: Job poller wrapping the generation service
        generation: Model/size/duration settings for requests
        config: Scheduler settings (prompt safety, fallback)
        rewrite_adapter: LLM used when prompt_safety is "rewrite"
    """

    def __init__(
        self,
        poller: AsyncJobPoller,
        generation: GenerationConfig,
        config: SchedulerConfig,
        rewrite_adapter: Optional[LLMAdapter] = None,
    ):
        self.poller = poller
        self.service = poller.service
        self.generation = generation
        self.config = config
        self.rewrite_adapter = rewrite_adapter

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------
    async def run(self, run: BatchRun, on_progress: Optional[ProgressListener] = None) -> BatchRunSummary:
        """Process every Pending unit of the run, batch by batch.

        Returns:
            Final summary; `cancelled` is set if the run was cancelled.
        """
        tracker = _ProgressTracker(run, on_progress)
        unit_ids = run.store.ids()
        limit = run.concurrency_limit
        logger.info(
            f"Run {run.run_id}: {len(unit_ids)} units, concurrency {limit}, "
            f"{len(run.character_references)} character references"
        )

        for batch_start in range(0, len(unit_ids), limit):
            if run.cancelled:
                logger.info(f"Run {run.run_id}: cancelled before batch at unit {batch_start}")
                break
            batch = unit_ids[batch_start:batch_start + limit]
            await asyncio.gather(*(
                self._process_unit(run, unit_id, batch_start + offset, tracker)
                for offset, unit_id in enumerate(batch)
            ))

        run.mark_finished()
        summary = run.summary()
        logger.info(
            f"Run {run.run_id}: {summary.status.value} "
            f"({len(summary.succeeded)} succeeded, {len(summary.failed)} failed)"
        )
        tracker.emit(message=f"run {summary.status.value}")
        return summary

    async def stream(self, run: BatchRun) -> AsyncIterator[ProgressEvent]:
        """Run the batch and yield its progress events as they happen.

        Closing the generator early cancels the run.
        """
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self.run(run, on_progress=queue.put_nowait))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            if not task.done():
                run.cancel()
                await asyncio.wait({task})

    async def _process_unit(
        self,
        run: BatchRun,
        unit_id: int,
        position: int,
        tracker: _ProgressTracker,
    ) -> None:
        if run.cancelled:
            return

        claim = run.store.claim(unit_id, {UnitStatus.PENDING}, UnitStatus.IMAGE_IN_FLIGHT)
        if claim is None:
            current = run.store.get(unit_id)
            logger.info(f"Unit {unit_id}: already {current.status.value}, skipping")
            tracker.settle_unit(unit_id, current, f"unit {unit_id} skipped")
            return

        previous, claimed = claim
        tracker.emit(claimed, f"unit {unit_id} image started")
        await self._run_stages(run, claimed, previous, position, tracker, run.token, start_with_image=True)

    # ------------------------------------------------------------------
    # Retry path
    # ------------------------------------------------------------------
    async def retry_unit(
        self,
        run: BatchRun,
        unit_id: int,
        force_image_regeneration: bool = False,
        on_progress: Optional[ProgressListener] = None,
    ) -> Unit:
        """Re-run one unit, reusing its image unless regeneration is forced.

        Raises:
            UnknownUnitError: unit is not part of the run
            UnitBusyError: unit is already being processed
        """
        unit = run.store.get(unit_id)
        target = retry_entry_state(unit, force_image_regeneration)
        claim = run.store.claim(unit_id, RETRYABLE_STATES, target)
        if claim is None:
            raise UnitBusyError(f"unit {unit_id} is {run.store.get(unit_id).status.value}")

        previous, claimed = claim
        logger.info(
            f"Unit {unit_id}: retry from {previous.status.value} "
            f"({'reusing image' if target == UnitStatus.VIDEO_IN_FLIGHT else 'new image'})"
        )
        tracker = _ProgressTracker(run, on_progress, total_units=1, update_run=False)
        tracker.emit(claimed, f"unit {unit_id} retry started")
        token = run.open_attempt()
        try:
            await self._run_stages(
                run,
                claimed,
                previous,
                run.store.ids().index(unit_id),
                tracker,
                token,
                start_with_image=target == UnitStatus.IMAGE_IN_FLIGHT,
            )
        finally:
            run.close_attempt(token)
        return run.store.get(unit_id)

    # ------------------------------------------------------------------
    # Stages shared by both paths
    # ------------------------------------------------------------------
    async def _run_stages(
        self,
        run: BatchRun,
        claimed: Unit,
        pre_claim: Unit,
        position: int,
        tracker: _ProgressTracker,
        token: CancelToken,
        start_with_image: bool,
    ) -> None:
        if start_with_image:
            unit = await self._image_stage(run, claimed, pre_claim, position, tracker, token)
            if unit is None or token.is_cancelled():
                return
            claim = run.store.claim(unit.id, {UnitStatus.IMAGE_DONE}, UnitStatus.VIDEO_IN_FLIGHT)
            if claim is None:
                tracker.settle(VIDEO_STEP, unit.id, run.store.get(unit.id))
                return
            pre_video, unit = claim
        else:
            pre_video, unit = pre_claim, claimed
            tracker.settle(IMAGE_STEP, unit.id, unit, f"unit {unit.id} reusing image")

        await self._video_stage(run, unit, pre_video, tracker, token)

    def _discard(self, run: BatchRun, unit: Unit, pre_claim: Unit, tracker: _ProgressTracker) -> None:
        """Roll back a unit whose attempt was cancelled mid-stage."""
        if run.store.restore(unit.id, pre_claim, unit.status):
            tracker.emit(pre_claim, f"unit {unit.id} cancelled")

    def _fail(
        self,
        run: BatchRun,
        unit: Unit,
        message: str,
        tracker: _ProgressTracker,
    ) -> None:
        logger.error(f"Unit {unit.id}: {unit.status.value} failed: {message}")
        failed = run.store.transition(unit.id, UnitStatus.FAILED, error_message=message)
        tracker.settle_unit(unit.id, failed, f"unit {unit.id} failed")

    async def _image_stage(
        self,
        run: BatchRun,
        unit: Unit,
        pre_claim: Unit,
        position: int,
        tracker: _ProgressTracker,
        token: CancelToken,
    ) -> Optional[Unit]:
        try:
            result = await generate_unit_image(
                self.service,
                unit,
                position,
                run.character_references,
                run.user_reference_images,
                fallback_to_text=self.config.identity_fallback_to_text,
            )
        except asyncio.CancelledError:
            self._discard(run, unit, pre_claim, tracker)
            raise
        except Exception as e:
            if token.is_cancelled():
                self._discard(run, unit, pre_claim, tracker)
                return None
            self._fail(run, unit, f"image generation failed: {e}", tracker)
            return None

        if token.is_cancelled():
            logger.info(f"Unit {unit.id}: discarding image that arrived after cancellation")
            self._discard(run, unit, pre_claim, tracker)
            return None

        if result.degraded:
            run.consistency_degraded = True
        done = run.store.transition(unit.id, UnitStatus.IMAGE_DONE, image_artifact=result.uri)
        tracker.settle(IMAGE_STEP, unit.id, done, f"unit {unit.id} image done")
        return done

    async def _video_stage(
        self,
        run: BatchRun,
        unit: Unit,
        pre_claim: Unit,
        tracker: _ProgressTracker,
        token: CancelToken,
    ) -> None:
        def on_job_progress(percent: int, status: JobStatus) -> None:
            tracker.emit(unit, f"unit {unit.id} video {status.value} {percent}%")

        try:
            prompt = await build_video_prompt(unit, self.config.prompt_safety, self.rewrite_adapter)
            if token.is_cancelled():
                self._discard(run, unit, pre_claim, tracker)
                return
            handle = await generate_unit_video(
                self.poller,
                unit,
                prompt,
                run.character_references,
                self.generation,
                on_progress=on_job_progress,
                is_cancelled=token.is_cancelled,
            )
        except JobCancelled:
            self._discard(run, unit, pre_claim, tracker)
            return
        except asyncio.CancelledError:
            self._discard(run, unit, pre_claim, tracker)
            raise
        except Exception as e:
            if token.is_cancelled():
                self._discard(run, unit, pre_claim, tracker)
                return
            self._fail(run, unit, f"video generation failed: {e}", tracker)
            return

        if token.is_cancelled():
            self._discard(run, unit, pre_claim, tracker)
            return

        completed = run.store.transition(unit.id, UnitStatus.COMPLETED, video_artifact=handle.result_uri)
        tracker.settle(VIDEO_STEP, unit.id, completed, f"unit {unit.id} completed")
