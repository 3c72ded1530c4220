"""Submit-then-poll primitive for long-running external jobs.

Polling loop:
- a job already terminal on submission is returned without polling
- cancellation is checked before every status check and inside every
  sleep slice; once observed the loop raises JobCancelled without a final
  status check
- transient transport errors on a tick are logged and retried until the
  timeout runs out
- a Failed status is returned to the caller as-is; retrying is the
  caller's decision

Usage:
    poller = AsyncJobPoller(service, settings.polling)
    handle = await poller.submit(prompt, refs, 5, "veo3.1-components")
    handle = await poller.poll(handle, on_progress=cb, is_cancelled=token.is_cancelled)
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from scenepipe.config import PollingConfig
from scenepipe.schemas.job import JobHandle, JobStatus
from scenepipe.services.generation.base import GenerationService, is_transient_error

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, JobStatus], None]
CancelCheck = Callable[[], bool]


class JobCancelled(Exception):
    """Polling stopped because the caller cancelled. Not a failure."""


class JobTimeoutError(Exception):
    """The job did not reach a terminal status within the timeout."""


class JobFailedError(Exception):
    """The service reported the job as failed."""

    def __init__(self, handle: JobHandle):
        super().__init__(handle.error_message or f"job {handle.external_id} failed")
        self.handle = handle


def raise_for_failure(handle: JobHandle) -> JobHandle:
    """Return a completed handle unchanged, raise JobFailedError otherwise."""
    if handle.status != JobStatus.COMPLETED:
        raise JobFailedError(handle)
    return handle


def _never_cancelled() -> bool:
    return False


class AsyncJobPoller:
    """Drives one external job from submission to a terminal JobHandle."""

    def __init__(
        self,
        service: GenerationService,
        config: PollingConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.config = config
        self._sleep = sleep
        self._clock = clock

    async def submit(
        self,
        prompt: str,
        reference_uris: Sequence[str],
        duration_seconds: int,
        model: str,
    ) -> JobHandle:
        handle = await self.service.submit_video_job(prompt, reference_uris, duration_seconds, model)
        logger.info(f"Job {handle.external_id} submitted ({handle.status.value})")
        return handle

    async def poll(
        self,
        handle: JobHandle,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> JobHandle:
        """Poll until the job is Completed or Failed.

        Args:
            handle: Handle returned by submit()
            interval: Seconds between checks (default from config)
            timeout: Total time allowed in seconds (default from config)
            on_progress: Called with (percent, status) on every tick
            is_cancelled: Cooperative cancellation check

        Returns:
            Terminal JobHandle (Completed or Failed)

        Raises:
            JobCancelled: is_cancelled() returned True
            JobTimeoutError: time ran out before a terminal status
        """
        if handle.is_terminal:
            return handle

        interval = self.config.interval_seconds if interval is None else interval
        timeout = self.config.timeout_seconds if timeout is None else timeout
        is_cancelled = is_cancelled or _never_cancelled
        deadline = self._clock() + timeout
        ticks = 0

        while True:
            if is_cancelled():
                logger.info(f"Job {handle.external_id}: polling cancelled")
                raise JobCancelled(handle.external_id)
            if self._clock() >= deadline:
                raise JobTimeoutError(
                    f"job {handle.external_id} did not finish within {timeout:.0f} seconds"
                )

            ticks += 1
            current: Optional[JobHandle] = None
            try:
                current = await self.service.poll_video_job(handle.external_id)
            except Exception as e:
                if not is_transient_error(e):
                    raise
                logger.warning(f"Job {handle.external_id}: transient poll error (tick {ticks}): {e}")

            if is_cancelled():
                raise JobCancelled(handle.external_id)

            if current is not None:
                handle = current
                logger.debug(
                    f"Job {handle.external_id}: {handle.status.value} {handle.progress_percent}%"
                )
            # A tick whose poll failed reports the last known state
            if on_progress is not None:
                on_progress(handle.progress_percent, handle.status)
            if handle.is_terminal:
                return handle

            await self._sleep_cancellable(interval, is_cancelled, handle)

    async def run(
        self,
        prompt: str,
        reference_uris: Sequence[str],
        duration_seconds: int,
        model: str,
        **poll_kwargs,
    ) -> JobHandle:
        """Submit a job and poll it to a terminal handle."""
        is_cancelled = poll_kwargs.get("is_cancelled") or _never_cancelled
        handle = await self.submit(prompt, reference_uris, duration_seconds, model)
        if is_cancelled():
            raise JobCancelled(handle.external_id)
        return await self.poll(handle, **poll_kwargs)

    async def _sleep_cancellable(
        self,
        interval: float,
        is_cancelled: CancelCheck,
        handle: JobHandle,
    ) -> None:
        slices = max(1, self.config.cancel_check_slices)
        for _ in range(slices):
            await self._sleep(interval / slices)
            if is_cancelled():
                raise JobCancelled(handle.external_id)
