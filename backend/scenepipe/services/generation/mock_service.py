"""Offline generation backend with fixed media URLs.

Video jobs advance 25% per poll and complete on the fourth poll, which
exercises the same poll loop as a real backend.
"""

import asyncio
import itertools
import logging
from typing import Optional, Sequence

from scenepipe.schemas.job import JobHandle, JobStatus
from scenepipe.services.generation.base import GenerationService

logger = logging.getLogger(__name__)

MOCK_IMAGE_URL = "https://picsum.photos/seed/scenepipe/1024/1024"
MOCK_VIDEO_URL = "https://storage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4"
MOCK_CHARACTER_DESCRIPTION = (
    "**Appearance**: short black hair, brown eyes, slim build\n"
    "**Clothing**: navy hoodie, grey jeans, white sneakers\n"
    "**Pose and expression**: relaxed stance, curious smile\n"
    "**Overall style**: clean modern anime look"
)

_PROGRESS_STEP = 25


class MockGenerationService(GenerationService):
    """Generation backend that never leaves the process."""

    def __init__(self, latency_seconds: float = 0.0):
        self.latency_seconds = latency_seconds
        self._ids = itertools.count(1)
        self._progress: dict[str, int] = {}

    async def _delay(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def generate_image(
        self,
        prompt: str,
        reference_images: Optional[Sequence[str]] = None,
    ) -> str:
        logger.info(f"[mock] image ({len(reference_images or [])} refs): {prompt[:80]}")
        await self._delay()
        return MOCK_IMAGE_URL

    async def generate_image_with_identity_references(
        self,
        prompt: str,
        reference_uris: Sequence[str],
    ) -> str:
        logger.info(f"[mock] identity image ({len(reference_uris)} refs): {prompt[:80]}")
        await self._delay()
        return MOCK_IMAGE_URL

    async def submit_video_job(
        self,
        prompt: str,
        reference_uris: Sequence[str],
        duration_seconds: int,
        model: str,
    ) -> JobHandle:
        job_id = f"mock_task_{next(self._ids)}"
        self._progress[job_id] = 0
        logger.info(f"[mock] video job {job_id} ({len(reference_uris)} refs, {duration_seconds}s)")
        await self._delay()
        return JobHandle(external_id=job_id, status=JobStatus.QUEUED, progress_percent=0)

    async def poll_video_job(self, job_id: str) -> JobHandle:
        progress = min(100, self._progress.get(job_id, 0) + _PROGRESS_STEP)
        self._progress[job_id] = progress
        if progress >= 100:
            self._progress.pop(job_id, None)
            return JobHandle(
                external_id=job_id,
                status=JobStatus.COMPLETED,
                progress_percent=100,
                result_uri=MOCK_VIDEO_URL,
            )
        return JobHandle(external_id=job_id, status=JobStatus.IN_PROGRESS, progress_percent=progress)

    async def analyze_image_for_character_description(self, image_base64: str) -> str:
        await self._delay()
        return MOCK_CHARACTER_DESCRIPTION
