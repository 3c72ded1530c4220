"""Shared fakes and fixtures for scenepipe tests."""

import asyncio
import itertools
from typing import Optional, Sequence

import pytest

from scenepipe.config import (
    CommandLoopConfig,
    GenerationConfig,
    PollingConfig,
    SchedulerConfig,
    Settings,
)
from scenepipe.schemas.job import JobHandle, JobStatus
from scenepipe.schemas.screenplay import Unit
from scenepipe.services.generation.base import GenerationService, GenerationServiceError
from scenepipe.services.job_poller import AsyncJobPoller
from scenepipe.services.llm.base import LLMAdapter, StreamChunk


async def no_sleep(_seconds: float) -> None:
    # Yield to the loop so concurrent units interleave
    await asyncio.sleep(0)


class FakeGenerationService(GenerationService):
    """Records every call; failures are injected by prompt substring."""

    def __init__(self, polls_to_complete: int = 2, image_delay: float = 0.0):
        self.polls_to_complete = polls_to_complete
        self.image_delay = image_delay
        self.image_calls: list[tuple[str, list[str]]] = []
        self.identity_calls: list[tuple[str, list[str]]] = []
        self.submit_calls: list[tuple[str, list[str], int, str]] = []
        self.poll_calls: list[str] = []
        self.analysis_calls = 0
        self.fail_images_for: set[str] = set()
        self.fail_videos_for: set[str] = set()
        self.fail_jobs_for: set[str] = set()
        self.fail_identity = False
        self.fail_analysis = False
        self.active_images = 0
        self.max_active_images = 0
        self._ids = itertools.count(1)
        self._jobs: dict[str, dict] = {}

    async def _image(self, prompt: str) -> str:
        self.active_images += 1
        self.max_active_images = max(self.max_active_images, self.active_images)
        try:
            await asyncio.sleep(self.image_delay)
        finally:
            self.active_images -= 1
        if any(marker in prompt for marker in self.fail_images_for):
            raise GenerationServiceError(f"image rejected: {prompt}", status_code=400)
        return f"https://img.test/{next(self._ids)}.png"

    async def generate_image(self, prompt: str, reference_images: Optional[Sequence[str]] = None) -> str:
        self.image_calls.append((prompt, list(reference_images or [])))
        return await self._image(prompt)

    async def generate_image_with_identity_references(self, prompt: str, reference_uris: Sequence[str]) -> str:
        self.identity_calls.append((prompt, list(reference_uris)))
        if self.fail_identity:
            raise GenerationServiceError("identity model unavailable", status_code=400)
        return await self._image(prompt)

    async def submit_video_job(
        self,
        prompt: str,
        reference_uris: Sequence[str],
        duration_seconds: int,
        model: str,
    ) -> JobHandle:
        self.submit_calls.append((prompt, list(reference_uris), duration_seconds, model))
        if any(marker in prompt for marker in self.fail_videos_for):
            raise GenerationServiceError(f"video rejected: {prompt}", status_code=400)
        job_id = f"job_{next(self._ids)}"
        self._jobs[job_id] = {
            "polls": 0,
            "fail": any(marker in prompt for marker in self.fail_jobs_for),
        }
        return JobHandle(external_id=job_id, status=JobStatus.QUEUED)

    async def poll_video_job(self, job_id: str) -> JobHandle:
        self.poll_calls.append(job_id)
        job = self._jobs[job_id]
        job["polls"] += 1
        if job["polls"] < self.polls_to_complete:
            return JobHandle(external_id=job_id, status=JobStatus.IN_PROGRESS, progress_percent=50)
        if job["fail"]:
            return JobHandle(external_id=job_id, status=JobStatus.FAILED, error_message="content policy")
        return JobHandle(
            external_id=job_id,
            status=JobStatus.COMPLETED,
            progress_percent=100,
            result_uri=f"https://vid.test/{job_id}.mp4",
        )

    async def analyze_image_for_character_description(self, image_base64: str) -> str:
        self.analysis_calls += 1
        if self.fail_analysis:
            raise GenerationServiceError("vision model unavailable", status_code=503, transient=True)
        return "a red fox wearing a blue scarf"


def content(text: str) -> list[StreamChunk]:
    return [StreamChunk(kind="content", text=text)]


class ScriptedLLM(LLMAdapter):
    """Replays scripted turns; each turn is a chunk list, a string or an exception."""

    def __init__(self, turns=(), default=None):
        self.turns = list(turns)
        self.default = default
        self.calls: list[list[dict]] = []
        self.system_prompts: list[Optional[str]] = []

    async def stream_chat(self, messages, *, system_prompt=None, temperature=None):
        self.calls.append([dict(m) for m in messages])
        self.system_prompts.append(system_prompt)
        turn = self.turns.pop(0) if self.turns else self.default
        if turn is None:
            raise AssertionError("ScriptedLLM ran out of turns")
        if isinstance(turn, Exception):
            raise turn
        if isinstance(turn, str):
            turn = content(turn)
        for chunk in turn:
            await asyncio.sleep(0)
            yield chunk

    async def generate_text(self, prompt, schema, *, temperature=0.7, system_prompt=None, max_retries=3):
        turn = self.turns.pop(0) if self.turns else self.default
        if isinstance(turn, Exception):
            raise turn
        return schema.model_validate_json(turn)


def make_units(count: int) -> list[Unit]:
    return [
        Unit(
            id=i,
            narration=f"narration {i}",
            image_prompt=f"image {i}",
            video_prompt=f"motion {i}",
            character_description="a red fox",
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def polling_config() -> PollingConfig:
    return PollingConfig(interval_seconds=0.01, timeout_seconds=30, cancel_check_slices=2)


@pytest.fixture
def generation_config() -> GenerationConfig:
    return GenerationConfig(video_model="veo-test", video_duration_seconds=5)


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(concurrency_limit=2, prompt_safety="off")


@pytest.fixture
def loop_config() -> CommandLoopConfig:
    return CommandLoopConfig(max_iterations=5, default_video_seconds=10, poll_timeout_seconds=30)


@pytest.fixture
def poller(service, polling_config) -> AsyncJobPoller:
    return AsyncJobPoller(service, polling_config, sleep=no_sleep)


@pytest.fixture
def settings(polling_config, generation_config, scheduler_config, loop_config) -> Settings:
    return Settings(
        generation=generation_config,
        polling=polling_config,
        scheduler=scheduler_config,
        command_loop=loop_config,
    )
