"""Tests for the async job poller using a fake clock."""

import pytest

from scenepipe.config import PollingConfig
from scenepipe.schemas.job import JobHandle, JobStatus
from scenepipe.services.generation.base import GenerationServiceError
from scenepipe.services.job_poller import (
    AsyncJobPoller,
    JobCancelled,
    JobFailedError,
    JobTimeoutError,
    raise_for_failure,
)

from conftest import FakeGenerationService


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedJobs(FakeGenerationService):
    """Returns poll results from a script; exceptions are raised."""

    def __init__(self, script):
        super().__init__()
        self.script = list(script)

    async def poll_video_job(self, job_id: str) -> JobHandle:
        self.poll_calls.append(job_id)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def handle(status: JobStatus, progress: int = 0, uri=None) -> JobHandle:
    return JobHandle(external_id="job_1", status=status, progress_percent=progress, result_uri=uri)


def make_poller(service, interval=2.0, timeout=10.0, slices=2):
    clock = FakeClock()
    config = PollingConfig(interval_seconds=interval, timeout_seconds=timeout, cancel_check_slices=slices)
    return AsyncJobPoller(service, config, sleep=clock.sleep, clock=clock), clock


@pytest.mark.asyncio
async def test_polls_until_completed_and_reports_progress():
    service = ScriptedJobs([
        handle(JobStatus.IN_PROGRESS, 30),
        handle(JobStatus.IN_PROGRESS, 70),
        handle(JobStatus.COMPLETED, 100, "https://vid.test/1.mp4"),
    ])
    poller, clock = make_poller(service)
    ticks = []

    result = await poller.poll(
        handle(JobStatus.QUEUED),
        on_progress=lambda percent, status: ticks.append((percent, status)),
    )

    assert result.status == JobStatus.COMPLETED
    assert result.result_uri == "https://vid.test/1.mp4"
    assert ticks == [
        (30, JobStatus.IN_PROGRESS),
        (70, JobStatus.IN_PROGRESS),
        (100, JobStatus.COMPLETED),
    ]
    assert clock.now == pytest.approx(4.0)


@pytest.mark.asyncio
async def test_terminal_handle_is_not_polled():
    service = ScriptedJobs([])
    poller, _ = make_poller(service)
    done = handle(JobStatus.COMPLETED, 100, "https://vid.test/1.mp4")

    assert await poller.poll(done) is done
    assert service.poll_calls == []


@pytest.mark.asyncio
async def test_failed_status_is_returned_not_raised():
    service = ScriptedJobs([
        JobHandle(external_id="job_1", status=JobStatus.FAILED, error_message="content policy"),
    ])
    poller, _ = make_poller(service)

    result = await poller.poll(handle(JobStatus.QUEUED))

    assert result.status == JobStatus.FAILED
    with pytest.raises(JobFailedError, match="content policy"):
        raise_for_failure(result)


@pytest.mark.asyncio
async def test_times_out_after_deadline():
    service = ScriptedJobs([handle(JobStatus.IN_PROGRESS, 10)] * 20)
    poller, clock = make_poller(service, interval=2.0, timeout=5.0)

    with pytest.raises(JobTimeoutError):
        await poller.poll(handle(JobStatus.QUEUED))

    assert len(service.poll_calls) == 3
    assert clock.now <= 5.0 + 2.0


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    service = ScriptedJobs([
        GenerationServiceError("gateway timeout", status_code=504, transient=True),
        handle(JobStatus.COMPLETED, 100, "https://vid.test/1.mp4"),
    ])
    poller, _ = make_poller(service)

    result = await poller.poll(handle(JobStatus.QUEUED))

    assert result.status == JobStatus.COMPLETED
    assert len(service.poll_calls) == 2


@pytest.mark.asyncio
async def test_failed_tick_reports_last_known_progress():
    service = ScriptedJobs([
        handle(JobStatus.IN_PROGRESS, 40),
        GenerationServiceError("gateway timeout", status_code=504, transient=True),
        handle(JobStatus.COMPLETED, 100, "https://vid.test/1.mp4"),
    ])
    poller, _ = make_poller(service)
    ticks = []

    await poller.poll(
        handle(JobStatus.QUEUED),
        on_progress=lambda percent, status: ticks.append((percent, status)),
    )

    assert ticks == [
        (40, JobStatus.IN_PROGRESS),
        (40, JobStatus.IN_PROGRESS),
        (100, JobStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_permanent_errors_propagate():
    service = ScriptedJobs([GenerationServiceError("bad request", status_code=400)])
    poller, _ = make_poller(service)

    with pytest.raises(GenerationServiceError):
        await poller.poll(handle(JobStatus.QUEUED))


@pytest.mark.asyncio
async def test_cancel_raised_by_progress_callback_stops_after_one_slice():
    service = ScriptedJobs([handle(JobStatus.IN_PROGRESS, 10)] * 5)
    poller, clock = make_poller(service, interval=2.0, slices=4)
    cancelled = {"flag": False}

    def on_progress(percent, status):
        cancelled["flag"] = True

    with pytest.raises(JobCancelled):
        await poller.poll(
            handle(JobStatus.QUEUED),
            on_progress=on_progress,
            is_cancelled=lambda: cancelled["flag"],
        )

    assert len(service.poll_calls) == 1
    assert clock.sleeps == [0.5]


@pytest.mark.asyncio
async def test_cancel_during_sleep_stops_before_next_poll():
    service = ScriptedJobs([handle(JobStatus.IN_PROGRESS, 10)] * 5)
    poller, clock = make_poller(service, interval=2.0, slices=4)

    with pytest.raises(JobCancelled):
        await poller.poll(handle(JobStatus.QUEUED), is_cancelled=lambda: clock.now >= 1.0)

    assert len(service.poll_calls) == 1
    assert clock.now == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_run_submits_then_polls():
    service = FakeGenerationService(polls_to_complete=2)
    poller, _ = make_poller(service)

    result = await poller.run("a fox runs", ["sheet", "scene.png"], 5, "veo-test")

    assert result.status == JobStatus.COMPLETED
    assert service.submit_calls == [("a fox runs", ["sheet", "scene.png"], 5, "veo-test")]
    assert len(service.poll_calls) == 2
