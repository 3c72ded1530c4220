"""Tests for the Director facade."""

import asyncio
import json

import pytest

from scenepipe.orchestrator.command_loop import LoopOutcome
from scenepipe.orchestrator.pipeline import Director, UnknownRunError, normalize_submitted_unit
from scenepipe.orchestrator.state import IllegalTransitionError
from scenepipe.schemas.run import RunStatus
from scenepipe.schemas.screenplay import Unit, UnitStatus
from scenepipe.services.llm.base import StreamChunk

from conftest import ScriptedLLM, make_units, no_sleep


@pytest.fixture
def director(service, settings):
    return Director(service, ScriptedLLM(), settings, sleep=no_sleep)


def test_in_flight_image_restarts_from_pending():
    unit = Unit(id=1, status=UnitStatus.IMAGE_IN_FLIGHT)
    assert normalize_submitted_unit(unit).status == UnitStatus.PENDING


def test_in_flight_video_keeps_image():
    unit = Unit(id=1, status=UnitStatus.VIDEO_IN_FLIGHT, image_artifact="https://img.test/1.png")
    normalized = normalize_submitted_unit(unit)
    assert normalized.status == UnitStatus.IMAGE_DONE
    assert normalized.image_artifact == "https://img.test/1.png"


@pytest.mark.asyncio
async def test_submit_batch(director):
    summary = await director.submit_batch(make_units(3), character_references=["sheet"])

    assert summary.status == RunStatus.COMPLETED
    assert director.get_run(summary.run_id).succeeded == [1, 2, 3]


@pytest.mark.asyncio
async def test_submit_batch_resumes_saved_units(director, service):
    units = [
        Unit(id=1, status=UnitStatus.VIDEO_IN_FLIGHT, image_artifact="https://img.test/saved.png"),
        Unit(id=2),
    ]

    summary = await director.submit_batch(units, character_references=["sheet"])

    # The saved unit keeps its image and waits for an explicit retry
    assert summary.units[0].status == UnitStatus.IMAGE_DONE
    assert summary.units[1].status == UnitStatus.COMPLETED
    assert len(service.identity_calls) == 1


@pytest.mark.asyncio
async def test_stream_batch(director):
    events = [event async for event in director.stream_batch(make_units(2), ["sheet"])]
    assert events[-1].progress == 1.0


def test_unknown_run(director):
    with pytest.raises(UnknownRunError):
        director.get_run("missing")


@pytest.mark.asyncio
async def test_start_all_pending(director, service):
    run = director.create_run(make_units(3), ["sheet"])
    run.store.claim(2, {UnitStatus.PENDING}, UnitStatus.IMAGE_IN_FLIGHT)

    started = await director.start_all_pending(run.run_id)

    assert [unit.id for unit in started] == [1, 3]
    assert all(unit.status == UnitStatus.COMPLETED for unit in started)


@pytest.mark.asyncio
async def test_start_unit_rejects_unit_with_image(director):
    run = director.create_run([Unit(id=1, status=UnitStatus.IMAGE_DONE, image_artifact="i")])
    with pytest.raises(IllegalTransitionError):
        await director.start_unit(run.run_id, 1)


@pytest.mark.asyncio
async def test_retry_failed_units_reuses_images(director, service):
    service.fail_jobs_for = {"motion 1", "motion 3"}
    summary = await director.submit_batch(make_units(3), ["sheet"])
    assert summary.failed == [1, 3]

    service.fail_jobs_for = set()
    retried = await director.retry_failed_units(summary.run_id)

    assert [unit.id for unit in retried] == [1, 3]
    assert director.get_run(summary.run_id).status == RunStatus.COMPLETED
    assert len(service.identity_calls) == 3


def test_update_custom_video_prompt_clears_with_empty_value(director):
    run = director.create_run(make_units(1))
    assert director.update_custom_video_prompt(run.run_id, 1, "pan").custom_video_prompt == "pan"
    assert director.update_custom_video_prompt(run.run_id, 1, "").custom_video_prompt is None


@pytest.mark.asyncio
async def test_cancel_command_loop(service, settings):
    started = asyncio.Event()

    class SlowLLM(ScriptedLLM):
        async def stream_chat(self, messages, *, system_prompt=None, temperature=None):
            started.set()
            for _ in range(100):
                await asyncio.sleep(0)
                yield StreamChunk(kind="thinking", text=".")
            yield StreamChunk(kind="content", text=json.dumps({"action": "complete", "params": {}}))

    director = Director(service, SlowLLM(), settings, sleep=no_sleep)
    assert not director.cancel_command_loop()

    task = asyncio.create_task(director.run_command_loop("hello"))
    await started.wait()
    assert director.cancel_command_loop()
    result = await task

    assert result.outcome == LoopOutcome.CANCELLED


@pytest.mark.asyncio
async def test_oldest_finished_runs_are_evicted(service, settings):
    scheduler = settings.scheduler.model_copy(update={"max_finished_runs": 2})
    director = Director(service, ScriptedLLM(), settings.model_copy(update={"scheduler": scheduler}), sleep=no_sleep)

    first, second, third = [(await director.submit_batch(make_units(1), ["sheet"])).run_id for _ in range(3)]
    pending = director.create_run(make_units(1))

    with pytest.raises(UnknownRunError):
        director.get_run(first)
    for run_id in (second, third, pending.run_id):
        assert director.get_run(run_id).run_id == run_id


def test_unfinished_runs_are_never_evicted(service, settings):
    scheduler = settings.scheduler.model_copy(update={"max_finished_runs": 1})
    director = Director(service, ScriptedLLM(), settings.model_copy(update={"scheduler": scheduler}), sleep=no_sleep)

    run_ids = [director.create_run(make_units(1)).run_id for _ in range(3)]

    assert [director.get_run(run_id).run_id for run_id in run_ids] == run_ids


@pytest.mark.asyncio
async def test_delete_run(director):
    summary = await director.submit_batch(make_units(1), ["sheet"])

    assert director.delete_run(summary.run_id).status == RunStatus.COMPLETED
    with pytest.raises(UnknownRunError):
        director.get_run(summary.run_id)
    with pytest.raises(UnknownRunError):
        director.delete_run(summary.run_id)


def test_delete_run_cancels_unstarted_run(director):
    run = director.create_run(make_units(2))

    assert director.delete_run(run.run_id).cancelled
    assert run.cancelled
