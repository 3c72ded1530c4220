"""Tests for the batch scheduler: progress, isolation, cancellation, retry."""

import asyncio

import pytest

from scenepipe.config import SchedulerConfig
from scenepipe.orchestrator.scheduler import BatchScheduler
from scenepipe.orchestrator.state import BatchRun, UnitBusyError
from scenepipe.schemas.run import RunStatus
from scenepipe.schemas.screenplay import Unit, UnitStatus

from conftest import make_units


@pytest.fixture
def scheduler(poller, generation_config, scheduler_config) -> BatchScheduler:
    return BatchScheduler(poller, generation_config, scheduler_config)


def statuses(summary):
    return {unit.id: unit.status for unit in summary.units}


@pytest.mark.asyncio
async def test_all_units_complete(scheduler, service):
    run = BatchRun(make_units(3), character_references=["sheet"], concurrency_limit=2)
    events = []

    summary = await scheduler.run(run, on_progress=events.append)

    assert summary.status == RunStatus.COMPLETED
    assert summary.succeeded == [1, 2, 3]
    assert summary.progress == 1.0
    assert all(unit.video_artifact for unit in summary.units)
    assert len(service.identity_calls) == 3
    assert not summary.consistency_degraded
    assert events[-1].progress == 1.0


@pytest.mark.asyncio
async def test_progress_never_decreases(scheduler, service):
    service.fail_images_for = {"image 2"}
    run = BatchRun(make_units(5), character_references=["sheet"], concurrency_limit=2)
    events = []

    await scheduler.run(run, on_progress=events.append)

    fractions = [event.progress for event in events]
    assert fractions == sorted(fractions)
    assert fractions[-1] == 1.0


@pytest.mark.asyncio
async def test_video_references_keep_identity_first(scheduler, service):
    run = BatchRun(make_units(2), character_references=["sheet-a", "sheet-b"], concurrency_limit=2)

    summary = await scheduler.run(run)

    images = {unit.id: unit.image_artifact for unit in summary.units}
    submitted = sorted(refs for _, refs, _, _ in service.submit_calls)
    assert submitted == sorted([["sheet-a", "sheet-b", images[1]], ["sheet-a", "sheet-b", images[2]]])
    assert all(seconds == 5 and model == "veo-test" for _, _, seconds, model in service.submit_calls)


@pytest.mark.asyncio
async def test_first_unit_uses_user_images(scheduler, service):
    run = BatchRun(
        make_units(2),
        character_references=["sheet"],
        user_reference_images=["https://user.test/me.png"],
        concurrency_limit=1,
    )

    await scheduler.run(run)

    assert service.image_calls == [("image 1", ["https://user.test/me.png"])]
    assert service.identity_calls == [("image 2", ["sheet"])]


@pytest.mark.asyncio
async def test_failed_image_does_not_abort_siblings(scheduler, service):
    service.fail_images_for = {"image 2"}
    run = BatchRun(make_units(3), character_references=["sheet"], concurrency_limit=3)

    summary = await scheduler.run(run)

    assert statuses(summary) == {
        1: UnitStatus.COMPLETED,
        2: UnitStatus.FAILED,
        3: UnitStatus.COMPLETED,
    }
    failed = summary.units[1]
    assert failed.error_message.startswith("image generation failed")
    assert failed.image_artifact is None
    assert summary.status == RunStatus.PARTIAL
    assert summary.failed == [2]
    assert not any("motion 2" in prompt for prompt, _, _, _ in service.submit_calls)


@pytest.mark.asyncio
async def test_failed_job_keeps_image(scheduler, service):
    service.fail_jobs_for = {"motion 3"}
    run = BatchRun(make_units(3), character_references=["sheet"], concurrency_limit=2)

    summary = await scheduler.run(run)

    unit = summary.units[2]
    assert unit.status == UnitStatus.FAILED
    assert unit.image_artifact is not None
    assert unit.video_artifact is None
    assert "content policy" in unit.error_message


@pytest.mark.asyncio
async def test_completed_units_are_not_regenerated(scheduler, service):
    units = [
        Unit(
            id=i,
            status=UnitStatus.COMPLETED,
            image_artifact=f"https://img.test/{i}.png",
            video_artifact=f"https://vid.test/{i}.mp4",
        )
        for i in (1, 2)
    ]
    run = BatchRun(units, character_references=["sheet"])

    summary = await scheduler.run(run)

    assert summary.status == RunStatus.COMPLETED
    assert summary.progress == 1.0
    assert service.image_calls == []
    assert service.identity_calls == []
    assert service.submit_calls == []


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(poller, generation_config, service):
    service.image_delay = 0.01
    scheduler = BatchScheduler(poller, generation_config, SchedulerConfig(concurrency_limit=2, prompt_safety="off"))
    run = BatchRun(make_units(5), character_references=["sheet"], concurrency_limit=2)

    summary = await scheduler.run(run)

    assert summary.status == RunStatus.COMPLETED
    assert service.max_active_images == 2


@pytest.mark.asyncio
async def test_cancel_between_batches_leaves_remaining_units_untouched(scheduler, service):
    run = BatchRun(make_units(5), character_references=["sheet"], concurrency_limit=2)

    def on_progress(event):
        if event.videos_done == 2:
            run.cancel()

    summary = await scheduler.run(run, on_progress=on_progress)

    assert summary.cancelled
    assert summary.status == RunStatus.CANCELLED
    assert statuses(summary) == {
        1: UnitStatus.COMPLETED,
        2: UnitStatus.COMPLETED,
        3: UnitStatus.PENDING,
        4: UnitStatus.PENDING,
        5: UnitStatus.PENDING,
    }
    assert sorted(prompt for prompt, _ in service.identity_calls) == ["image 1", "image 2"]
    assert len(service.submit_calls) == 2


@pytest.mark.asyncio
async def test_cancel_during_video_poll_restores_image_done(scheduler, service):
    run = BatchRun(make_units(1), character_references=["sheet"])

    def on_progress(event):
        if "video in_progress" in event.message:
            run.cancel()

    summary = await scheduler.run(run, on_progress=on_progress)

    unit = summary.units[0]
    assert unit.status == UnitStatus.IMAGE_DONE
    assert unit.image_artifact is not None
    assert unit.video_artifact is None
    assert summary.status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_run(scheduler):
    run = BatchRun(make_units(2), character_references=["sheet"])

    def on_progress(event):
        raise RuntimeError("observer bug")

    summary = await scheduler.run(run, on_progress=on_progress)

    assert summary.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_references_degrade_consistency(scheduler, service):
    run = BatchRun(make_units(2))

    summary = await scheduler.run(run)

    assert summary.status == RunStatus.COMPLETED
    assert summary.consistency_degraded
    assert service.image_calls[0] == ("a red fox. image 1", [])


@pytest.mark.asyncio
async def test_identity_failure_fails_unit_without_fallback(scheduler, service):
    service.fail_identity = True
    run = BatchRun(make_units(1), character_references=["sheet"])

    summary = await scheduler.run(run)

    assert summary.units[0].status == UnitStatus.FAILED
    assert service.image_calls == []
    assert not summary.consistency_degraded


@pytest.mark.asyncio
async def test_identity_failure_falls_back_when_enabled(poller, generation_config, service):
    service.fail_identity = True
    config = SchedulerConfig(prompt_safety="off", identity_fallback_to_text=True)
    scheduler = BatchScheduler(poller, generation_config, config)
    run = BatchRun(make_units(1), character_references=["sheet"])

    summary = await scheduler.run(run)

    assert summary.units[0].status == UnitStatus.COMPLETED
    assert summary.consistency_degraded


@pytest.mark.asyncio
async def test_retry_reuses_existing_image(scheduler, service):
    service.fail_jobs_for = {"motion 1"}
    run = BatchRun(make_units(1), character_references=["sheet"])
    summary = await scheduler.run(run)
    image = summary.units[0].image_artifact
    assert summary.units[0].status == UnitStatus.FAILED

    service.fail_jobs_for = set()
    unit = await scheduler.retry_unit(run, 1)

    assert unit.status == UnitStatus.COMPLETED
    assert unit.image_artifact == image
    assert unit.error_message is None
    assert len(service.identity_calls) == 1
    assert len(service.submit_calls) == 2


@pytest.mark.asyncio
async def test_forced_retry_regenerates_image(scheduler, service):
    run = BatchRun(make_units(1), character_references=["sheet"])
    summary = await scheduler.run(run)
    first_image = summary.units[0].image_artifact

    unit = await scheduler.retry_unit(run, 1, force_image_regeneration=True)

    assert unit.status == UnitStatus.COMPLETED
    assert unit.image_artifact != first_image
    assert len(service.identity_calls) == 2


@pytest.mark.asyncio
async def test_retry_of_busy_unit_is_rejected(scheduler):
    run = BatchRun(make_units(1), character_references=["sheet"])
    run.store.claim(1, {UnitStatus.PENDING}, UnitStatus.IMAGE_IN_FLIGHT)

    with pytest.raises(UnitBusyError):
        await scheduler.retry_unit(run, 1)


@pytest.mark.asyncio
async def test_retry_works_after_run_cancel(scheduler, service):
    run = BatchRun(make_units(2), character_references=["sheet"])
    run.cancel()
    summary = await scheduler.run(run)
    assert statuses(summary) == {1: UnitStatus.PENDING, 2: UnitStatus.PENDING}

    unit = await scheduler.retry_unit(run, 2)

    assert unit.status == UnitStatus.COMPLETED
    assert [prompt for prompt, _ in service.identity_calls] == ["image 2"]


@pytest.mark.asyncio
async def test_stream_yields_events_until_run_ends(scheduler):
    run = BatchRun(make_units(2), character_references=["sheet"])

    events = [event async for event in scheduler.stream(run)]

    assert events[-1].message == "run completed"
    assert events[-1].progress == 1.0
    assert run.finished


@pytest.mark.asyncio
async def test_manual_retry_during_batch_generates_unit_once(scheduler, service):
    service.image_delay = 0.01
    run = BatchRun(make_units(4), character_references=["sheet"], concurrency_limit=2)

    task = asyncio.create_task(scheduler.run(run))
    while not service.identity_calls:
        await asyncio.sleep(0)

    # Unit 4 belongs to the second batch and is still pending here
    retried = await scheduler.retry_unit(run, 4)
    await task
    summary = run.summary()

    assert retried.status == UnitStatus.COMPLETED
    assert summary.succeeded == [1, 2, 3, 4]
    assert summary.progress == 1.0
    assert len(service.identity_calls) == 4
    assert len(service.submit_calls) == 4
    assert sorted(prompt for prompt, _ in service.identity_calls) == ["image 1", "image 2", "image 3", "image 4"]
