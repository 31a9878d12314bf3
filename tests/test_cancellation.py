"""Stop handling: authorization, idempotence and races with the execution loop."""

import asyncio

import pytest

from autorun import (
    LogLevel,
    NotFoundError,
    PermissionDenied,
    PolicyEngine,
    RunStatus,
    StepExecutorRegistry,
    StepResult,
    StepStatus,
)


async def _warn_entries(dispatcher, run_id):
    stream = await dispatcher.read_logs(run_id)
    return [e for e in await stream.to_list() if e.level == LogLevel.WARN]


@pytest.mark.asyncio
async def test_stop_during_first_step_cancels_everything(make_dispatcher, gated):
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 3)

    await asyncio.wait_for(gated.started.wait(), 2)
    result = await dispatcher.stop_run(handle.run_id, "alice")
    gated.release.set()
    snapshot = await asyncio.wait_for(handle.wait(), 2)

    assert result.success
    assert snapshot.run.status == RunStatus.STOPPED
    assert snapshot.run.finished_at is not None
    first, *rest = snapshot.steps
    assert first.status in {StepStatus.SUCCEEDED, StepStatus.CANCELLED}
    assert first.status == StepStatus.CANCELLED
    assert first.result is None
    assert all(s.status == StepStatus.CANCELLED for s in rest)
    assert gated.calls == [0]
    assert gated.cancel_seen

    warnings = await _warn_entries(dispatcher, handle.run_id)
    assert len(warnings) == 1
    assert warnings[0].message == "Run stopped by user"


@pytest.mark.asyncio
async def test_finished_step_keeps_result_when_stopped_later(make_dispatcher):
    second_started = asyncio.Event()
    release = asyncio.Event()

    async def work(step, cancel_event):
        if step.ordinal == 0:
            return {"image": "a.png"}
        second_started.set()
        await release.wait()

    registry = StepExecutorRegistry()
    registry.register("x", work)
    dispatcher = make_dispatcher(registry)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 3)

    await asyncio.wait_for(second_started.wait(), 2)
    await dispatcher.stop_run(handle.run_id, "alice")
    release.set()
    snapshot = await asyncio.wait_for(handle.wait(), 2)

    statuses = [s.status for s in snapshot.steps]
    assert statuses == [StepStatus.SUCCEEDED, StepStatus.CANCELLED, StepStatus.CANCELLED]
    assert snapshot.steps[0].result == {"image": "a.png"}
    assert snapshot.run.status == RunStatus.STOPPED


@pytest.mark.asyncio
async def test_late_failure_does_not_resurrect_cancelled_step(make_dispatcher, repository):
    started = asyncio.Event()

    async def honors_cancel(step, cancel_event):
        started.set()
        await cancel_event.wait()
        return StepResult.failed("interrupted")

    registry = StepExecutorRegistry()
    registry.register("x", honors_cancel)
    dispatcher = make_dispatcher(registry)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 2)

    await asyncio.wait_for(started.wait(), 2)
    await dispatcher.stop_run(handle.run_id, "alice")
    snapshot = await asyncio.wait_for(handle.wait(), 2)

    assert snapshot.run.status == RunStatus.STOPPED
    assert snapshot.steps[0].status == StepStatus.CANCELLED
    assert snapshot.steps[0].error_message is None
    logs = await repository.read_logs(handle.run_id)
    assert any("result discarded" in e.message for e in logs)
    assert not any(e.level == LogLevel.ERROR for e in logs)


@pytest.mark.asyncio
async def test_stop_is_idempotent(make_dispatcher, gated):
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 2)
    await asyncio.wait_for(gated.started.wait(), 2)

    first = await dispatcher.stop_run(handle.run_id, "alice")
    second = await dispatcher.stop_run(handle.run_id, "alice")
    gated.release.set()
    await asyncio.wait_for(handle.wait(), 2)
    third = await dispatcher.stop_run(handle.run_id, "alice")

    assert first.success and second.success and third.success
    assert second.message == "Run already finished"
    assert len(await _warn_entries(dispatcher, handle.run_id)) == 1


@pytest.mark.asyncio
async def test_stop_of_completed_run_changes_nothing(make_dispatcher, gated):
    gated.release.set()
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}])
    before = await asyncio.wait_for(handle.wait(), 2)

    result = await dispatcher.stop_run(handle.run_id, "alice")
    after = await dispatcher.get_run_status(handle.run_id)

    assert result.success
    assert after == before
    assert after.run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_non_owner_cannot_stop(make_dispatcher, gated, repository):
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 2)
    await asyncio.wait_for(gated.started.wait(), 2)

    before = await dispatcher.get_run_status(handle.run_id)
    logs_before = await repository.read_logs(handle.run_id)
    with pytest.raises(PermissionDenied):
        await dispatcher.stop_run(handle.run_id, "mallory")
    after = await dispatcher.get_run_status(handle.run_id)

    assert after == before
    assert await repository.read_logs(handle.run_id) == logs_before

    gated.release.set()
    snapshot = await asyncio.wait_for(handle.wait(), 2)
    assert snapshot.run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_privileged_actor_can_stop(make_dispatcher, gated):
    policy = PolicyEngine.from_identities(["admin"])
    dispatcher = make_dispatcher(gated, policy=policy)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}])
    await asyncio.wait_for(gated.started.wait(), 2)

    result = await dispatcher.stop_run(handle.run_id, "admin")
    gated.release.set()
    snapshot = await asyncio.wait_for(handle.wait(), 2)

    assert result.message == "Run stopped"
    assert snapshot.run.status == RunStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_unknown_run(make_dispatcher, gated):
    dispatcher = make_dispatcher(gated)

    with pytest.raises(NotFoundError):
        await dispatcher.stop_run("missing", "alice")


@pytest.mark.asyncio
async def test_stop_before_worker_runs_cancels_pending_steps(make_dispatcher, gated):
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 2)

    # the worker task has not been scheduled yet
    await dispatcher.stop_run(handle.run_id, "alice")
    snapshot = await asyncio.wait_for(handle.wait(), 2)

    assert gated.calls == []
    assert snapshot.run.status == RunStatus.STOPPED
    assert [s.status for s in snapshot.steps] == [StepStatus.CANCELLED] * 2
