"""Dispatcher tests: change streams, log reading and concurrent runs."""

import asyncio

import pytest

from autorun import NotFoundError, RunStatus, StepExecutorRegistry, StepStatus


async def _collect(stream):
    return [(e.entity_kind, e.new_status) async for e in stream]


def _echo_registry():
    registry = StepExecutorRegistry()

    @registry.step("echo")
    async def echo(step, cancel_event):
        await asyncio.sleep(0)
        return dict(step.input)

    return registry


@pytest.mark.asyncio
async def test_change_stream_reports_every_transition(make_dispatcher):
    dispatcher = make_dispatcher(_echo_registry())
    handle = await dispatcher.start_run("alice", [{"step_type": "echo"}] * 2)

    stream = await dispatcher.subscribe_to_changes(handle.run_id)
    events = await asyncio.wait_for(_collect(stream), 2)

    assert events == [
        ("step", "running"),
        ("step", "succeeded"),
        ("step", "running"),
        ("step", "succeeded"),
        ("run", "completed"),
    ]


@pytest.mark.asyncio
async def test_change_stream_includes_cancellations_after_stop(make_dispatcher, gated):
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}] * 3)
    stream = await dispatcher.subscribe_to_changes(handle.run_id)
    collector = asyncio.create_task(_collect(stream))

    await asyncio.wait_for(gated.started.wait(), 2)
    await dispatcher.stop_run(handle.run_id, "alice")
    gated.release.set()
    events = await asyncio.wait_for(collector, 2)
    await handle.wait()

    assert events[0] == ("step", "running")
    assert ("run", "stopped") in events
    assert events.count(("step", "cancelled")) == 3
    assert ("step", "succeeded") not in events


@pytest.mark.asyncio
async def test_change_stream_for_finished_run_is_empty(make_dispatcher):
    dispatcher = make_dispatcher(_echo_registry())
    handle = await dispatcher.start_run("alice", [{"step_type": "echo"}])
    await asyncio.wait_for(handle.wait(), 2)

    stream = await dispatcher.subscribe_to_changes(handle.run_id)
    assert await asyncio.wait_for(_collect(stream), 1) == []


@pytest.mark.asyncio
async def test_unknown_run_lookups_raise_not_found(make_dispatcher):
    dispatcher = make_dispatcher(_echo_registry())

    with pytest.raises(NotFoundError):
        await dispatcher.get_run_status("missing")
    with pytest.raises(NotFoundError):
        await dispatcher.read_logs("missing")
    with pytest.raises(NotFoundError):
        await dispatcher.subscribe_to_changes("missing")


@pytest.mark.asyncio
async def test_logs_are_strictly_ordered_and_restartable(make_dispatcher):
    dispatcher = make_dispatcher(_echo_registry())
    handle = await dispatcher.start_run("alice", [{"step_type": "echo"}] * 4)
    await asyncio.wait_for(handle.wait(), 2)

    stream = await dispatcher.read_logs(handle.run_id)
    first = await stream.to_list()
    second = await stream.to_list()

    assert first == second
    keys = [e.sort_key for e in first]
    assert keys == sorted(keys)
    assert len(set(keys)) == len(keys)
    assert [e.counter for e in first] == list(range(1, len(first) + 1))


@pytest.mark.asyncio
async def test_runs_execute_concurrently(make_dispatcher):
    barrier_count = 0
    all_started = asyncio.Event()

    async def wait_for_peers(step, cancel_event):
        nonlocal barrier_count
        barrier_count += 1
        if barrier_count == 3:
            all_started.set()
        await all_started.wait()

    registry = StepExecutorRegistry()
    registry.register("x", wait_for_peers)
    dispatcher = make_dispatcher(registry)

    handles = [
        await dispatcher.start_run(owner, [{"step_type": "x"}])
        for owner in ("alice", "alice", "bob")
    ]
    snapshots = await asyncio.wait_for(
        asyncio.gather(*(h.wait() for h in handles)), 2
    )

    assert all(s.run.status == RunStatus.COMPLETED for s in snapshots)


@pytest.mark.asyncio
async def test_list_runs_filters_by_owner(make_dispatcher):
    dispatcher = make_dispatcher(_echo_registry())
    a = await dispatcher.start_run("alice", [{"step_type": "echo"}])
    b = await dispatcher.start_run("bob", [{"step_type": "echo"}])
    await asyncio.wait_for(dispatcher.join(), 2)

    assert {r.id for r in await dispatcher.list_runs()} == {a.run_id, b.run_id}
    assert [r.id for r in await dispatcher.list_runs("bob")] == [b.run_id]


@pytest.mark.asyncio
async def test_worker_crash_marks_run_failed(make_dispatcher, repository, monkeypatch):
    dispatcher = make_dispatcher(_echo_registry())
    original = repository.next_pending_step

    async def broken(run_id):
        raise RuntimeError("db went away")

    monkeypatch.setattr(repository, "next_pending_step", broken)
    handle = await dispatcher.start_run("alice", [{"step_type": "echo"}] * 2)

    with pytest.raises(RuntimeError):
        await asyncio.wait_for(handle.wait(), 2)

    monkeypatch.setattr(repository, "next_pending_step", original)
    snapshot = await dispatcher.get_run_status(handle.run_id)
    assert snapshot.run.status == RunStatus.FAILED
    assert snapshot.run.finished_at is not None
    assert all(s.status == StepStatus.CANCELLED for s in snapshot.steps)


@pytest.mark.asyncio
async def test_aclose_cancels_workers(make_dispatcher, gated):
    dispatcher = make_dispatcher(gated)
    handle = await dispatcher.start_run("alice", [{"step_type": "x"}])
    await asyncio.wait_for(gated.started.wait(), 2)

    await dispatcher.aclose()

    assert handle.done()
    assert handle.task.cancelled()
