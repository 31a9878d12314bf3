import asyncio

import pytest

from autorun.errors import ConflictError, NotFoundError
from autorun.models import LogLevel, Run, RunStatus, Step, StepStatus
from autorun.persistence import InMemoryRunRepository, SQLiteRunRepository


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteRunRepository(tmp_path / "runs.db")
    return InMemoryRunRepository()


async def _create(repo, steps=2, **run_fields):
    run = Run(owner_id="alice", status=RunStatus.RUNNING, **run_fields)
    step_rows = [
        Step(run_id=run.id, ordinal=i, step_type="x", input={"n": i})
        for i in range(steps)
    ]
    await repo.create_run(run, step_rows)
    return run, step_rows


@pytest.mark.asyncio
async def test_create_and_read_run(repo):
    run, steps = await _create(repo, automation_id="auto-1", trigger="auto")

    stored = await repo.get_run(run.id)
    assert stored is not None
    assert stored.owner_id == "alice"
    assert stored.status == RunStatus.RUNNING
    assert stored.automation_id == "auto-1"
    assert stored.trigger == "auto"
    assert stored.finished_at is None

    stored_steps = await repo.get_steps(run.id)
    assert [s.id for s in stored_steps] == [s.id for s in steps]
    assert [s.input for s in stored_steps] == [{"n": 0}, {"n": 1}]
    assert all(s.status == StepStatus.PENDING for s in stored_steps)

    assert await repo.get_run("missing") is None
    assert await repo.get_steps("missing") == []


@pytest.mark.asyncio
async def test_list_runs_newest_first_and_by_owner(repo):
    first, _ = await _create(repo)
    await asyncio.sleep(0.01)
    second, _ = await _create(repo)
    other = Run(owner_id="bob")
    await repo.create_run(other, [Step(run_id=other.id, ordinal=0, step_type="x")])

    assert [r.id for r in await repo.list_runs("alice")] == [second.id, first.id]
    assert [r.id for r in await repo.list_runs("bob")] == [other.id]
    assert len(await repo.list_runs()) == 3


@pytest.mark.asyncio
async def test_run_transition_is_compare_and_swap(repo):
    run, _ = await _create(repo)

    assert await repo.transition_run(run.id, [RunStatus.RUNNING], RunStatus.STOPPED)
    assert not await repo.transition_run(
        run.id, [RunStatus.RUNNING], RunStatus.COMPLETED
    )
    assert not await repo.transition_run("missing", [RunStatus.RUNNING], RunStatus.FAILED)

    stored = await repo.get_run(run.id)
    assert stored.status == RunStatus.STOPPED
    assert stored.finished_at is not None


@pytest.mark.asyncio
async def test_step_transition_records_result_and_timestamps(repo):
    run, steps = await _create(repo)
    step_id = steps[0].id

    assert await repo.transition_step(step_id, StepStatus.PENDING, StepStatus.RUNNING)
    assert await repo.transition_step(
        step_id, StepStatus.RUNNING, StepStatus.SUCCEEDED, result={"url": "a.png"}
    )
    assert not await repo.transition_step(
        step_id, StepStatus.RUNNING, StepStatus.FAILED, error_message="late"
    )

    stored = (await repo.get_steps(run.id))[0]
    assert stored.status == StepStatus.SUCCEEDED
    assert stored.result == {"url": "a.png"}
    assert stored.error_message is None
    assert stored.started_at is not None
    assert stored.finished_at is not None

    pending = await repo.next_pending_step(run.id)
    assert pending is not None and pending.ordinal == 1


@pytest.mark.asyncio
async def test_cancel_open_steps_only_touches_requested_statuses(repo):
    run, steps = await _create(repo, steps=3)
    await repo.transition_step(steps[0].id, StepStatus.PENDING, StepStatus.RUNNING)
    await repo.transition_step(steps[0].id, StepStatus.RUNNING, StepStatus.SUCCEEDED)
    await repo.transition_step(steps[1].id, StepStatus.PENDING, StepStatus.RUNNING)

    cancelled = await repo.cancel_open_steps(run.id, [StepStatus.PENDING])
    assert [s.ordinal for s in cancelled] == [2]
    assert all(s.status == StepStatus.CANCELLED for s in cancelled)

    cancelled = await repo.cancel_open_steps(
        run.id, [StepStatus.PENDING, StepStatus.RUNNING]
    )
    assert [s.ordinal for s in cancelled] == [1]
    assert await repo.cancel_open_steps(run.id, [StepStatus.RUNNING]) == []

    statuses = [s.status for s in await repo.get_steps(run.id)]
    assert statuses == [
        StepStatus.SUCCEEDED,
        StepStatus.CANCELLED,
        StepStatus.CANCELLED,
    ]
    assert await repo.next_pending_step(run.id) is None


@pytest.mark.asyncio
async def test_concurrent_transitions_have_one_winner(repo):
    run, steps = await _create(repo, steps=1)
    await repo.transition_step(steps[0].id, StepStatus.PENDING, StepStatus.RUNNING)

    outcomes = await asyncio.gather(
        repo.transition_step(
            steps[0].id, StepStatus.RUNNING, StepStatus.SUCCEEDED, result={}
        ),
        repo.transition_step(steps[0].id, StepStatus.RUNNING, StepStatus.CANCELLED),
        repo.transition_step(
            steps[0].id, StepStatus.RUNNING, StepStatus.FAILED, error_message="x"
        ),
    )
    assert sorted(outcomes) == [False, False, True]

    run_outcomes = await asyncio.gather(
        repo.transition_run(run.id, [RunStatus.RUNNING], RunStatus.STOPPED),
        repo.transition_run(run.id, [RunStatus.RUNNING], RunStatus.FAILED),
    )
    assert sorted(run_outcomes) == [False, True]


@pytest.mark.asyncio
async def test_second_active_run_per_automation_conflicts(repo):
    first, _ = await _create(repo, automation_id="auto-1")

    with pytest.raises(ConflictError):
        await _create(repo, automation_id="auto-1")
    assert len(await repo.list_runs()) == 1

    await repo.transition_run(first.id, [RunStatus.RUNNING], RunStatus.COMPLETED)
    await _create(repo, automation_id="auto-1")
    assert len(await repo.list_runs()) == 2


@pytest.mark.asyncio
async def test_append_log_counts_per_run(repo):
    run, steps = await _create(repo)
    other, _ = await _create(repo)

    first = await repo.append_log(run.id, LogLevel.INFO, "one")
    second = await repo.append_log(
        run.id,
        LogLevel.WARN,
        "two",
        step_id=steps[0].id,
        metadata={"requested_by": "alice"},
    )
    elsewhere = await repo.append_log(other.id, LogLevel.INFO, "other")

    assert (first.counter, second.counter, elsewhere.counter) == (1, 2, 1)
    assert second.timestamp >= first.timestamp

    entries = await repo.read_logs(run.id)
    assert [e.message for e in entries] == ["one", "two"]
    assert entries[1].level == LogLevel.WARN
    assert entries[1].step_id == steps[0].id
    assert entries[1].metadata == {"requested_by": "alice"}

    with pytest.raises(NotFoundError):
        await repo.append_log("missing", LogLevel.INFO, "nope")


@pytest.mark.asyncio
async def test_read_logs_pages_by_counter(repo):
    run, _ = await _create(repo)
    for i in range(5):
        await repo.append_log(run.id, LogLevel.INFO, f"m{i}")

    page = await repo.read_logs(run.id, after_counter=0, limit=2)
    assert [e.counter for e in page] == [1, 2]
    page = await repo.read_logs(run.id, after_counter=2, limit=2)
    assert [e.counter for e in page] == [3, 4]
    page = await repo.read_logs(run.id, after_counter=4, limit=2)
    assert [e.counter for e in page] == [5]
    assert await repo.read_logs("missing") == []
