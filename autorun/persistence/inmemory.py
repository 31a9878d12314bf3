"""In-memory implementation of the run repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ConflictError, NotFoundError
from ..models import (
    ACTIVE_RUN_STATUSES,
    LogEntry,
    LogLevel,
    Run,
    RunStatus,
    Step,
    StepStatus,
    utcnow,
)
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single lock makes every method one
    atomic unit, which is what gives the status writes their CAS semantics.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, Step] = {}
        self._run_steps: Dict[str, List[str]] = {}
        self._logs: Dict[str, List[LogEntry]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_run(self, run: Run, steps: list[Step]) -> None:
        async with self._lock:
            if run.automation_id is not None:
                for existing in self._runs.values():
                    if (
                        existing.automation_id == run.automation_id
                        and existing.status in ACTIVE_RUN_STATUSES
                    ):
                        raise ConflictError(
                            "An automation run is already active for this automation"
                        )
            self._runs[run.id] = run.model_copy()
            ordered = sorted(steps, key=lambda s: s.ordinal)
            for step in ordered:
                self._steps[step.id] = step.model_copy()
            self._run_steps[run.id] = [s.id for s in ordered]
            self._logs[run.id] = []

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy() if run else None

    async def list_runs(self, owner_id: Optional[str] = None) -> list[Run]:
        runs = [
            r.model_copy()
            for r in self._runs.values()
            if owner_id is None or r.owner_id == owner_id
        ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def get_steps(self, run_id: str) -> list[Step]:
        return [self._steps[sid].model_copy() for sid in self._run_steps.get(run_id, [])]

    async def next_pending_step(self, run_id: str) -> Step | None:
        for sid in self._run_steps.get(run_id, []):
            step = self._steps[sid]
            if step.status == StepStatus.PENDING:
                return step.model_copy()
        return None

    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        new_status: RunStatus,
        finished_at: Optional[datetime] = None,
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in set(expected):
                return False
            update: dict[str, Any] = {"status": new_status}
            if new_status.is_terminal:
                update["finished_at"] = finished_at or utcnow()
            self._runs[run_id] = run.model_copy(update=update)
            return True

    async def transition_step(
        self,
        step_id: str,
        expected: StepStatus,
        new_status: StepStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.status != expected:
                return False
            self._steps[step_id] = step.model_copy(
                update=_step_update(new_status, result, error_message)
            )
            return True

    async def cancel_open_steps(
        self, run_id: str, statuses: Iterable[StepStatus]
    ) -> list[Step]:
        wanted = set(statuses)
        cancelled: list[Step] = []
        async with self._lock:
            for sid in self._run_steps.get(run_id, []):
                step = self._steps[sid]
                if step.status in wanted:
                    updated = step.model_copy(
                        update=_step_update(StepStatus.CANCELLED, None, None)
                    )
                    self._steps[sid] = updated
                    cancelled.append(updated.model_copy())
        return cancelled

    async def append_log(
        self,
        run_id: str,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LogEntry:
        async with self._lock:
            if run_id not in self._runs:
                raise NotFoundError("Run not found")
            entries = self._logs[run_id]
            timestamp = utcnow()
            if entries and timestamp < entries[-1].timestamp:
                timestamp = entries[-1].timestamp
            entry = LogEntry(
                run_id=run_id,
                level=level,
                message=message,
                timestamp=timestamp,
                counter=len(entries) + 1,
                step_id=step_id,
                metadata=metadata or {},
            )
            entries.append(entry)
            return entry.model_copy()

    async def read_logs(
        self, run_id: str, after_counter: int = 0, limit: Optional[int] = None
    ) -> list[LogEntry]:
        entries = [e for e in self._logs.get(run_id, []) if e.counter > after_counter]
        entries.sort(key=lambda e: e.sort_key)
        if limit is not None:
            entries = entries[:limit]
        return [e.model_copy() for e in entries]


def _step_update(
    new_status: StepStatus,
    result: Optional[dict[str, Any]],
    error_message: Optional[str],
) -> dict[str, Any]:
    update: dict[str, Any] = {"status": new_status}
    now = utcnow()
    if new_status == StepStatus.RUNNING:
        update["started_at"] = now
    if new_status.is_terminal:
        update["finished_at"] = now
    if result is not None:
        update["result"] = result
    if error_message is not None:
        update["error_message"] = error_message
    return update
