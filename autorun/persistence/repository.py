"""Repository abstraction for run state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from ..models import LogEntry, LogLevel, Run, RunStatus, Step, StepStatus


class RunRepository(Protocol):
    """Protocol for run state persistence backends.

    Every status write is a compare-and-swap: it names the status the row is
    expected to hold and reports whether the write was applied. Log entries
    are insert-only.
    """

    async def create_run(self, run: Run, steps: list[Step]) -> None:
        """Persist ``run`` and all of its ``steps`` in one atomic unit.

        Raises ``ConflictError`` when ``run.automation_id`` already has a
        pending or running run.
        """

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    async def list_runs(self, owner_id: Optional[str] = None) -> list[Run]:
        """Return runs newest first, optionally filtered by owner."""

    async def get_steps(self, run_id: str) -> list[Step]:
        """Return the steps of a run in ordinal order."""

    async def next_pending_step(self, run_id: str) -> Step | None:
        """Return the lowest-ordinal pending step, if any."""

    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        new_status: RunStatus,
        finished_at: Optional[datetime] = None,
    ) -> bool:
        """CAS the run status; ``finished_at`` defaults to now for terminal states."""

    async def transition_step(
        self,
        step_id: str,
        expected: StepStatus,
        new_status: StepStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """CAS the step status and record its outcome fields."""

    async def cancel_open_steps(
        self, run_id: str, statuses: Iterable[StepStatus]
    ) -> list[Step]:
        """CAS every step of ``run_id`` in ``statuses`` to cancelled.

        Returns the steps this call actually cancelled.
        """

    async def append_log(
        self,
        run_id: str,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LogEntry:
        """Insert a log entry, allocating the next counter for the run."""

    async def read_logs(
        self, run_id: str, after_counter: int = 0, limit: Optional[int] = None
    ) -> list[LogEntry]:
        """Return log entries after ``after_counter`` in (timestamp, counter) order."""
