"""Stop requests for in-flight runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from .errors import NotFoundError, PermissionDenied
from .logsink import LogSink
from .models import (
    ACTIVE_RUN_STATUSES,
    OPEN_STEP_STATUSES,
    RunStatus,
    StepStatus,
    StopResult,
)
from .notifier import ChangeNotifier
from .persistence import RunRepository
from .security import PolicyEngine

logger = logging.getLogger(__name__)


class CancellationSignals:
    """Advisory cancel events for runs driven in this process."""

    def __init__(self) -> None:
        self._events: Dict[str, asyncio.Event] = {}

    def open(self, run_id: str) -> asyncio.Event:
        return self._events.setdefault(run_id, asyncio.Event())

    def release(self, run_id: str) -> None:
        self._events.pop(run_id, None)

    def signal(self, run_id: str) -> bool:
        event = self._events.get(run_id)
        if event is None:
            return False
        event.set()
        return True


class CancellationCoordinator:
    """Forces a run and its open steps into stopped/cancelled.

    Every write is a compare-and-swap against the status the row held when
    the stop began, so a step the execution loop finished first keeps its
    result and a result that arrives after cancellation is dropped by the
    loop's own CAS.
    """

    def __init__(
        self,
        repository: RunRepository,
        notifier: ChangeNotifier,
        log_sink: LogSink,
        policy: PolicyEngine,
        signals: CancellationSignals,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._log = log_sink
        self._policy = policy
        self._signals = signals

    async def stop_run(self, run_id: str, requester_id: str) -> StopResult:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise NotFoundError("Run not found")
        if not self._policy.can_stop(requester_id, run):
            logger.warning(f"Stop of run_id={run_id} denied for {requester_id}")
            raise PermissionDenied("You are not allowed to stop this run")

        stopped = await self._repository.transition_run(
            run_id, ACTIVE_RUN_STATUSES, RunStatus.STOPPED
        )
        if not stopped:
            logger.info(f"Stop requested for finished run_id={run_id}; nothing to do")
            return StopResult(message="Run already finished")
        # steps are closed before anything is published or logged
        cancelled = await self._repository.cancel_open_steps(run_id, OPEN_STEP_STATUSES)
        self._signals.signal(run_id)

        try:
            await self._log.warn(
                run_id,
                "Run stopped by user",
                metadata={"requested_by": requester_id, "cancelled_steps": len(cancelled)},
            )
        finally:
            await self._notifier.run_changed(run_id, RunStatus.STOPPED)
            for step in cancelled:
                await self._notifier.step_changed(step, StepStatus.CANCELLED)
        logger.info(
            f"Stopped run_id={run_id} ({len(cancelled)} steps cancelled) by {requester_id}"
        )
        return StopResult(message="Run stopped")
