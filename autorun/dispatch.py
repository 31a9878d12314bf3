"""Run dispatcher: the operations exposed to UI, CLI and API callers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Iterable, Literal, Optional

from .cancellation import CancellationCoordinator, CancellationSignals
from .config import AutorunConfig, load_config
from .controller import RunController
from .errors import NotFoundError
from .executors import StepExecutor, StepExecutorRegistry
from .logsink import LogSink, LogStream
from .models import (
    OPEN_STEP_STATUSES,
    ChangeEvent,
    Run,
    RunSnapshot,
    StepDefinition,
    StepStatus,
    StopResult,
)
from .notifier import ChangeNotifier
from .persistence import RunRepository, get_repository
from .security import PolicyEngine
from .transports import BaseTransport, Subscription, get_transport

logger = logging.getLogger(__name__)


class RunHandle:
    """Handle to a started run and the worker driving it."""

    def __init__(self, run: Run, task: asyncio.Task) -> None:
        self.run = run
        self.task = task

    @property
    def run_id(self) -> str:
        return self.run.id

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> RunSnapshot:
        """Wait for the run to reach a terminal state and return its final snapshot."""
        return await self.task


class ChangeStream:
    """Change events of one run, as committed after subscription.

    The stream ends once the run is terminal and every step that was open
    when the subscription started has reported its final status.
    """

    def __init__(self, subscription: Subscription, snapshot: RunSnapshot) -> None:
        self._subscription = subscription
        self._run_done = snapshot.run.status.is_terminal
        self._open_steps = {
            s.id for s in snapshot.steps if s.status in OPEN_STEP_STATUSES
        }

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        run_done = self._run_done
        open_steps = set(self._open_steps)
        try:
            while not (run_done and not open_steps):
                event = await self._subscription.next_event()
                if event is None:
                    return
                yield event
                if event.entity_kind == "run":
                    run_done = run_done or event.is_terminal_run_event
                elif StepStatus(event.new_status).is_terminal:
                    open_steps.discard(event.entity_id)
        finally:
            await self._subscription.close()

    async def close(self) -> None:
        await self._subscription.close()


class RunDispatcher:
    """Starts runs on one worker task each and serves their state.

    Runs are independent of each other and execute concurrently; within a
    run, the controller executes steps sequentially.
    """

    def __init__(
        self,
        executor: Optional[StepExecutor] = None,
        repository: Optional[RunRepository] = None,
        transport: Optional[BaseTransport] = None,
        policy: Optional[PolicyEngine] = None,
        config: Optional[AutorunConfig] = None,
    ) -> None:
        config = config or load_config()
        self.config = config
        self._repository = repository or get_repository()
        self._transport = transport or get_transport(config=config)
        self.notifier = ChangeNotifier(self._transport)
        self.log_sink = LogSink(self._repository)
        self._signals = CancellationSignals()
        self.controller = RunController(
            self._repository,
            executor or StepExecutorRegistry(),
            self.notifier,
            self.log_sink,
            signals=self._signals,
            step_timeout=config.execution.step_timeout,
        )
        self.cancellation = CancellationCoordinator(
            self._repository,
            self.notifier,
            self.log_sink,
            policy or PolicyEngine.from_config(config.security),
            self._signals,
        )
        self._workers: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    async def start_run(
        self,
        owner_id: str,
        step_definitions: Iterable[StepDefinition | dict[str, Any]] | None,
        *,
        automation_id: Optional[str] = None,
        trigger: Literal["manual", "auto"] = "manual",
    ) -> RunHandle:
        """Create a run and start a worker executing its steps.

        Args:
            owner_id: Identity of the user the run belongs to.
            step_definitions: Ordered, non-empty sequence of steps.
            automation_id: Optional id of the stored automation; only one
                active run per automation is allowed.
            trigger: ``"manual"`` or ``"auto"``.

        Returns:
            Handle for the running run.
        """
        run = await self.controller.start_run(
            owner_id, step_definitions, automation_id=automation_id, trigger=trigger
        )
        task = asyncio.create_task(self._worker(run.id), name=f"autorun-{run.id}")
        self._workers[run.id] = task
        task.add_done_callback(lambda _: self._workers.pop(run.id, None))
        return RunHandle(run, task)

    async def stop_run(self, run_id: str, requester_id: str) -> StopResult:
        return await self.cancellation.stop_run(run_id, requester_id)

    async def get_run_status(self, run_id: str) -> RunSnapshot:
        return await self.controller.get_snapshot(run_id)

    async def list_runs(self, owner_id: Optional[str] = None) -> list[Run]:
        return await self._repository.list_runs(owner_id)

    async def subscribe_to_changes(
        self, run_id: str, lifespan: Optional[float] = None
    ) -> ChangeStream:
        """Subscribe to change events of ``run_id``.

        The subscription is registered before this returns. For a finished
        run the stream is empty.
        """
        subscription = await self.notifier.subscribe(run_id, lifespan=lifespan)
        try:
            snapshot = await self.controller.get_snapshot(run_id)
        except NotFoundError:
            await subscription.close()
            raise
        return ChangeStream(subscription, snapshot)

    async def read_logs(self, run_id: str) -> LogStream:
        if await self._repository.get_run(run_id) is None:
            raise NotFoundError("Run not found")
        return self.log_sink.read(run_id)

    async def join(self) -> None:
        """Wait for every active worker to finish."""
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel active workers; their runs stay as last persisted."""
        for task in list(self._workers.values()):
            task.cancel()
        await self.join()
        await self.controller.aclose()
        await self._transport.disconnect()

    # ------------------------------------------------------------------
    async def _worker(self, run_id: str) -> RunSnapshot:
        try:
            return await self.controller.drive(run_id)
        except Exception as e:
            logger.exception(f"Worker for run_id={run_id} crashed")
            try:
                await self.controller.abort(run_id, type(e).__name__)
            except Exception:
                logger.exception(f"Could not mark run_id={run_id} as failed")
            raise
