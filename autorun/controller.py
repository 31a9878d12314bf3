"""Run lifecycle: creation, sequential step execution and resolution."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Literal, Optional

from pydantic import ValidationError as PydanticValidationError

from .cancellation import CancellationSignals
from .errors import (
    ConcurrencyConflict,
    ExecutorFailure,
    NotFoundError,
    ValidationError,
)
from .executors import StepExecutor
from .logsink import LogSink
from .models import (
    ACTIVE_RUN_STATUSES,
    OPEN_STEP_STATUSES,
    Run,
    RunSnapshot,
    RunStatus,
    Step,
    StepDefinition,
    StepResult,
    StepStatus,
)
from .notifier import ChangeNotifier
from .persistence import RunRepository

logger = logging.getLogger(__name__)


def parse_step_definitions(
    definitions: Iterable[StepDefinition | dict[str, Any]] | None,
) -> list[StepDefinition]:
    """Validate raw step definitions; raises ``ValidationError``."""
    if definitions is None:
        raise ValidationError("At least one step is required")
    try:
        parsed = [
            d if isinstance(d, StepDefinition) else StepDefinition.model_validate(d)
            for d in definitions
        ]
    except PydanticValidationError as e:
        logger.debug(f"Rejected step definitions: {e}")
        raise ValidationError("Invalid step definition") from e
    if not parsed:
        raise ValidationError("At least one step is required")
    return parsed


class RunController:
    """Owns the run and step state machines.

    Steps of one run execute strictly one at a time in ordinal order. Every
    status write goes through a repository compare-and-swap, and a change
    event is published only after the write is applied.
    """

    def __init__(
        self,
        repository: RunRepository,
        executor: StepExecutor,
        notifier: ChangeNotifier,
        log_sink: LogSink,
        signals: Optional[CancellationSignals] = None,
        step_timeout: Optional[float] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._notifier = notifier
        self._log = log_sink
        self._signals = signals or CancellationSignals()
        self._step_timeout = step_timeout
        # executor calls that outlived their step timeout
        self._abandoned: set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    async def start_run(
        self,
        owner_id: str,
        step_definitions: Iterable[StepDefinition | dict[str, Any]] | None,
        *,
        automation_id: Optional[str] = None,
        trigger: Literal["manual", "auto"] = "manual",
    ) -> Run:
        """Persist a new run with all of its steps and move it to running."""
        definitions = parse_step_definitions(step_definitions)
        try:
            run = Run(owner_id=owner_id, automation_id=automation_id, trigger=trigger)
        except PydanticValidationError as e:
            logger.debug(f"Rejected run options: {e}")
            raise ValidationError("Invalid run options") from e

        steps = [
            Step(
                run_id=run.id,
                ordinal=ordinal,
                step_type=definition.step_type,
                input=definition.input,
            )
            for ordinal, definition in enumerate(definitions)
        ]
        await self._repository.create_run(run, steps)
        logger.info(f"Created run_id={run.id} for owner={owner_id} with {len(steps)} steps")
        try:
            await self._notifier.run_changed(run.id, RunStatus.PENDING)
            await self._log.info(
                run.id,
                f"Run created; {len(steps)} steps queued",
                metadata={"trigger": trigger, "automation_id": automation_id},
            )
            if await self._repository.transition_run(
                run.id, [RunStatus.PENDING], RunStatus.RUNNING
            ):
                await self._notifier.run_changed(run.id, RunStatus.RUNNING)
                await self._log.info(run.id, "Run started")
        except Exception as e:
            # no worker exists yet; leave no active run behind
            try:
                await self.abort(run.id, f"start failed ({type(e).__name__})")
            except Exception:
                logger.exception(f"Could not mark run_id={run.id} as failed")
            raise

        current = await self._repository.get_run(run.id)
        if current is None:
            raise NotFoundError("Run not found")
        return current

    async def get_snapshot(self, run_id: str) -> RunSnapshot:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise NotFoundError("Run not found")
        steps = await self._repository.get_steps(run_id)
        return RunSnapshot(run=run, steps=steps)

    async def drive(self, run_id: str) -> RunSnapshot:
        """Execute steps until the run reaches a terminal state."""
        self._signals.open(run_id)
        try:
            while await self.execute_next(run_id):
                pass
        finally:
            self._signals.release(run_id)
        return await self.get_snapshot(run_id)

    async def execute_next(self, run_id: str) -> bool:
        """Advance ``run_id`` by one step.

        Returns ``False`` once there is nothing left for this loop to do.
        """
        run = await self._repository.get_run(run_id)
        if run is None:
            raise NotFoundError("Run not found")
        if run.status != RunStatus.RUNNING:
            return False

        step = await self._repository.next_pending_step(run_id)
        if step is None:
            await self._resolve(run_id)
            return False

        if not await self._repository.transition_step(
            step.id, StepStatus.PENDING, StepStatus.RUNNING
        ):
            logger.debug(f"Step {step.id} of run_id={run_id} moved concurrently; re-evaluating")
            return True
        await self._notifier.step_changed(step, StepStatus.RUNNING)
        await self._log.info(
            run_id, f"Step {step.ordinal} ({step.step_type}) started", step_id=step.id
        )

        result = await self._invoke(step)
        if result.success:
            await self._record_success(step, result)
        else:
            await self._record_failure(step, result)
        return True

    async def abort(self, run_id: str, reason: str) -> bool:
        """Fail a run whose execution loop crashed, closing its open steps.

        Open steps are cancelled even when the run already reached a terminal
        state, so an interrupted stop or failure cascade is completed here.
        Returns ``True`` if this call moved the run to failed.
        """
        aborted = await self._repository.transition_run(
            run_id, ACTIVE_RUN_STATUSES, RunStatus.FAILED
        )
        cancelled = await self._repository.cancel_open_steps(run_id, OPEN_STEP_STATUSES)
        if not aborted and not cancelled:
            return False
        try:
            if aborted:
                await self._log.error(run_id, f"Run aborted: {reason}")
            else:
                await self._log.error(
                    run_id,
                    f"{len(cancelled)} open steps cancelled after run ended ({reason})",
                )
        finally:
            await self._publish_closed(
                run_id, RunStatus.FAILED if aborted else None, cancelled
            )
        return aborted

    # ------------------------------------------------------------------
    async def _invoke(self, step: Step) -> StepResult:
        cancel_event = self._signals.open(step.run_id)
        call = asyncio.ensure_future(self._executor.execute(step, cancel_event))
        try:
            done, _ = await asyncio.wait({call}, timeout=self._step_timeout)
        except asyncio.CancelledError:
            call.cancel()
            raise
        if not done:
            # the call is signalled, not cancelled; whatever it returns is dropped
            logger.warning(f"Step {step.id} timed out after {self._step_timeout}s")
            cancel_event.set()
            self._abandoned.add(call)
            call.add_done_callback(self._reap_abandoned)
            return StepResult.failed("step timed out")
        try:
            return call.result()
        except ExecutorFailure as e:
            return StepResult.failed(e.message)
        except Exception as e:
            logger.exception(f"Executor raised for step {step.id} of run_id={step.run_id}")
            return StepResult.failed(f"Step execution error: {type(e).__name__}")

    def _reap_abandoned(self, call: asyncio.Future) -> None:
        self._abandoned.discard(call)
        if not call.cancelled() and call.exception() is not None:
            logger.info(
                f"Timed out executor call ended with {type(call.exception()).__name__}"
            )

    async def aclose(self) -> None:
        """Cancel executor calls still running past their step timeout."""
        for call in list(self._abandoned):
            call.cancel()
        if self._abandoned:
            await asyncio.gather(*self._abandoned, return_exceptions=True)

    async def _record_success(self, step: Step, result: StepResult) -> None:
        applied = await self._repository.transition_step(
            step.id,
            StepStatus.RUNNING,
            StepStatus.SUCCEEDED,
            result=result.output or {},
        )
        if not applied:
            await self._discard_late_result(step, "success")
            return
        await self._notifier.step_changed(step, StepStatus.SUCCEEDED)
        await self._log.info(
            step.run_id,
            f"Step {step.ordinal} ({step.step_type}) succeeded",
            step_id=step.id,
        )

    async def _record_failure(self, step: Step, result: StepResult) -> None:
        error = result.error or "Step failed"
        applied = await self._repository.transition_step(
            step.id,
            StepStatus.RUNNING,
            StepStatus.FAILED,
            error_message=error,
        )
        if not applied:
            await self._discard_late_result(step, "failure")
            return
        await self._notifier.step_changed(step, StepStatus.FAILED)
        await self._log.error(
            step.run_id,
            f"Step {step.ordinal} ({step.step_type}) failed: {error}",
            step_id=step.id,
        )
        await self._fail_run(step)

    async def _discard_late_result(self, step: Step, outcome: str) -> None:
        current = next(
            (s for s in await self._repository.get_steps(step.run_id) if s.id == step.id),
            None,
        )
        if current is None or not current.status.is_terminal:
            raise ConcurrencyConflict(
                f"Step {step.id} lost its {outcome} write but is not finished"
            )
        logger.info(
            f"Discarding late {outcome} of step {step.id}; run_id={step.run_id} no longer running it"
        )
        await self._log.info(
            step.run_id,
            f"Step {step.ordinal} ({step.step_type}) finished after cancellation; result discarded",
            step_id=step.id,
        )

    async def _fail_run(self, failed_step: Step) -> None:
        run_id = failed_step.run_id
        if not await self._repository.transition_run(
            run_id, [RunStatus.RUNNING], RunStatus.FAILED
        ):
            return
        cancelled = await self._repository.cancel_open_steps(run_id, [StepStatus.PENDING])
        try:
            await self._log.error(
                run_id,
                f"Run failed at step {failed_step.ordinal}; {len(cancelled)} remaining steps cancelled",
                step_id=failed_step.id,
            )
        finally:
            await self._publish_closed(run_id, RunStatus.FAILED, cancelled)
        logger.info(f"Run run_id={run_id} failed at step {failed_step.ordinal}")

    async def _publish_closed(
        self, run_id: str, status: Optional[RunStatus], cancelled: list[Step]
    ) -> None:
        """Publish a committed run close and the step cancellations it caused."""
        if status is not None:
            await self._notifier.run_changed(run_id, status)
        for step in cancelled:
            await self._notifier.step_changed(step, StepStatus.CANCELLED)

    async def _resolve(self, run_id: str) -> None:
        steps = await self._repository.get_steps(run_id)
        if all(s.status == StepStatus.SUCCEEDED for s in steps):
            if await self._repository.transition_run(
                run_id, [RunStatus.RUNNING], RunStatus.COMPLETED
            ):
                await self._notifier.run_changed(run_id, RunStatus.COMPLETED)
                await self._log.info(run_id, f"Run completed; {len(steps)} steps succeeded")
                logger.info(f"Run run_id={run_id} completed")
            return
        # no pending steps but not all succeeded while still running
        await self.abort(run_id, "steps left in an unexpected state")
