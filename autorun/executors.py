"""Step executor boundary.

A step executor performs the actual work of one step, typically a call to an
external generation service. Executors receive a cancellation signal they may
honor on their own schedule; the recorded outcome of a step is decided by the
run controller, not by the executor.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .config import ExecutionConfig, HttpExecutorConfig
from .errors import ExecutorFailure
from .models import Step, StepResult

logger = logging.getLogger(__name__)

StepFunction = Callable[[Step, asyncio.Event], Awaitable[Any]]


class StepExecutor(metaclass=abc.ABCMeta):
    """Performs the work of a single step."""

    @abc.abstractmethod
    async def execute(self, step: Step, cancel_event: asyncio.Event) -> StepResult:
        """Run ``step`` and report its outcome.

        ``cancel_event`` is set when the run is stopped while the call is in
        flight.
        """
        raise NotImplementedError


class FunctionStepExecutor(StepExecutor):
    """Adapts an async callable into a step executor.

    The callable may return a ``StepResult``, a ``dict`` (taken as the
    output of a successful step) or ``None``; raising ``ExecutorFailure``
    reports a failed step.
    """

    def __init__(self, func: StepFunction) -> None:
        self._func = func

    async def execute(self, step: Step, cancel_event: asyncio.Event) -> StepResult:
        try:
            value = await self._func(step, cancel_event)
        except ExecutorFailure as e:
            return StepResult.failed(e.message)
        if isinstance(value, StepResult):
            return value
        if value is None:
            return StepResult.ok()
        if isinstance(value, dict):
            return StepResult.ok(value)
        return StepResult.ok({"result": value})


class StepExecutorRegistry(StepExecutor):
    """Routes each step to the executor registered for its ``step_type``."""

    def __init__(self, executors: Optional[Dict[str, StepExecutor]] = None) -> None:
        self._executors: Dict[str, StepExecutor] = dict(executors or {})

    def register(self, step_type: str, executor: StepExecutor | StepFunction) -> None:
        if not isinstance(executor, StepExecutor):
            executor = FunctionStepExecutor(executor)
        self._executors[step_type] = executor

    def step(self, step_type: str) -> Callable[[StepFunction], StepFunction]:
        """Decorator form of :meth:`register`."""

        def decorator(func: StepFunction) -> StepFunction:
            self.register(step_type, func)
            return func

        return decorator

    def __contains__(self, step_type: str) -> bool:
        return step_type in self._executors

    async def execute(self, step: Step, cancel_event: asyncio.Event) -> StepResult:
        executor = self._executors.get(step.step_type)
        if executor is None:
            logger.warning(f"No executor registered for step_type={step.step_type}")
            return StepResult.failed(f"Unknown step type: {step.step_type}")
        return await executor.execute(step, cancel_event)


class HttpStepExecutor(StepExecutor):
    """Executes a step by POSTing its input to a generation proxy endpoint.

    The endpoint receives ``{"step_id", "run_id", "step_type", "input"}`` and
    answers with ``{"success": bool, "output": {...}, "error": str}``.
    """

    def __init__(
        self,
        path: str,
        config: Optional[HttpExecutorConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or HttpExecutorConfig()
        self.path = path
        self._client = client

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self.config.headers,
            timeout=self.config.timeout,
        )

    async def execute(self, step: Step, cancel_event: asyncio.Event) -> StepResult:
        if cancel_event.is_set():
            return StepResult.failed("cancelled before dispatch")

        body = {
            "step_id": step.id,
            "run_id": step.run_id,
            "step_type": step.step_type,
            "input": step.input,
        }
        client = self._client or self._make_client()
        try:
            response = await client.post(self.path, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Step {step.id} endpoint returned {e.response.status_code}")
            return StepResult.failed(f"Service returned HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Step {step.id} request to {self.path} failed: {e}")
            return StepResult.failed("Service request failed")
        finally:
            if self._client is None:
                await client.aclose()

        if not isinstance(data, dict):
            return StepResult.failed("Malformed service response")
        if data.get("success"):
            return StepResult.ok(data.get("output") or {})
        return StepResult.failed(str(data.get("error") or "Unknown service error"))


def build_executor(config: Optional[ExecutionConfig] = None) -> StepExecutorRegistry:
    """Registry with one ``HttpStepExecutor`` per configured route."""
    config = config or ExecutionConfig()
    registry = StepExecutorRegistry()
    for step_type, path in config.http.routes.items():
        registry.register(step_type, HttpStepExecutor(path, config=config.http))
    return registry
