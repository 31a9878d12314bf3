"""Shared fixtures for autorun tests."""

from __future__ import annotations

import asyncio

import pytest

from autorun import AutorunConfig, RunDispatcher, StepExecutor, StepResult
from autorun.persistence import InMemoryRunRepository
from autorun.transports import InMemoryTransport


class GatedExecutor(StepExecutor):
    """Blocks every step until ``release`` is set.

    ``started`` is set when the first step begins executing.
    """

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[int] = []
        self.cancel_seen = False

    async def execute(self, step, cancel_event):
        self.calls.append(step.ordinal)
        self.started.set()
        await self.release.wait()
        self.cancel_seen = cancel_event.is_set()
        return StepResult.ok({"ordinal": step.ordinal})


@pytest.fixture
def repository():
    return InMemoryRunRepository()


@pytest.fixture
def gated():
    return GatedExecutor()


@pytest.fixture
def make_dispatcher(repository):
    def _make(executor, config=None, policy=None, transport=None):
        return RunDispatcher(
            executor=executor,
            repository=repository,
            transport=transport or InMemoryTransport(),
            policy=policy,
            config=config or AutorunConfig(),
        )

    return _make
