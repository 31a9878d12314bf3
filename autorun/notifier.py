"""Typed change notifications for runs and steps."""

from __future__ import annotations

import logging
from typing import Optional

from .models import ChangeEvent, RunStatus, Step, StepStatus
from .transports import BaseTransport, Subscription

logger = logging.getLogger(__name__)


def run_topic(run_id: str) -> str:
    return f"runs.{run_id}"


class ChangeNotifier:
    """Publishes one event per committed status transition.

    Callers publish only after the repository reports the write as applied,
    and await the publish before their operation returns.
    """

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport

    async def run_changed(self, run_id: str, status: RunStatus) -> None:
        await self._publish(
            ChangeEvent(
                entity_kind="run",
                entity_id=run_id,
                run_id=run_id,
                new_status=status.value,
            )
        )

    async def step_changed(self, step: Step, status: StepStatus) -> None:
        await self._publish(
            ChangeEvent(
                entity_kind="step",
                entity_id=step.id,
                run_id=step.run_id,
                new_status=status.value,
            )
        )

    async def subscribe(
        self, run_id: str, lifespan: Optional[float] = None
    ) -> Subscription:
        return await self._transport.subscribe(run_topic(run_id), lifespan=lifespan)

    async def _publish(self, event: ChangeEvent) -> None:
        try:
            await self._transport.publish(run_topic(event.run_id), event)
        except Exception as e:
            logger.error(
                f"Failed to publish {event.entity_kind} {event.entity_id} -> "
                f"{event.new_status} for run_id={event.run_id}: {e}"
            )
            raise
        logger.debug(
            f"Published {event.entity_kind} {event.entity_id} -> {event.new_status} "
            f"for run_id={event.run_id}"
        )
