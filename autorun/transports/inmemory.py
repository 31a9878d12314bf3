"""In-memory transport for a single process and for tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, Optional, Set

from ..models import ChangeEvent
from .base import BaseTransport, Subscription

_CLOSED = None


class InMemorySubscription(Subscription):
    def __init__(
        self,
        transport: "InMemoryTransport",
        topic: str,
        lifespan: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self._topic = topic
        self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue()
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + lifespan if lifespan else None
        self._closed = False

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def next_event(self) -> Optional[ChangeEvent]:
        if self._closed and self._queue.empty():
            return None
        timeout = None
        if self._deadline is not None:
            timeout = self._deadline - asyncio.get_running_loop().time()
            if timeout <= 0:
                await self.close()
                return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            await self.close()
            return None
        if event is _CLOSED:
            return None
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._transport._unregister(self._topic, self)
        self._queue.put_nowait(_CLOSED)


class InMemoryTransport(BaseTransport):
    """Fan-out of events to in-process subscriber queues."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[InMemorySubscription]] = defaultdict(set)

    async def publish(self, topic: str, event: ChangeEvent) -> None:
        """Deliver ``event`` to every subscriber queue of ``topic``."""
        for subscription in list(self._subscribers.get(topic, ())):
            subscription.deliver(event)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> InMemorySubscription:
        subscription = InMemorySubscription(self, topic, lifespan)
        self._subscribers[topic].add(subscription)
        return subscription

    def _unregister(self, topic: str, subscription: InMemorySubscription) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[topic]
