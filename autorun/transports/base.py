"""Base transport interface for change notifications."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..models import ChangeEvent


class Subscription(metaclass=abc.ABCMeta):
    """Registered interest in one topic.

    The subscription is live from the moment it is returned, so no event
    published afterwards is missed even if iteration starts later.
    """

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    @abc.abstractmethod
    async def next_event(self) -> Optional[ChangeEvent]:
        """Wait for the next event; ``None`` once the subscription is closed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Stop receiving events."""
        raise NotImplementedError

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract publish/subscribe channel for change events.

    Delivery is at-least-once; subscribers must tolerate duplicates.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: ChangeEvent) -> None:
        """Send an event to every current subscriber of ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> Subscription:
        """Register a subscriber for ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        raise NotImplementedError
