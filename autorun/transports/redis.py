"""Redis pub/sub transport for cross-process change notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError as PydanticValidationError

from ..models import ChangeEvent
from .base import BaseTransport, Subscription

logger = logging.getLogger(__name__)


class RedisSubscription(Subscription):
    def __init__(self, pubsub: Any, channel: str, lifespan: Optional[float] = None) -> None:
        self._pubsub = pubsub
        self._channel = channel
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + lifespan if lifespan else None
        self._closed = False

    async def next_event(self) -> Optional[ChangeEvent]:
        while not self._closed:
            if self._deadline is not None and asyncio.get_running_loop().time() >= self._deadline:
                await self.close()
                break
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if not message:
                continue
            try:
                return ChangeEvent.from_json(message["data"])
            except PydanticValidationError as e:
                logger.warning(f"Dropping malformed change event on {self._channel}: {e}")
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pubsub.unsubscribe(self._channel)
        await self._pubsub.aclose()


class RedisTransport(BaseTransport):
    """Redis-based transport for distributed change notification."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: ChangeEvent) -> None:
        """Publish event on the Redis channel for ``topic``."""
        if not self._redis:
            await self.connect()

        await self._redis.publish(f"autorun:{topic}", event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> RedisSubscription:
        """Subscribe to the Redis channel for ``topic``."""
        if not self._redis:
            await self.connect()

        channel = f"autorun:{topic}"
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, lifespan)
