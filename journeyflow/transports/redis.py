"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import JourneyMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport for distributed messaging.

    Ready messages live in a list per topic. Delayed messages wait in a sorted
    set scored by due time (epoch milliseconds) and are promoted to the list
    by whichever consumer polls first after they fall due.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "journeyflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _delayed_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:delayed"

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

    async def publish(self, topic: str, message: JourneyMessage) -> None:
        """Publish message to Redis list, or to the delay set when deferred."""
        if not self._redis:
            await self.connect()

        message_json = message.to_json()
        if message.delay_ms > 0:
            due_ms = int(time.time() * 1000) + message.delay_ms
            await self._redis.zadd(self._delayed_name(topic), {message_json: due_ms})
        else:
            await self._redis.lpush(self._queue_name(topic), message_json)

    async def _promote_due(self, topic: str) -> None:
        now_ms = int(time.time() * 1000)
        delayed = self._delayed_name(topic)
        due = await self._redis.zrangebyscore(delayed, "-inf", now_ms, start=0, num=100)
        for message_json in due:
            # Only the consumer that removes the member may promote it.
            if await self._redis.zrem(delayed, message_json):
                await self._redis.lpush(self._queue_name(topic), message_json)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, JourneyMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            await self._promote_due(topic)

            # Blocking pop with timeout
            result = await self._redis.brpop(queue_name, timeout=1)

            if result:
                _, message_json = result
                try:
                    message = JourneyMessage.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Dropping unparseable message on {topic}: {e}")
                    continue
                yield message_json, message

            # Brief sleep to prevent busy waiting when no messages
            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
