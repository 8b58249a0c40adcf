"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from ..contracts import JourneyMessage
from .base import BaseTransport

_Entry = Tuple[float, int, JourneyMessage]


class InMemoryTransport(BaseTransport[JourneyMessage]):
    """Simple in-process queue for unit tests.

    Each topic is a heap ordered by due time, so delayed messages are only
    handed out once ``clock()`` passes their due time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._queues: Dict[str, List[_Entry]] = defaultdict(list)
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self._clock = clock

    async def publish(self, topic: str, message: JourneyMessage) -> None:
        """Publish message to in-memory queue."""
        due = self._clock() + message.delay_ms / 1000
        async with self._lock:
            heapq.heappush(self._queues[topic], (due, next(self._seq), message))

    def pending(self, topic: str) -> List[JourneyMessage]:
        """Messages still queued on ``topic``, delayed ones included, in due order."""
        return [entry[2] for entry in sorted(self._queues[topic])]

    async def take(
        self, topic: str, ignore_delay: bool = False
    ) -> Optional[JourneyMessage]:
        """Pop the next due message, or the next one at all with ``ignore_delay``."""
        async with self._lock:
            queue = self._queues[topic]
            if not queue:
                return None
            if not ignore_delay and queue[0][0] > self._clock():
                return None
            return heapq.heappop(queue)[2]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[JourneyMessage, JourneyMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            message = await self.take(topic)
            if message is not None:
                yield message, message
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: JourneyMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
