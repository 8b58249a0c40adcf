"""Base transport interface for journey messaging."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JourneyMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract at-least-once transport.

    Backends must honor ``JourneyMessage.delay_ms`` by withholding the message
    until the delay has elapsed, without holding a worker while they wait.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: JourneyMessage) -> None:
        """Send a message to a topic/queue.

        ``message.delay_ms`` of ``0`` delivers immediately. A positive value
        means no subscriber may receive the message until that many
        milliseconds after this call. The delay is carried by the broker, so
        ``publish`` returns without waiting for it and the message survives a
        restart of the publishing process where the backend is durable.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JourneyMessage]]:
        """Yield raw transport message and JourneyMessage pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
