"""Queue consumer driving the journey engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .contracts import (
    DELAYED_WAKE,
    EXECUTE_STEP,
    SCORE_TRIGGER_EVAL,
    SEGMENT_TRIGGER_EVAL,
    STALE_CLEANUP,
    JourneyMessage,
    ScoreTriggerJob,
    SegmentTriggerJob,
    StepJob,
)
from .engine import JourneyEngine
from .errors import JourneyError
from .utils.retry import backoff_ms

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DROPPED = "dropped"
RETRIED = "retried"
DEAD_LETTERED = "dead-lettered"


class JourneyWorker:
    """Consume engine topics and apply the retry policy.

    Non-retryable journey errors are logged and dropped. Anything else is
    republished with a backoff delay until ``max_attempts`` is reached, then
    routed to the dead-letter topic. Retries never sleep in process.
    """

    def __init__(self, engine: JourneyEngine, topics: Optional[List[str]] = None) -> None:
        self._engine = engine
        queues = engine.config.queues
        self.topics = topics or [
            queues.execute_step,
            queues.delayed_steps,
            queues.score_trigger_eval,
            queues.segment_trigger_eval,
            queues.stale_cleanup,
        ]
        self._handlers: Dict[str, Callable[[JourneyMessage], Awaitable[Any]]] = {
            EXECUTE_STEP: self._execute_step,
            DELAYED_WAKE: self._delayed_wake,
            SCORE_TRIGGER_EVAL: self._score_trigger_eval,
            SEGMENT_TRIGGER_EVAL: self._segment_trigger_eval,
            STALE_CLEANUP: self._stale_cleanup,
        }

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume every topic concurrently until ``lifespan`` elapses."""
        transport = self._engine.transport
        await transport.connect()
        try:
            await asyncio.gather(
                *(self._consume(topic, lifespan) for topic in self.topics)
            )
        finally:
            await transport.disconnect()

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        transport = self._engine.transport
        logger.info(f"Consuming {topic}")
        async for raw_message, message in transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.handle(topic, message)
            except Exception:
                logger.exception(f"Could not settle message {message.message_id} on {topic}")
                await transport.nack(raw_message, requeue=True)
                continue
            await transport.ack(raw_message)

    async def handle(self, topic: str, message: JourneyMessage) -> str:
        """Process one message and return how it was settled."""
        handler = self._handlers.get(message.kind)
        if handler is None:
            logger.warning(f"No handler for message kind {message.kind!r} on {topic}")
            return DROPPED
        try:
            await handler(message)
        except Exception as exc:
            if isinstance(exc, JourneyError) and not exc.retryable:
                logger.warning(
                    f"Dropping {message.kind} message {message.message_id}: {exc}",
                    extra={"topic": topic, "attempt": message.attempt},
                )
                return DROPPED
            return await self._retry(topic, message, exc)
        return PROCESSED

    async def _retry(self, topic: str, message: JourneyMessage, exc: Exception) -> str:
        engine_config = self._engine.config.engine
        transport = self._engine.transport
        if message.attempt >= engine_config.max_attempts:
            logger.error(
                f"Message {message.message_id} failed {message.attempt} times, dead-lettering: {exc}",
                extra={"topic": topic, "attempt": message.attempt},
            )
            await transport.publish(
                self._engine.config.queues.dead_letter, message.model_copy(update={"delay_ms": 0})
            )
            return DEAD_LETTERED

        delay_ms = backoff_ms(message.attempt, base=engine_config.retry_backoff_base)
        logger.warning(
            f"Retrying {message.kind} message {message.message_id} in {delay_ms}ms: {exc}",
            extra={"topic": topic, "attempt": message.attempt},
        )
        await transport.publish(topic, message.bump_attempt(delay_ms=delay_ms))
        return RETRIED

    # ------------------------------------------------------------------
    async def _execute_step(self, message: JourneyMessage) -> None:
        await self._engine.coordinator.execute_step(message.unwrap(StepJob))

    async def _delayed_wake(self, message: JourneyMessage) -> None:
        await self._engine.coordinator.process_delayed_step(message.unwrap(StepJob))

    async def _score_trigger_eval(self, message: JourneyMessage) -> None:
        job = message.unwrap(ScoreTriggerJob)
        await self._engine.triggers.evaluate_score_triggers(
            job.organization_id, job.contact_id, job.score, job.event_type, job.signal_type
        )

    async def _segment_trigger_eval(self, message: JourneyMessage) -> None:
        job = message.unwrap(SegmentTriggerJob)
        if job.organization_id and job.contact_id and job.segment_id:
            await self._engine.triggers.evaluate_segment_event(
                job.organization_id, job.contact_id, job.segment_id, job.action
            )
        else:
            await self._engine.triggers.evaluate_segment_triggers()

    async def _stale_cleanup(self, message: JourneyMessage) -> None:
        await self._engine.reaper.cleanup_stale_executions()
