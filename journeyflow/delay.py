"""Delay steps as scheduled redelivery rather than in-process waits."""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional

from .constants import DEFAULT_DELAY_DURATION, DEFAULT_DELAY_UNIT
from .contracts import DELAYED_WAKE, JourneyMessage, StepJob
from .transports import BaseTransport

UNIT_MS = {
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
}


def _duration(value: Any) -> float:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return DEFAULT_DELAY_DURATION
    if math.isnan(duration) or math.isinf(duration) or duration <= 0:
        return DEFAULT_DELAY_DURATION
    return duration


def compute_delay_ms(config: Mapping[str, Any]) -> int:
    """Translate a delay step's ``duration``/``unit`` into milliseconds.

    >>> compute_delay_ms({"duration": 2, "unit": "hours"})
    7200000
    >>> compute_delay_ms({"duration": 1})
    3600000
    """
    duration = _duration(config.get("duration"))
    unit = config.get("unit") or DEFAULT_DELAY_UNIT
    return int(duration * UNIT_MS.get(unit, UNIT_MS[DEFAULT_DELAY_UNIT]))


class DelayScheduler:
    """Enqueue a delayed-wake unit carrying the originating job's identifiers."""

    def __init__(
        self,
        transport: BaseTransport,
        topic: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._transport = transport
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)

    async def schedule(self, job: StepJob, config: Mapping[str, Any]) -> int:
        """Schedule the wake-up and return the delay applied."""
        delay_ms = compute_delay_ms(config)
        await self._transport.publish(
            self._topic, JourneyMessage.wrap(DELAYED_WAKE, job, delay_ms=delay_ms)
        )
        self._logger.info(
            f"Scheduled wake for execution {job.execution_id} in {delay_ms}ms",
            extra={
                "execution_id": job.execution_id,
                "step_id": job.step_id,
                "delay_ms": delay_ms,
            },
        )
        return delay_ms
