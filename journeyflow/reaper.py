"""Safety net for executions whose continuation never arrived."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .config import QueueConfig
from .constants import DEFAULT_STALE_AFTER_DAYS
from .events import EXECUTION_CANCELED, publish_execution_event
from .models import JourneyExecution, LogLevel, utcnow
from .persistence import JourneyRepository
from .transports import BaseTransport


class StaleExecutionReaper:
    """Cancel active executions that started too long ago."""

    def __init__(
        self,
        repository: JourneyRepository,
        transport: Optional[BaseTransport] = None,
        queues: Optional[QueueConfig] = None,
        stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._queues = queues or QueueConfig()
        self.stale_after = timedelta(days=stale_after_days)
        self._logger = logger or logging.getLogger(__name__)

    async def cleanup_stale_executions(
        self, now: Optional[datetime] = None
    ) -> list[JourneyExecution]:
        """Cancel every active execution started before ``now - stale_after``.

        Returns the executions that were canceled.
        """
        cutoff = (now or utcnow()) - self.stale_after
        stale = await self._repository.find_stale_executions(cutoff)
        canceled: list[JourneyExecution] = []
        for execution in stale:
            if not execution.cancel():
                continue
            await self._repository.save_execution(execution)
            await self._repository.log_execution(
                execution.id,
                execution.organization_id,
                LogLevel.WARN,
                f"Execution canceled due to staleness (stuck > {self.stale_after.days} days)",
            )
            if self._transport is not None:
                await publish_execution_event(
                    self._transport,
                    self._queues.events,
                    EXECUTION_CANCELED,
                    execution,
                    reason="stale",
                )
            canceled.append(execution)
        if canceled:
            self._logger.warning(
                f"Canceled {len(canceled)} stale executions",
                extra={"cutoff": cutoff.isoformat(), "count": len(canceled)},
            )
        return canceled
