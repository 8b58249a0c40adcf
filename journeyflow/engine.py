"""Wiring of the journey engine components from configuration."""

from __future__ import annotations

import logging
from typing import Optional

from .config import JourneyflowConfig, load_config
from .coordinator import ContactLookup, StepExecutionCoordinator
from .delay import DelayScheduler
from .dispatch import JourneyDispatcher
from .idempotency import IdempotencyGuard, IdempotencyStore, get_idempotency_store
from .journeys import JourneyService
from .persistence import JourneyRepository, get_repository
from .reaper import StaleExecutionReaper
from .transports import BaseTransport, get_transport
from .triggers import SegmentMembership, TriggerEvaluator


class JourneyEngine:
    """All engine services sharing one repository, transport and guard."""

    def __init__(
        self,
        config: JourneyflowConfig,
        repository: JourneyRepository,
        transport: BaseTransport,
        store: IdempotencyStore,
        contacts: Optional[ContactLookup] = None,
        segments: Optional[SegmentMembership] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.transport = transport
        self.store = store
        queues = config.queues
        self.guard = IdempotencyGuard(store, config.idempotency.ttl_seconds)
        self.delay_scheduler = DelayScheduler(transport, queues.delayed_steps, logger=logger)
        self.coordinator = StepExecutionCoordinator(
            repository,
            transport,
            self.guard,
            self.delay_scheduler,
            queues=queues,
            idempotency=config.idempotency,
            contacts=contacts,
            logger=logger,
        )
        self.dispatcher = JourneyDispatcher(repository, transport, queues, logger=logger)
        self.triggers = TriggerEvaluator(
            repository, self.dispatcher, segments=segments, logger=logger
        )
        self.reaper = StaleExecutionReaper(
            repository,
            transport,
            queues,
            stale_after_days=config.engine.stale_after_days,
            logger=logger,
        )
        self.journeys = JourneyService(repository, transport, queues, logger=logger)

    @classmethod
    def from_config(
        cls,
        config: Optional[JourneyflowConfig] = None,
        repository: Optional[JourneyRepository] = None,
        transport: Optional[BaseTransport] = None,
        store: Optional[IdempotencyStore] = None,
        contacts: Optional[ContactLookup] = None,
        segments: Optional[SegmentMembership] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "JourneyEngine":
        """Build an engine, filling unspecified collaborators from ``config``."""
        config = config or load_config()
        return cls(
            config,
            repository or get_repository(config=config),
            transport or get_transport(config=config),
            store or get_idempotency_store(config),
            contacts=contacts,
            segments=segments,
            logger=logger,
        )
