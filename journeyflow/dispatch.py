"""Enrollment of contacts into published journeys."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from .config import QueueConfig
from .contracts import EXECUTE_STEP, JourneyMessage, StepJob
from .errors import InvalidTransition, JourneyNotFound, NoPublishedVersion
from .events import EXECUTION_STARTED, publish_execution_event
from .guards import evaluate_entry_guards
from .models import (
    JourneyExecution,
    JourneyStatus,
    JourneyStep,
    LogLevel,
    StepConnection,
    StepType,
)
from .persistence import JourneyRepository
from .transports import BaseTransport


def entry_step(
    steps: Sequence[JourneyStep], connections: Sequence[StepConnection]
) -> Optional[JourneyStep]:
    """Pick where a new execution starts.

    The first ``trigger`` step wins; otherwise the first step nothing points
    at; otherwise the first step.
    """
    if not steps:
        return None
    for step in steps:
        if step.type == StepType.TRIGGER:
            return step
    targets = {c.to_step_id for c in connections}
    for step in steps:
        if step.id not in targets:
            return step
    return steps[0]


class JourneyDispatcher:
    """Service responsible for starting journey executions."""

    def __init__(
        self,
        repository: JourneyRepository,
        transport: BaseTransport,
        queues: Optional[QueueConfig] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._queues = queues or QueueConfig()
        self._logger = logger or logging.getLogger(__name__)

    async def start_execution(
        self,
        organization_id: str,
        journey_id: str,
        contact_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[JourneyExecution]:
        """Enroll ``contact_id`` into the latest published version.

        Returns ``None`` when the entry guards turn the contact away.

        Raises:
            JourneyNotFound: Unknown journey.
            InvalidTransition: The journey is not active.
            NoPublishedVersion: The journey has no version or no steps.
            ExecutionAlreadyActive: A concurrent enrollment won the race.
        """
        fields = {"journey_id": journey_id, "contact_id": contact_id}
        journey = await self._repository.find_journey(organization_id, journey_id)
        if journey is None:
            raise JourneyNotFound(f"Journey {journey_id} not found")
        if journey.status != JourneyStatus.ACTIVE:
            raise InvalidTransition(
                f'Cannot start execution of journey in status "{journey.status.value}"'
            )
        version = await self._repository.find_latest_version(organization_id, journey_id)
        if version is None:
            raise NoPublishedVersion(f"Journey {journey_id} has no published version")

        history = await self._repository.list_contact_executions(
            organization_id, journey_id, contact_id
        )
        decision = evaluate_entry_guards(journey.settings, history, now)
        if not decision.allowed:
            self._logger.info(
                f"Contact {contact_id} not enrolled: {decision.reason}", extra=fields
            )
            return None

        steps = await self._repository.list_version_steps(version.id)
        connections = await self._repository.list_version_connections(version.id)
        first = entry_step(steps, connections)
        if first is None:
            raise NoPublishedVersion(f"Version {version.id} has no steps")

        execution = JourneyExecution(
            journey_id=journey_id,
            version_id=version.id,
            organization_id=organization_id,
            contact_id=contact_id,
            current_step_id=first.id,
        )
        await self._repository.create_execution(execution)
        await self._repository.log_execution(
            execution.id,
            organization_id,
            LogLevel.INFO,
            "Journey execution started",
            {"versionId": version.id, "entryStepId": first.id},
        )

        job = StepJob(
            execution_id=execution.id,
            step_id=first.id,
            journey_id=journey_id,
            contact_id=contact_id,
            organization_id=organization_id,
            version_id=version.id,
        )
        await self._transport.publish(
            self._queues.execute_step, JourneyMessage.wrap(EXECUTE_STEP, job)
        )
        await publish_execution_event(
            self._transport,
            self._queues.events,
            EXECUTION_STARTED,
            execution,
            versionId=version.id,
        )
        self._logger.info(
            f"Started execution {execution.id}",
            extra={**fields, "execution_id": execution.id},
        )
        return execution
