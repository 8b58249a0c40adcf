"""Journey lifecycle: authoring, publishing and operator actions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import QueueConfig
from .errors import ExecutionNotActive, JourneyNotFound
from .events import EXECUTION_CANCELED, publish_execution_event
from .models import (
    Journey,
    JourneyDefinition,
    JourneySettings,
    JourneyStep,
    JourneyTrigger,
    JourneyVersion,
    LogLevel,
    StepConnection,
    TriggerType,
)
from .persistence import JourneyRepository
from .transports import BaseTransport


class JourneyService:
    """Operations an operator performs on journeys and executions."""

    def __init__(
        self,
        repository: JourneyRepository,
        transport: Optional[BaseTransport] = None,
        queues: Optional[QueueConfig] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._queues = queues or QueueConfig()
        self._logger = logger or logging.getLogger(__name__)

    async def get_journey(self, organization_id: str, journey_id: str) -> Journey:
        journey = await self._repository.find_journey(organization_id, journey_id)
        if journey is None:
            raise JourneyNotFound(f"Journey {journey_id} not found")
        return journey

    async def create_journey(
        self,
        organization_id: str,
        name: str,
        created_by: str,
        description: Optional[str] = None,
        settings: Optional[JourneySettings] = None,
    ) -> Journey:
        journey = Journey(
            organization_id=organization_id,
            name=name,
            created_by=created_by,
            description=description,
            settings=settings or JourneySettings(),
        )
        await self._repository.save_journey(journey)
        self._logger.info(f"Created journey {journey.id} ({name})")
        return journey

    async def add_trigger(
        self,
        organization_id: str,
        journey_id: str,
        trigger_type: TriggerType,
        config: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
    ) -> JourneyTrigger:
        await self.get_journey(organization_id, journey_id)
        trigger = JourneyTrigger(
            journey_id=journey_id,
            organization_id=organization_id,
            type=trigger_type,
            config=config or {},
            enabled=enabled,
        )
        await self._repository.save_trigger(trigger)
        return trigger

    async def publish(
        self, organization_id: str, journey_id: str, definition: JourneyDefinition
    ) -> JourneyVersion:
        """Snapshot ``definition`` as the next immutable version.

        Executions already running stay on the version they started with.
        """
        journey = await self.get_journey(organization_id, journey_id)
        triggers = await self._repository.find_triggers_by_journey(
            organization_id, journey_id
        )
        journey.publish(has_triggers=bool(triggers), has_steps=bool(definition.steps))

        latest = await self._repository.find_latest_version(organization_id, journey_id)
        version = JourneyVersion(
            journey_id=journey_id,
            organization_id=organization_id,
            version_number=latest.version_number + 1 if latest else 1,
        )

        ids: Dict[str, str] = {}
        steps = []
        for definition_step in definition.steps:
            if definition_step.key in ids:
                raise ValueError(f"Duplicate step key {definition_step.key!r}")
            step = JourneyStep(
                version_id=version.id,
                organization_id=organization_id,
                type=definition_step.type,
                config=definition_step.config,
                key=definition_step.key,
                position_x=definition_step.position_x,
                position_y=definition_step.position_y,
            )
            ids[definition_step.key] = step.id
            steps.append(step)

        connections = []
        for conn in definition.connections:
            if conn.from_key not in ids or conn.to_key not in ids:
                raise ValueError(
                    f"Connection {conn.from_key!r} -> {conn.to_key!r} references an unknown step"
                )
            connections.append(
                StepConnection(
                    from_step_id=ids[conn.from_key],
                    to_step_id=ids[conn.to_key],
                    label=conn.label,
                )
            )

        await self._repository.save_version(version, steps, connections)
        await self._repository.save_journey(journey)
        self._logger.info(
            f"Published journey {journey_id} version {version.version_number}",
            extra={"journey_id": journey_id, "version_id": version.id},
        )
        return version

    async def pause(self, organization_id: str, journey_id: str) -> Journey:
        journey = await self.get_journey(organization_id, journey_id)
        journey.pause()
        await self._repository.save_journey(journey)
        return journey

    async def resume(self, organization_id: str, journey_id: str) -> Journey:
        journey = await self.get_journey(organization_id, journey_id)
        journey.resume()
        await self._repository.save_journey(journey)
        return journey

    async def archive(self, organization_id: str, journey_id: str) -> Journey:
        journey = await self.get_journey(organization_id, journey_id)
        journey.archive()
        await self._repository.save_journey(journey)
        return journey

    async def cancel_execution(
        self, organization_id: str, execution_id: str, reason: str = "manual"
    ) -> bool:
        """Cancel an execution; returns ``False`` when it was already terminal.

        A delayed wake-up still in flight is dropped when it arrives.
        """
        execution = await self._repository.find_execution_by_id(
            execution_id, organization_id
        )
        if execution is None:
            raise ExecutionNotActive(f"Execution {execution_id} not found")
        if not execution.cancel():
            return False
        await self._repository.save_execution(execution)
        await self._repository.log_execution(
            execution.id,
            organization_id,
            LogLevel.WARN,
            f"Execution canceled ({reason})",
        )
        if self._transport is not None:
            await publish_execution_event(
                self._transport,
                self._queues.events,
                EXECUTION_CANCELED,
                execution,
                reason=reason,
            )
        self._logger.info(
            f"Canceled execution {execution_id}", extra={"execution_id": execution_id}
        )
        return True
