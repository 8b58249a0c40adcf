"""In-memory implementation of the journey repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ExecutionAlreadyActive
from ..models import (
    ExecutionLog,
    ExecutionStatus,
    Journey,
    JourneyExecution,
    JourneyStatus,
    JourneyStep,
    JourneyTrigger,
    JourneyVersion,
    LogLevel,
    StepConnection,
    StepExecution,
    StepExecutionStatus,
    TriggerType,
)
from .repository import JourneyRepository, TriggerWithJourney


class InMemoryJourneyRepository(JourneyRepository):
    """Store journey state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Entities are copied on the way in and
    out so callers must save explicitly, as with a real database.
    """

    def __init__(self) -> None:
        self._journeys: Dict[str, Journey] = {}
        self._versions: Dict[str, JourneyVersion] = {}
        self._steps: Dict[str, JourneyStep] = {}
        self._version_steps: Dict[str, List[str]] = defaultdict(list)
        self._connections: Dict[str, List[StepConnection]] = defaultdict(list)
        self._triggers: Dict[str, JourneyTrigger] = {}
        self._executions: Dict[str, JourneyExecution] = {}
        self._step_executions: Dict[str, StepExecution] = {}
        self._logs: Dict[str, List[ExecutionLog]] = defaultdict(list)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_journey(self, journey: Journey) -> None:
        self._journeys[journey.id] = journey.model_copy(deep=True)

    async def find_journey(
        self, organization_id: str, journey_id: str
    ) -> Journey | None:
        journey = self._journeys.get(journey_id)
        if journey is None or journey.organization_id != organization_id:
            return None
        return journey.model_copy(deep=True)

    async def save_version(
        self,
        version: JourneyVersion,
        steps: Sequence[JourneyStep],
        connections: Sequence[StepConnection],
    ) -> None:
        self._versions[version.id] = version
        for step in steps:
            self._steps[step.id] = step
            self._version_steps[version.id].append(step.id)
        self._connections[version.id].extend(connections)

    async def find_latest_version(
        self, organization_id: str, journey_id: str
    ) -> JourneyVersion | None:
        versions = [
            v
            for v in self._versions.values()
            if v.journey_id == journey_id and v.organization_id == organization_id
        ]
        return max(versions, key=lambda v: v.version_number, default=None)

    async def find_version(
        self, organization_id: str, version_id: str
    ) -> JourneyVersion | None:
        version = self._versions.get(version_id)
        if version is None or version.organization_id != organization_id:
            return None
        return version

    async def list_version_steps(self, version_id: str) -> list[JourneyStep]:
        return [self._steps[step_id] for step_id in self._version_steps.get(version_id, [])]

    async def list_version_connections(self, version_id: str) -> list[StepConnection]:
        return list(self._connections.get(version_id, []))

    async def find_step_by_id(
        self, step_id: str, organization_id: str
    ) -> JourneyStep | None:
        step = self._steps.get(step_id)
        if step is None or step.organization_id != organization_id:
            return None
        return step

    async def find_connections_from(self, step_id: str) -> list[StepConnection]:
        step = self._steps.get(step_id)
        if step is None:
            return []
        return [c for c in self._connections[step.version_id] if c.from_step_id == step_id]

    # ------------------------------------------------------------------
    async def save_trigger(self, trigger: JourneyTrigger) -> None:
        self._triggers[trigger.id] = trigger.model_copy(deep=True)

    async def find_triggers_by_journey(
        self, organization_id: str, journey_id: str
    ) -> list[JourneyTrigger]:
        return [
            t.model_copy(deep=True)
            for t in self._triggers.values()
            if t.journey_id == journey_id and t.organization_id == organization_id
        ]

    def _enabled_triggers(
        self, trigger_type: TriggerType, organization_id: Optional[str] = None
    ) -> list[TriggerWithJourney]:
        matches: list[TriggerWithJourney] = []
        for trigger in self._triggers.values():
            if not trigger.enabled or trigger.type != trigger_type:
                continue
            if organization_id is not None and trigger.organization_id != organization_id:
                continue
            journey = self._journeys.get(trigger.journey_id)
            if journey is None or journey.status != JourneyStatus.ACTIVE:
                continue
            matches.append((trigger.model_copy(deep=True), journey.model_copy(deep=True)))
        return matches

    async def find_triggers_by_type(
        self, organization_id: str, trigger_type: TriggerType
    ) -> list[TriggerWithJourney]:
        return self._enabled_triggers(trigger_type, organization_id)

    async def find_active_journeys_with_segment_triggers(
        self,
    ) -> list[TriggerWithJourney]:
        return self._enabled_triggers(TriggerType.SEGMENT)

    # ------------------------------------------------------------------
    async def create_execution(self, execution: JourneyExecution) -> None:
        async with self._lock:
            if execution.is_active and await self.find_active_execution(
                execution.organization_id, execution.journey_id, execution.contact_id
            ):
                raise ExecutionAlreadyActive(
                    f"Contact {execution.contact_id} already active in journey {execution.journey_id}"
                )
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def save_execution(self, execution: JourneyExecution) -> None:
        stored = self._executions.get(execution.id)
        if stored is None:
            return
        stored.status = execution.status
        stored.completed_at = execution.completed_at
        stored.current_step_id = execution.current_step_id

    async def find_execution_by_id(
        self, execution_id: str, organization_id: str
    ) -> JourneyExecution | None:
        execution = self._executions.get(execution_id)
        if execution is None or execution.organization_id != organization_id:
            return None
        return execution.model_copy(deep=True)

    async def find_active_execution(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> JourneyExecution | None:
        for execution in self._executions.values():
            if (
                execution.is_active
                and execution.organization_id == organization_id
                and execution.journey_id == journey_id
                and execution.contact_id == contact_id
            ):
                return execution.model_copy(deep=True)
        return None

    async def list_contact_executions(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> list[JourneyExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.organization_id == organization_id
            and e.journey_id == journey_id
            and e.contact_id == contact_id
        ]

    async def find_stale_executions(self, older_than: datetime) -> list[JourneyExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.is_active and e.started_at < older_than
        ]

    async def list_executions(
        self,
        organization_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[JourneyExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (organization_id is None or e.organization_id == organization_id)
            and (status is None or e.status == status)
        ]

    # ------------------------------------------------------------------
    async def create_step_execution(self, step_execution: StepExecution) -> None:
        self._step_executions[step_execution.id] = step_execution.model_copy(deep=True)

    async def update_step_execution(self, step_execution: StepExecution) -> None:
        if step_execution.id in self._step_executions:
            self._step_executions[step_execution.id] = step_execution.model_copy(deep=True)

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        return [
            s.model_copy(deep=True)
            for s in self._step_executions.values()
            if s.execution_id == execution_id
        ]

    async def find_completed_step_execution(
        self, execution_id: str, step_id: str
    ) -> StepExecution | None:
        for s in self._step_executions.values():
            if (
                s.execution_id == execution_id
                and s.step_id == step_id
                and s.status == StepExecutionStatus.COMPLETED
            ):
                return s.model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    async def log_execution(
        self,
        execution_id: str,
        organization_id: str,
        level: LogLevel,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._logs[execution_id].append(
            ExecutionLog(
                execution_id=execution_id,
                organization_id=organization_id,
                level=level,
                message=message,
                metadata=metadata,
            )
        )

    async def list_execution_logs(self, execution_id: str) -> list[ExecutionLog]:
        return list(self._logs.get(execution_id, []))
