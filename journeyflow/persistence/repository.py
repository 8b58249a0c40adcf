"""Repository abstraction for journey state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

from ..models import (
    ExecutionLog,
    ExecutionStatus,
    Journey,
    JourneyExecution,
    JourneyStep,
    JourneyTrigger,
    JourneyVersion,
    LogLevel,
    StepConnection,
    StepExecution,
    TriggerType,
)

TriggerWithJourney = Tuple[JourneyTrigger, Journey]


class JourneyRepository(Protocol):
    """Protocol for journey state persistence backends."""

    # Journeys and published versions
    async def save_journey(self, journey: Journey) -> None:
        """Insert or update a journey."""

    async def find_journey(
        self, organization_id: str, journey_id: str
    ) -> Journey | None:
        """Retrieve a journey within an organization."""

    async def save_version(
        self,
        version: JourneyVersion,
        steps: Sequence[JourneyStep],
        connections: Sequence[StepConnection],
    ) -> None:
        """Persist a version together with its graph, atomically."""

    async def find_latest_version(
        self, organization_id: str, journey_id: str
    ) -> JourneyVersion | None:
        """Return the highest-numbered version of a journey."""

    async def find_version(
        self, organization_id: str, version_id: str
    ) -> JourneyVersion | None:
        """Retrieve a version by id."""

    async def list_version_steps(self, version_id: str) -> list[JourneyStep]:
        """Steps of a version in authored order."""

    async def list_version_connections(self, version_id: str) -> list[StepConnection]:
        """Connections of a version in authored order."""

    async def find_step_by_id(
        self, step_id: str, organization_id: str
    ) -> JourneyStep | None:
        """Retrieve a step by id."""

    async def find_connections_from(self, step_id: str) -> list[StepConnection]:
        """Outgoing connections of a step in authored order."""

    # Triggers
    async def save_trigger(self, trigger: JourneyTrigger) -> None:
        """Insert or update a trigger."""

    async def find_triggers_by_journey(
        self, organization_id: str, journey_id: str
    ) -> list[JourneyTrigger]:
        """All triggers of a journey, enabled or not."""

    async def find_triggers_by_type(
        self, organization_id: str, trigger_type: TriggerType
    ) -> list[TriggerWithJourney]:
        """Enabled triggers of ``trigger_type`` on active journeys of the org."""

    async def find_active_journeys_with_segment_triggers(
        self,
    ) -> list[TriggerWithJourney]:
        """Enabled segment triggers on active journeys of every org."""

    # Executions
    async def create_execution(self, execution: JourneyExecution) -> None:
        """Insert a new execution.

        Raises:
            ExecutionAlreadyActive: The contact already has an active
                execution of the same journey.
        """

    async def save_execution(self, execution: JourneyExecution) -> None:
        """Persist status, completion time and current step."""

    async def find_execution_by_id(
        self, execution_id: str, organization_id: str
    ) -> JourneyExecution | None:
        """Retrieve an execution by id."""

    async def find_active_execution(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> JourneyExecution | None:
        """Return the contact's active execution of a journey, if any."""

    async def list_contact_executions(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> list[JourneyExecution]:
        """Every execution of a journey for a contact."""

    async def find_stale_executions(self, older_than: datetime) -> list[JourneyExecution]:
        """Active executions started before ``older_than``."""

    async def list_executions(
        self,
        organization_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[JourneyExecution]:
        """Executions filtered by org and status."""

    # Step executions
    async def create_step_execution(self, step_execution: StepExecution) -> None:
        """Insert a step execution."""

    async def update_step_execution(self, step_execution: StepExecution) -> None:
        """Persist status, completion time, result and error."""

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        """Step executions of an execution in start order."""

    async def find_completed_step_execution(
        self, execution_id: str, step_id: str
    ) -> StepExecution | None:
        """Return a completed run of ``step_id`` within the execution, if any."""

    # Logs
    async def log_execution(
        self,
        execution_id: str,
        organization_id: str,
        level: LogLevel,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an operator trace entry."""

    async def list_execution_logs(self, execution_id: str) -> list[ExecutionLog]:
        """Trace entries of an execution in write order."""

