"""Domain entities for journeys and their executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class JourneyStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class StepType(str, Enum):
    ACTION = "action"
    DELAY = "delay"
    CONDITION = "condition"
    SPLIT = "split"
    TRIGGER = "trigger"
    EXIT = "exit"


class TriggerType(str, Enum):
    SCORE_THRESHOLD = "score_threshold"
    INTENT_SIGNAL = "intent_signal"
    SEGMENT = "segment"


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class StepExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ReEntryRule(BaseModel):
    """Whether a contact may enter a journey again after a previous run."""

    type: str = "always"  # always | once | cooldown
    cooldown_days: int = 0


class FrequencyCap(BaseModel):
    max_count: int
    window_days: int


class JourneySettings(BaseModel):
    re_entry: ReEntryRule = Field(default_factory=ReEntryRule)
    frequency_cap: Optional[FrequencyCap] = None


class Journey(BaseModel):
    """Named workflow definition container."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    description: Optional[str] = None
    status: JourneyStatus = JourneyStatus.DRAFT
    created_by: str
    settings: JourneySettings = Field(default_factory=JourneySettings)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def publish(self, has_triggers: bool, has_steps: bool) -> None:
        """Make the journey executable.

        Republishing an active or paused journey keeps its status; only the
        executable version changes.
        """
        if self.status == JourneyStatus.ARCHIVED:
            raise InvalidTransition("Cannot publish an archived journey")
        if not has_triggers:
            raise InvalidTransition("Cannot publish journey without triggers")
        if not has_steps:
            raise InvalidTransition("Cannot publish journey without steps")
        if self.status == JourneyStatus.DRAFT:
            self.status = JourneyStatus.ACTIVE
        self.updated_at = utcnow()

    def pause(self) -> None:
        if self.status != JourneyStatus.ACTIVE:
            raise InvalidTransition(
                f'Cannot pause journey from status "{self.status.value}"; must be "active"'
            )
        self.status = JourneyStatus.PAUSED
        self.updated_at = utcnow()

    def resume(self) -> None:
        if self.status != JourneyStatus.PAUSED:
            raise InvalidTransition(
                f'Cannot resume journey from status "{self.status.value}"; must be "paused"'
            )
        self.status = JourneyStatus.ACTIVE
        self.updated_at = utcnow()

    def archive(self) -> None:
        if self.status not in (JourneyStatus.ACTIVE, JourneyStatus.PAUSED):
            raise InvalidTransition(
                f'Cannot archive journey from status "{self.status.value}"'
            )
        self.status = JourneyStatus.ARCHIVED
        self.updated_at = utcnow()


class JourneyVersion(BaseModel):
    """Immutable snapshot of a step graph, pinned by in-flight executions."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    journey_id: str
    organization_id: str
    version_number: int
    published_at: datetime = Field(default_factory=utcnow)


class JourneyStep(BaseModel):
    """One node of a version's graph."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    version_id: str
    organization_id: str
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    key: Optional[str] = None
    position_x: int = 0
    position_y: int = 0


class StepConnection(BaseModel):
    model_config = {"frozen": True}

    from_step_id: str
    to_step_id: str
    label: Optional[str] = None


class JourneyTrigger(BaseModel):
    id: str = Field(default_factory=new_id)
    journey_id: str
    organization_id: str
    type: TriggerType
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class JourneyExecution(BaseModel):
    """One contact's run through one journey version."""

    id: str = Field(default_factory=new_id)
    journey_id: str
    version_id: str
    organization_id: str
    contact_id: str
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    current_step_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ExecutionStatus.ACTIVE

    def move_to_step(self, step_id: str) -> None:
        if not self.is_active:
            raise InvalidTransition(
                f'Cannot move to step when execution status is "{self.status.value}"'
            )
        self.current_step_id = step_id

    def complete(self) -> None:
        if not self.is_active:
            raise InvalidTransition(
                f'Cannot complete execution from status "{self.status.value}"'
            )
        self.status = ExecutionStatus.COMPLETED
        self.completed_at = utcnow()

    def cancel(self) -> bool:
        """Cancel the execution; returns ``False`` when already terminal."""
        if not self.is_active:
            return False
        self.status = ExecutionStatus.CANCELED
        self.completed_at = utcnow()
        return True


class StepExecution(BaseModel):
    """Durable record of one step run within an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    organization_id: str
    status: StepExecutionStatus = StepExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def complete(self, result: Dict[str, Any]) -> None:
        if self.status != StepExecutionStatus.RUNNING:
            raise InvalidTransition(
                f'Cannot complete step execution from status "{self.status.value}"'
            )
        self.status = StepExecutionStatus.COMPLETED
        self.result = result
        self.completed_at = utcnow()

    def fail(self, error: str) -> None:
        if self.status != StepExecutionStatus.RUNNING:
            raise InvalidTransition(
                f'Cannot fail step execution from status "{self.status.value}"'
            )
        self.status = StepExecutionStatus.FAILED
        self.error = error
        self.completed_at = utcnow()


class ExecutionLog(BaseModel):
    """Append-only operator trace entry."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    organization_id: str
    level: LogLevel
    message: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class StepDefinition(BaseModel):
    """Step as authored; ``key`` is local to the definition document."""

    key: str
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    position_x: int = 0
    position_y: int = 0


class ConnectionDefinition(BaseModel):
    from_key: str
    to_key: str
    label: Optional[str] = None


class JourneyDefinition(BaseModel):
    """Editable graph that becomes a ``JourneyVersion`` on publish."""

    steps: List[StepDefinition] = Field(default_factory=list)
    connections: List[ConnectionDefinition] = Field(default_factory=list)
