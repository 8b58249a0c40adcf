"""Message contracts exchanged over the journey queues."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field

PayloadT = TypeVar("PayloadT", bound=BaseModel)

EXECUTE_STEP = "execute-step"
DELAYED_WAKE = "delayed-wake"
SCORE_TRIGGER_EVAL = "score-trigger-eval"
SEGMENT_TRIGGER_EVAL = "segment-trigger-eval"
STALE_CLEANUP = "stale-execution-cleanup"


class StepJob(BaseModel):
    """Unit of work: advance ``execution_id`` to ``step_id``.

    The same shape serves "execute step" and "delayed wake" messages.
    """

    execution_id: str
    step_id: str
    journey_id: str
    contact_id: str
    organization_id: str
    version_id: str

    def for_step(self, step_id: str) -> "StepJob":
        return self.model_copy(update={"step_id": step_id})


class SendRequest(BaseModel):
    """Request handed to the delivery pipeline."""

    organization_id: str
    contact_id: str
    template_id: Any = 0
    journey_execution_id: str
    step_id: str
    channel: str
    idempotency_key: str


class ScoreTriggerJob(BaseModel):
    organization_id: str
    contact_id: str
    score: float
    event_type: Literal["LeadScored", "IntentSignalDetected"] = "LeadScored"
    signal_type: Optional[str] = None


class SegmentTriggerJob(BaseModel):
    """Segment membership change; an empty job requests a full sweep."""

    organization_id: Optional[str] = None
    contact_id: Optional[str] = None
    segment_id: Optional[str] = None
    action: Literal["entered", "exited"] = "entered"


class JourneyEvent(BaseModel):
    type: str
    organization_id: str
    journey_id: str
    execution_id: str
    contact_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class JourneyMessage(BaseModel):
    """Envelope exchanged over the bus.

    ``delay_ms`` asks the transport to hold the message before delivery.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = 1
    delay_ms: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def wrap(cls, kind: str, payload: BaseModel, delay_ms: int = 0) -> "JourneyMessage":
        return cls(kind=kind, payload=payload.model_dump(mode="json"), delay_ms=delay_ms)

    def unwrap(self, model: Type[PayloadT]) -> PayloadT:
        return model.model_validate(self.payload)

    def bump_attempt(self, delay_ms: int = 0) -> "JourneyMessage":
        """Copy for redelivery with a new id and incremented attempt."""
        return self.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "attempt": self.attempt + 1,
                "delay_ms": delay_ms,
                "timestamp": datetime.now(timezone.utc),
            }
        )

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JourneyMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
