"""Domain events announced on the events topic."""

from __future__ import annotations

from typing import Any

from .contracts import JourneyEvent, JourneyMessage
from .models import JourneyExecution
from .transports import BaseTransport

EXECUTION_STARTED = "journey.ExecutionStarted"
EXECUTION_COMPLETED = "journey.ExecutionCompleted"
EXECUTION_CANCELED = "journey.ExecutionCanceled"


async def publish_execution_event(
    transport: BaseTransport,
    topic: str,
    event_type: str,
    execution: JourneyExecution,
    **data: Any,
) -> JourneyEvent:
    event = JourneyEvent(
        type=event_type,
        organization_id=execution.organization_id,
        journey_id=execution.journey_id,
        execution_id=execution.id,
        contact_id=execution.contact_id,
        data=data,
    )
    await transport.publish(topic, JourneyMessage.wrap(event_type, event))
    return event
