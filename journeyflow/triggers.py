"""Event-driven trigger evaluation that enrolls contacts into journeys."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from .constants import DEFAULT_MIN_SCORE
from .dispatch import JourneyDispatcher
from .errors import ExecutionAlreadyActive
from .models import Journey, JourneyTrigger, TriggerType
from .persistence import JourneyRepository

EVENT_TRIGGER_TYPES = {
    "LeadScored": TriggerType.SCORE_THRESHOLD,
    "IntentSignalDetected": TriggerType.INTENT_SIGNAL,
}


class SegmentMembership(Protocol):
    """Output of the segmentation domain, consumed as a member list."""

    async def list_members(self, organization_id: str, segment_id: str) -> Sequence[str]:
        ...


class TriggerDecision(BaseModel):
    """Outcome of evaluating one trigger for one contact."""

    trigger_id: str
    journey_id: str
    contact_id: Optional[str] = None
    fired: bool = False
    execution_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


def score_threshold_fires(score: float, config: Dict[str, Any]) -> bool:
    """Only upward crossings fire; ``direction: down`` never does."""
    direction = config.get("direction") or "up"
    min_score = config.get("minScore")
    if min_score is None:
        min_score = DEFAULT_MIN_SCORE
    return direction == "up" and score >= float(min_score)


def intent_signal_fires(signal_type: Optional[str], config: Dict[str, Any]) -> bool:
    target = config.get("signalType")
    return not target or target == signal_type


class TriggerEvaluator:
    """Decide which triggers fire and enroll the matching contacts.

    Each trigger is evaluated in isolation: an error is logged and recorded
    on its decision while the remaining triggers are still evaluated.
    """

    def __init__(
        self,
        repository: JourneyRepository,
        dispatcher: JourneyDispatcher,
        segments: Optional[SegmentMembership] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._segments = segments
        self._logger = logger or logging.getLogger(__name__)

    async def evaluate_score_triggers(
        self,
        organization_id: str,
        contact_id: str,
        score: float,
        event_type: str = "LeadScored",
        signal_type: Optional[str] = None,
    ) -> List[TriggerDecision]:
        trigger_type = EVENT_TRIGGER_TYPES.get(event_type)
        if trigger_type is None:
            raise ValueError(f"Unsupported score event type: {event_type}")
        pairs = await self._repository.find_triggers_by_type(organization_id, trigger_type)

        decisions: List[TriggerDecision] = []
        for trigger, journey in pairs:
            decision = TriggerDecision(
                trigger_id=trigger.id, journey_id=journey.id, contact_id=contact_id
            )
            try:
                if trigger_type == TriggerType.SCORE_THRESHOLD:
                    fires = score_threshold_fires(score, trigger.config)
                    if not fires:
                        decision.reason = "below threshold"
                else:
                    fires = intent_signal_fires(signal_type, trigger.config)
                    if not fires:
                        decision.reason = "signal type mismatch"
                if fires:
                    self._logger.info(
                        f"{trigger_type.value} trigger fired for contact {contact_id}",
                        extra={
                            "journey_id": journey.id,
                            "contact_id": contact_id,
                            "score": score,
                            "signal_type": signal_type,
                        },
                    )
                    await self._enroll(journey, contact_id, decision)
            except Exception as exc:
                self._record_error(trigger, decision, exc)
            decisions.append(decision)
        return decisions

    async def evaluate_segment_event(
        self,
        organization_id: str,
        contact_id: str,
        segment_id: str,
        action: str = "entered",
    ) -> List[TriggerDecision]:
        """Enroll a contact that just entered ``segment_id``; exits never enroll."""
        if action != "entered":
            return []
        pairs = await self._repository.find_triggers_by_type(
            organization_id, TriggerType.SEGMENT
        )
        decisions: List[TriggerDecision] = []
        for trigger, journey in pairs:
            if str(trigger.config.get("segmentId")) != str(segment_id):
                continue
            decision = TriggerDecision(
                trigger_id=trigger.id, journey_id=journey.id, contact_id=contact_id
            )
            try:
                await self._enroll(journey, contact_id, decision)
            except Exception as exc:
                self._record_error(trigger, decision, exc)
            decisions.append(decision)
        return decisions

    async def evaluate_segment_triggers(self) -> List[TriggerDecision]:
        """Sweep every enabled segment trigger on active journeys."""
        pairs = await self._repository.find_active_journeys_with_segment_triggers()
        decisions: List[TriggerDecision] = []
        for trigger, journey in pairs:
            segment_id = trigger.config.get("segmentId")
            if self._segments is None or segment_id is None:
                self._logger.info(
                    f"Segment trigger {trigger.id} has no membership source",
                    extra={"journey_id": journey.id, "segment_id": segment_id},
                )
                decisions.append(
                    TriggerDecision(
                        trigger_id=trigger.id,
                        journey_id=journey.id,
                        reason="no membership source",
                    )
                )
                continue
            try:
                members = await self._segments.list_members(
                    trigger.organization_id, str(segment_id)
                )
            except Exception as exc:
                decision = TriggerDecision(trigger_id=trigger.id, journey_id=journey.id)
                self._record_error(trigger, decision, exc)
                decisions.append(decision)
                continue
            for contact_id in members:
                decision = TriggerDecision(
                    trigger_id=trigger.id, journey_id=journey.id, contact_id=contact_id
                )
                try:
                    await self._enroll(journey, contact_id, decision)
                except Exception as exc:
                    self._record_error(trigger, decision, exc)
                decisions.append(decision)
        return decisions

    # ------------------------------------------------------------------
    async def _enroll(
        self, journey: Journey, contact_id: str, decision: TriggerDecision
    ) -> None:
        existing = await self._repository.find_active_execution(
            journey.organization_id, journey.id, contact_id
        )
        if existing is not None:
            self._logger.info(
                f"Contact {contact_id} already active in journey {journey.id}, skipping trigger",
                extra={
                    "journey_id": journey.id,
                    "contact_id": contact_id,
                    "execution_id": existing.id,
                },
            )
            decision.reason = "already active"
            return
        try:
            execution = await self._dispatcher.start_execution(
                journey.organization_id, journey.id, contact_id
            )
        except ExecutionAlreadyActive:
            decision.reason = "already active"
            return
        if execution is None:
            decision.reason = "entry guard"
            return
        decision.fired = True
        decision.execution_id = execution.id

    def _record_error(
        self, trigger: JourneyTrigger, decision: TriggerDecision, exc: Exception
    ) -> None:
        self._logger.exception(
            f"Trigger {trigger.id} evaluation failed",
            extra={"journey_id": trigger.journey_id, "trigger_id": trigger.id},
        )
        decision.error = str(exc) or exc.__class__.__name__
