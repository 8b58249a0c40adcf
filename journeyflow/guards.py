"""Entry guards deciding whether a contact may (re-)enter a journey."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence

from pydantic import BaseModel

from .models import FrequencyCap, JourneyExecution, JourneySettings, ReEntryRule, utcnow


class EntryDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None


ALLOWED = EntryDecision(allowed=True)


def _check_re_entry(
    rule: ReEntryRule, executions: Sequence[JourneyExecution], now: datetime
) -> EntryDecision:
    if rule.type == "always":
        return ALLOWED

    past = [e for e in executions if not e.is_active]
    if rule.type == "once":
        if past:
            return EntryDecision(allowed=False, reason="Re-entry not allowed (once only)")
        return ALLOWED

    if rule.type == "cooldown":
        if not past:
            return ALLOWED
        most_recent = max(e.completed_at or e.started_at for e in past)
        if now - most_recent < timedelta(days=rule.cooldown_days):
            return EntryDecision(
                allowed=False,
                reason=f"Re-entry blocked by {rule.cooldown_days}-day cooldown",
            )
    return ALLOWED


def _check_frequency_cap(
    cap: FrequencyCap, executions: Sequence[JourneyExecution], now: datetime
) -> EntryDecision:
    window_start = now - timedelta(days=cap.window_days)
    in_window = sum(1 for e in executions if e.started_at >= window_start)
    if in_window >= cap.max_count:
        return EntryDecision(
            allowed=False,
            reason=f"Frequency cap reached ({cap.max_count} per {cap.window_days} days)",
        )
    return ALLOWED


def evaluate_entry_guards(
    settings: JourneySettings,
    executions: Sequence[JourneyExecution],
    now: Optional[datetime] = None,
) -> EntryDecision:
    """Decide entry from the journey settings and the contact's history.

    A contact with an active execution is never let in again.
    """
    now = now or utcnow()
    if any(e.is_active for e in executions):
        return EntryDecision(allowed=False, reason="Contact already has an active execution")

    decision = _check_re_entry(settings.re_entry, executions, now)
    if not decision.allowed:
        return decision
    if settings.frequency_cap is not None:
        return _check_frequency_cap(settings.frequency_cap, executions, now)
    return ALLOWED
