from datetime import datetime, timedelta, timezone

from journeyflow.guards import evaluate_entry_guards
from journeyflow.models import (
    ExecutionStatus,
    FrequencyCap,
    JourneyExecution,
    JourneySettings,
    ReEntryRule,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _execution(days_ago, status=ExecutionStatus.COMPLETED, finished_days_ago=None):
    started = NOW - timedelta(days=days_ago)
    completed = None
    if status != ExecutionStatus.ACTIVE:
        completed = NOW - timedelta(days=finished_days_ago if finished_days_ago is not None else days_ago)
    return JourneyExecution(
        journey_id="j",
        version_id="v",
        organization_id="org-1",
        contact_id="c",
        status=status,
        started_at=started,
        completed_at=completed,
    )


def test_first_entry_is_allowed():
    assert evaluate_entry_guards(JourneySettings(), [], NOW).allowed


def test_active_execution_blocks_entry_regardless_of_settings():
    decision = evaluate_entry_guards(
        JourneySettings(), [_execution(1, status=ExecutionStatus.ACTIVE)], NOW
    )
    assert not decision.allowed
    assert "active" in decision.reason


def test_always_allows_re_entry():
    assert evaluate_entry_guards(JourneySettings(), [_execution(1)], NOW).allowed


def test_once_blocks_after_a_finished_run():
    settings = JourneySettings(re_entry=ReEntryRule(type="once"))
    assert evaluate_entry_guards(settings, [], NOW).allowed
    assert not evaluate_entry_guards(settings, [_execution(90)], NOW).allowed


def test_cooldown_measures_from_most_recent_finish():
    settings = JourneySettings(re_entry=ReEntryRule(type="cooldown", cooldown_days=30))

    recent = [_execution(60, finished_days_ago=10), _execution(100)]
    assert not evaluate_entry_guards(settings, recent, NOW).allowed

    old = [_execution(60, finished_days_ago=31)]
    assert evaluate_entry_guards(settings, old, NOW).allowed


def test_frequency_cap_counts_runs_started_in_window():
    settings = JourneySettings(frequency_cap=FrequencyCap(max_count=2, window_days=30))

    assert evaluate_entry_guards(settings, [_execution(5), _execution(40)], NOW).allowed
    decision = evaluate_entry_guards(settings, [_execution(5), _execution(20)], NOW)
    assert not decision.allowed
    assert "Frequency cap" in decision.reason
