"""Tests for the step execution coordinator."""

import logging

import pytest

from journeyflow.constants import MIN_DELAY_IDEMPOTENCY_TTL_SECONDS, SECONDS_PER_DAY
from journeyflow.contracts import SendRequest, StepJob
from journeyflow.engine import JourneyEngine
from journeyflow.errors import ExecutionNotActive, StepNotFound
from journeyflow.events import EXECUTION_COMPLETED
from journeyflow.idempotency import step_execution_key
from journeyflow.models import (
    ExecutionStatus,
    LogLevel,
    StepExecutionStatus,
    StepType,
)
from journeyflow.transports.inmemory import InMemoryTransport

ORG = "org-1"
CONTACT = "contact-1"


async def start(engine, journey):
    """Enroll the test contact and pop the entry job off the queue."""
    execution = await engine.dispatcher.start_execution(ORG, journey.id, CONTACT)
    message = await engine.transport.take(engine.config.queues.execute_step)
    return execution, message.unwrap(StepJob)


def queued_steps(engine):
    return [
        m.unwrap(StepJob).step_id
        for m in engine.transport.pending(engine.config.queues.execute_step)
    ]


class FlakyDeliveryTransport(InMemoryTransport):
    """Refuses delivery requests while ``failing`` is set."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.failing = True

    async def publish(self, topic, message):
        if self.failing and topic == "delivery:send":
            raise ConnectionError("delivery pipeline unavailable")
        await super().publish(topic, message)


class StaticContacts:
    def __init__(self, contact):
        self.contact = contact
        self.calls = []

    async def get_contact(self, organization_id, contact_id):
        self.calls.append((organization_id, contact_id))
        return self.contact


@pytest.mark.asyncio
async def test_duplicate_delivery_runs_step_once(engine, publish):
    journey, _, steps = await publish(
        [("a", StepType.ACTION, {"action": "send_email", "templateId": 7})]
    )
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)
    await engine.coordinator.execute_step(job)

    records = await engine.repository.list_step_executions(execution.id)
    assert len(records) == 1
    assert records[0].status == StepExecutionStatus.COMPLETED
    assert records[0].result == {"action": "send_email", "templateId": 7, "enqueued": True}

    sends = engine.transport.pending(engine.config.queues.delivery)
    assert len(sends) == 1
    assert sends[0].kind == "send-email"
    request = sends[0].unwrap(SendRequest)
    assert request.channel == "email"
    assert request.template_id == 7
    assert request.journey_execution_id == execution.id
    assert request.idempotency_key == f"journey:{execution.id}:{steps['a'].id}"


@pytest.mark.asyncio
async def test_idempotent_skip_is_logged_with_structured_fields(engine, publish, caplog):
    journey, _, _ = await publish([("a", StepType.EXIT, {})])
    execution, job = await start(engine, journey)
    await engine.coordinator.execute_step(job)

    with caplog.at_level(logging.INFO, logger="journeyflow.coordinator"):
        await engine.coordinator.execute_step(job)

    skips = [r for r in caplog.records if "idempotent skip" in r.getMessage()]
    assert len(skips) == 1
    assert skips[0].execution_id == execution.id
    assert skips[0].step_id == job.step_id


@pytest.mark.asyncio
async def test_completed_step_record_short_circuits_when_guard_is_lost(
    engine, publish, store
):
    journey, _, steps = await publish(
        [("a", StepType.ACTION, {"action": "send_sms"}), ("b", StepType.EXIT, {})],
        [("a", "b")],
    )
    execution, job = await start(engine, journey)
    await engine.coordinator.execute_step(job)
    store.clear()

    await engine.coordinator.execute_step(job)

    assert len(await engine.repository.list_step_executions(execution.id)) == 1
    assert len(engine.transport.pending(engine.config.queues.delivery)) == 1
    assert queued_steps(engine) == [steps["b"].id]
    assert await engine.guard.seen(step_execution_key(execution.id, steps["a"].id))


@pytest.mark.asyncio
async def test_inactive_execution_is_rejected(engine, publish):
    journey, _, _ = await publish([("a", StepType.EXIT, {})])
    execution, job = await start(engine, journey)
    await engine.journeys.cancel_execution(ORG, execution.id)

    with pytest.raises(ExecutionNotActive):
        await engine.coordinator.execute_step(job)
    assert await engine.repository.list_step_executions(execution.id) == []


@pytest.mark.asyncio
async def test_missing_step_is_rejected(engine, publish):
    journey, _, _ = await publish([("a", StepType.EXIT, {})])
    execution, job = await start(engine, journey)

    with pytest.raises(StepNotFound):
        await engine.coordinator.execute_step(job.for_step("no-such-step"))
    assert await engine.repository.list_step_executions(execution.id) == []


@pytest.mark.asyncio
async def test_action_fans_out_to_every_connection(engine, publish):
    journey, _, steps = await publish(
        [
            ("a", StepType.ACTION, {"action": "send_push"}),
            ("b", StepType.EXIT, {}),
            ("c", StepType.EXIT, {}),
        ],
        [("a", "b"), ("a", "c")],
    )
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    assert sorted(queued_steps(engine)) == sorted([steps["b"].id, steps["c"].id])
    stored = await engine.repository.find_execution_by_id(execution.id, ORG)
    assert stored.status == ExecutionStatus.ACTIVE
    assert stored.current_step_id == steps["a"].id


@pytest.mark.asyncio
async def test_unknown_action_is_recorded_as_placeholder_and_advances(engine, publish):
    journey, _, steps = await publish(
        [("a", StepType.ACTION, {"action": "webhook"}), ("b", StepType.EXIT, {})],
        [("a", "b")],
    )
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    [record] = await engine.repository.list_step_executions(execution.id)
    assert record.result == {"action": "webhook", "placeholder": True}
    assert engine.transport.pending(engine.config.queues.delivery) == []
    assert queued_steps(engine) == [steps["b"].id]


@pytest.mark.asyncio
async def test_action_without_connections_completes_execution(engine, publish):
    journey, _, _ = await publish([("a", StepType.ACTION, {"action": "send_email"})])
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    stored = await engine.repository.find_execution_by_id(execution.id, ORG)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_condition_follows_matching_label(engine, publish):
    journey, _, steps = await publish(
        [
            ("cond", StepType.CONDITION, {"type": "lead_grade", "grades": {"default": "hot"}}),
            ("cold", StepType.EXIT, {}),
            ("hot", StepType.EXIT, {}),
        ],
        [("cond", "cold", "cold"), ("cond", "hot", "hot")],
    )
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    assert queued_steps(engine) == [steps["hot"].id]
    [record] = await engine.repository.list_step_executions(execution.id)
    assert record.result == {"branch": "hot"}


@pytest.mark.asyncio
async def test_condition_without_match_follows_first_connection(engine, publish):
    journey, _, steps = await publish(
        [
            ("cond", StepType.CONDITION, {"type": "score_range"}),
            ("x", StepType.EXIT, {}),
            ("y", StepType.EXIT, {}),
        ],
        [("cond", "x", "high"), ("cond", "y", "low")],
    )
    _, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    assert queued_steps(engine) == [steps["x"].id]


@pytest.mark.asyncio
async def test_condition_without_connections_completes_execution(engine, publish):
    journey, _, _ = await publish([("cond", StepType.CONDITION, {"type": "score_range"})])
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    stored = await engine.repository.find_execution_by_id(execution.id, ORG)
    assert stored.status == ExecutionStatus.COMPLETED
    assert queued_steps(engine) == []


@pytest.mark.asyncio
async def test_weighted_split_takes_the_only_weighted_branch(engine, publish):
    split = {
        "type": "split_random",
        "branches": [{"label": "a", "percentage": 0}, {"label": "b", "percentage": 100}],
    }
    journey, _, steps = await publish(
        [("split", StepType.SPLIT, split), ("a", StepType.EXIT, {}), ("b", StepType.EXIT, {})],
        [("split", "a", "a"), ("split", "b", "b")],
    )
    _, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    assert queued_steps(engine) == [steps["b"].id]


@pytest.mark.asyncio
async def test_split_condition_reads_contact_data(config, repository, transport, store, engine, publish):
    contacts = StaticContacts({"profile": {"country": "NL"}})
    engine_with_contacts = JourneyEngine(config, repository, transport, store, contacts=contacts)
    condition = {
        "type": "split_condition",
        "field": "profile.country",
        "operator": "equals",
        "value": "NL",
    }
    journey, _, steps = await publish(
        [("cond", StepType.CONDITION, condition), ("no", StepType.EXIT, {}), ("yes", StepType.EXIT, {})],
        [("cond", "no", "no"), ("cond", "yes", "yes")],
    )
    _, job = await start(engine, journey)

    await engine_with_contacts.coordinator.execute_step(job)

    assert contacts.calls == [(ORG, CONTACT)]
    assert queued_steps(engine) == [steps["yes"].id]


@pytest.mark.asyncio
async def test_unreadable_score_range_still_follows_a_connection(engine, publish):
    journey, _, steps = await publish(
        [
            ("cond", StepType.CONDITION, {"type": "score_range", "ranges": None}),
            ("next", StepType.EXIT, {}),
        ],
        [("cond", "next", "low")],
    )
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    assert queued_steps(engine) == [steps["next"].id]
    [record] = await engine.repository.list_step_executions(execution.id)
    assert record.status == StepExecutionStatus.COMPLETED
    assert record.result == {"branch": "default"}


@pytest.mark.asyncio
async def test_job_for_another_version_is_rejected(engine, publish):
    journey, _, _ = await publish([("a", StepType.EXIT, {})])
    execution, job = await start(engine, journey)

    with pytest.raises(StepNotFound):
        await engine.coordinator.execute_step(job.model_copy(update={"version_id": "other"}))
    assert await engine.repository.list_step_executions(execution.id) == []


@pytest.mark.asyncio
async def test_trigger_step_passes_through(engine, publish):
    journey, _, steps = await publish(
        [("entry", StepType.TRIGGER, {}), ("a", StepType.EXIT, {})],
        [("entry", "a")],
    )
    execution, job = await start(engine, journey)
    assert job.step_id == steps["entry"].id

    await engine.coordinator.execute_step(job)

    assert queued_steps(engine) == [steps["a"].id]
    [record] = await engine.repository.list_step_executions(execution.id)
    assert record.result == {"type": "trigger"}


@pytest.mark.asyncio
async def test_exit_completes_execution_and_announces_it(engine, publish):
    journey, _, _ = await publish([("done", StepType.EXIT, {})])
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    stored = await engine.repository.find_execution_by_id(execution.id, ORG)
    assert stored.status == ExecutionStatus.COMPLETED
    [record] = await engine.repository.list_step_executions(execution.id)
    assert record.result == {"type": "exit"}
    kinds = [m.kind for m in engine.transport.pending(engine.config.queues.events)]
    assert kinds[-1] == EXECUTION_COMPLETED
    messages = [log.message for log in await engine.repository.list_execution_logs(execution.id)]
    assert "Journey execution completed" in messages
    assert "Step executed: exit" in messages


@pytest.mark.asyncio
async def test_delay_schedules_wake_and_does_not_advance(engine, publish, store):
    journey, _, steps = await publish(
        [("wait", StepType.DELAY, {"duration": 2, "unit": "hours"}), ("b", StepType.EXIT, {})],
        [("wait", "b")],
    )
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    [record] = await engine.repository.list_step_executions(execution.id)
    assert record.status == StepExecutionStatus.COMPLETED
    assert record.result == {"delayMs": 7_200_000}
    assert queued_steps(engine) == []

    delayed_topic = engine.config.queues.delayed_steps
    [wake] = engine.transport.pending(delayed_topic)
    assert wake.delay_ms == 7_200_000
    assert wake.unwrap(StepJob) == job
    assert await engine.transport.take(delayed_topic) is None

    key = step_execution_key(execution.id, steps["wait"].id)
    assert store.ttl(key) >= MIN_DELAY_IDEMPOTENCY_TTL_SECONDS
    stored = await engine.repository.find_execution_by_id(execution.id, ORG)
    assert stored.status == ExecutionStatus.ACTIVE


@pytest.mark.asyncio
async def test_long_delay_keeps_guard_past_the_wake(engine, publish, store):
    journey, _, steps = await publish([("wait", StepType.DELAY, {"duration": 30, "unit": "days"})])
    execution, job = await start(engine, journey)

    await engine.coordinator.execute_step(job)

    key = step_execution_key(execution.id, steps["wait"].id)
    assert store.ttl(key) > 30 * SECONDS_PER_DAY


@pytest.mark.asyncio
async def test_failed_effect_is_recorded_and_propagated(config, repository, store, clock, publish):
    transport = FlakyDeliveryTransport(clock)
    engine = JourneyEngine(config, repository, transport, store)
    journey, _, steps = await publish([("a", StepType.ACTION, {"action": "send_email"})])
    execution = await engine.dispatcher.start_execution(ORG, journey.id, CONTACT)
    job = StepJob(
        execution_id=execution.id,
        step_id=steps["a"].id,
        journey_id=journey.id,
        contact_id=CONTACT,
        organization_id=ORG,
        version_id=execution.version_id,
    )

    with pytest.raises(ConnectionError):
        await engine.coordinator.execute_step(job)

    [record] = await repository.list_step_executions(execution.id)
    assert record.status == StepExecutionStatus.FAILED
    assert record.error == "delivery pipeline unavailable"
    errors = [
        log for log in await repository.list_execution_logs(execution.id)
        if log.level == LogLevel.ERROR
    ]
    assert [log.message for log in errors] == ["Step failed: delivery pipeline unavailable"]
    assert not await engine.guard.seen(step_execution_key(execution.id, steps["a"].id))

    transport.failing = False
    await engine.coordinator.execute_step(job)

    records = await repository.list_step_executions(execution.id)
    assert [r.status for r in records] == [
        StepExecutionStatus.FAILED,
        StepExecutionStatus.COMPLETED,
    ]
    assert len(transport.pending(config.queues.delivery)) == 1
