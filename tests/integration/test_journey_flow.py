"""End-to-end journey: send, wait an hour, exit."""

import pytest

from journeyflow.contracts import SendRequest, StepJob
from journeyflow.engine import JourneyEngine
from journeyflow.events import EXECUTION_COMPLETED, EXECUTION_STARTED
from journeyflow.models import (
    ConnectionDefinition,
    ExecutionStatus,
    JourneyDefinition,
    StepDefinition,
    StepExecutionStatus,
    StepType,
    TriggerType,
)
from journeyflow.persistence import SQLiteJourneyRepository
from journeyflow.worker import PROCESSED, JourneyWorker

ORG = "org-1"
CONTACT = "contact-1"


async def _drain(worker, transport, topic):
    outcomes = []
    while True:
        message = await transport.take(topic)
        if message is None:
            return outcomes
        outcomes.append(await worker.handle(topic, message))


@pytest.mark.asyncio
async def test_action_delay_exit_journey(config, transport, store, clock, tmp_path):
    repository = SQLiteJourneyRepository(tmp_path / "journeys.db")
    engine = JourneyEngine(config, repository, transport, store)
    worker = JourneyWorker(engine)
    queues = config.queues

    journey = await engine.journeys.create_journey(ORG, "Welcome", "tester")
    await engine.journeys.add_trigger(ORG, journey.id, TriggerType.SCORE_THRESHOLD, {"minScore": 80})
    version = await engine.journeys.publish(
        ORG,
        journey.id,
        JourneyDefinition(
            steps=[
                StepDefinition(key="A", type=StepType.ACTION,
                               config={"action": "send_email", "templateId": 5}),
                StepDefinition(key="B", type=StepType.DELAY,
                               config={"duration": 1, "unit": "hours"}),
                StepDefinition(key="C", type=StepType.EXIT),
            ],
            connections=[
                ConnectionDefinition(from_key="A", to_key="B"),
                ConnectionDefinition(from_key="B", to_key="C"),
            ],
        ),
    )
    steps = {s.key: s for s in await repository.list_version_steps(version.id)}

    [decision] = await engine.triggers.evaluate_score_triggers(ORG, CONTACT, 85)
    assert decision.fired
    execution_id = decision.execution_id

    # A runs and hands over to B, which schedules the wake-up.
    assert await _drain(worker, transport, queues.execute_step) == [PROCESSED, PROCESSED]
    [send] = transport.pending(queues.delivery)
    assert send.unwrap(SendRequest).idempotency_key == f"journey:{execution_id}:{steps['A'].id}"
    assert await transport.take(queues.delayed_steps) is None

    # Redelivery of A after the fact is a no-op.
    replay = StepJob(
        execution_id=execution_id,
        step_id=steps["A"].id,
        journey_id=journey.id,
        contact_id=CONTACT,
        organization_id=ORG,
        version_id=version.id,
    )
    await engine.coordinator.execute_step(replay)
    assert len(transport.pending(queues.delivery)) == 1

    clock.advance(3600)
    assert await _drain(worker, transport, queues.delayed_steps) == [PROCESSED]
    assert await _drain(worker, transport, queues.execute_step) == [PROCESSED]

    execution = await repository.find_execution_by_id(execution_id, ORG)
    assert execution.status == ExecutionStatus.COMPLETED
    records = await repository.list_step_executions(execution_id)
    assert [r.step_id for r in records] == [steps["A"].id, steps["B"].id, steps["C"].id]
    assert all(r.status == StepExecutionStatus.COMPLETED for r in records)
    assert records[1].result == {"delayMs": 3_600_000}

    kinds = [m.kind for m in transport.pending(queues.events)]
    assert kinds == [EXECUTION_STARTED, EXECUTION_COMPLETED]
    messages = [log.message for log in await repository.list_execution_logs(execution_id)]
    assert messages[0] == "Journey execution started"
    assert "Delay step scheduled: 3600000ms" in messages
    assert messages[-1] == "Step executed: exit"
