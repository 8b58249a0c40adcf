"""Publish a small journey, enroll a contact and run a worker over it."""

import asyncio

from journeyflow import JourneyEngine, JourneyWorker
from journeyflow.models import (
    ConnectionDefinition,
    JourneyDefinition,
    StepDefinition,
    StepType,
    TriggerType,
)

ORG = "acme"


async def main():
    engine = JourneyEngine.from_config()

    journey = await engine.journeys.create_journey(ORG, "Welcome", "guide")
    await engine.journeys.add_trigger(
        ORG, journey.id, TriggerType.SCORE_THRESHOLD, {"minScore": 80}
    )
    version = await engine.journeys.publish(
        ORG,
        journey.id,
        JourneyDefinition(
            steps=[
                StepDefinition(
                    key="welcome",
                    type=StepType.ACTION,
                    config={"action": "send_email", "templateId": 1},
                ),
                StepDefinition(key="wait", type=StepType.DELAY, config={"duration": 1, "unit": "minutes"}),
                StepDefinition(
                    key="grade",
                    type=StepType.CONDITION,
                    config={"type": "lead_grade", "grades": {"default": "hot"}},
                ),
                StepDefinition(
                    key="call",
                    type=StepType.ACTION,
                    config={"action": "send_sms", "templateId": 2},
                ),
                StepDefinition(key="done", type=StepType.EXIT),
            ],
            connections=[
                ConnectionDefinition(from_key="welcome", to_key="wait"),
                ConnectionDefinition(from_key="wait", to_key="grade"),
                ConnectionDefinition(from_key="grade", to_key="call", label="hot"),
                ConnectionDefinition(from_key="grade", to_key="done", label="cold"),
                ConnectionDefinition(from_key="call", to_key="done"),
            ],
        ),
    )
    print(f"✅ Published {journey.name} v{version.version_number}")

    decisions = await engine.triggers.evaluate_score_triggers(ORG, "contact-42", 91)
    for decision in decisions:
        print(f"➡️  trigger {decision.trigger_id}: fired={decision.fired} {decision.reason or ''}")

    # The delay step wakes up after a minute; keep the worker alive past it.
    await JourneyWorker(engine).start(lifespan=90)

    for execution in await engine.repository.list_executions(ORG):
        print(f"🏁 {execution.id}: {execution.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
