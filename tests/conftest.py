"""Shared fixtures: an engine wired entirely to in-memory backends."""

import pytest

from journeyflow.config import JourneyflowConfig
from journeyflow.engine import JourneyEngine
from journeyflow.idempotency import InMemoryIdempotencyStore
from journeyflow.models import (
    ConnectionDefinition,
    JourneyDefinition,
    StepDefinition,
    TriggerType,
)
from journeyflow.persistence import InMemoryJourneyRepository
from journeyflow.transports.inmemory import InMemoryTransport

ORG = "org-1"
CONTACT = "contact-1"


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return JourneyflowConfig()


@pytest.fixture
def transport(clock):
    return InMemoryTransport(clock=clock)


@pytest.fixture
def store(clock):
    return InMemoryIdempotencyStore(clock=clock)


@pytest.fixture
def repository():
    return InMemoryJourneyRepository()


@pytest.fixture
def engine(config, repository, transport, store):
    return JourneyEngine(config, repository, transport, store)


@pytest.fixture
def publish(engine):
    """Create, trigger and publish a journey from compact step tuples.

    ``steps`` are ``(key, type, config)``; ``connections`` are
    ``(from_key, to_key)`` or ``(from_key, to_key, label)``.
    Returns ``(journey, version, steps_by_key)``.
    """

    async def _publish(steps, connections=(), triggers=None, settings=None, org=ORG):
        journey = await engine.journeys.create_journey(
            org, "Test journey", "tester", settings=settings
        )
        for trigger_type, trigger_config in triggers or [
            (TriggerType.SCORE_THRESHOLD, {"minScore": 80})
        ]:
            await engine.journeys.add_trigger(org, journey.id, trigger_type, trigger_config)
        definition = JourneyDefinition(
            steps=[StepDefinition(key=k, type=t, config=c) for k, t, c in steps],
            connections=[
                ConnectionDefinition(
                    from_key=c[0], to_key=c[1], label=c[2] if len(c) > 2 else None
                )
                for c in connections
            ],
        )
        version = await engine.journeys.publish(org, journey.id, definition)
        stored = await engine.repository.list_version_steps(version.id)
        return journey, version, {s.key: s for s in stored}

    return _publish
