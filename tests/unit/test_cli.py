import asyncio

import pytest
from typer.testing import CliRunner

import journeyflow.persistence as persistence
from journeyflow.cli import app
from journeyflow.models import (
    ExecutionStatus,
    Journey,
    JourneyExecution,
    JourneyStatus,
    LogLevel,
    StepExecution,
)
from journeyflow.persistence import InMemoryJourneyRepository

ORG = "org-1"

DEFINITION = """
steps:
  - key: welcome
    type: action
    config: {action: send_email, templateId: 12}
  - key: done
    type: exit
connections:
  - {from_key: welcome, to_key: done}
triggers:
  - type: score_threshold
    config: {minScore: 60}
"""


@pytest.fixture
def repo(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("JOURNEYFLOW_CONFIG", "JOURNEYFLOW_DATABASE_URL", "DATABASE_URL",
                 "JOURNEYFLOW_TRANSPORT", "JOURNEYFLOW_ORG"):
        monkeypatch.delenv(name, raising=False)
    persistence.reset_repository()
    repo = InMemoryJourneyRepository()
    persistence._repository_instance = repo
    yield repo
    persistence.reset_repository()


def _invoke(*args):
    return CliRunner().invoke(app, list(args))


def test_create_publish_and_start(repo, tmp_path):
    result = _invoke("journey", "create", "Welcome", "--org", ORG)
    assert result.exit_code == 0, result.stdout
    journey_id = result.stdout.strip()

    definition = tmp_path / "welcome.yaml"
    definition.write_text(DEFINITION)
    result = _invoke("journey", "publish", journey_id, str(definition), "--org", ORG)
    assert result.exit_code == 0, result.stdout
    assert "Published version 1" in result.stdout

    journey = asyncio.run(repo.find_journey(ORG, journey_id))
    assert journey.status == JourneyStatus.ACTIVE
    assert len(asyncio.run(repo.find_triggers_by_journey(ORG, journey_id))) == 1

    result = _invoke("execution", "start", journey_id, "contact-7", "--org", ORG)
    assert result.exit_code == 0, result.stdout
    execution_id = result.stdout.strip()
    execution = asyncio.run(repo.find_execution_by_id(execution_id, ORG))
    assert execution.contact_id == "contact-7"

    result = _invoke("execution", "start", journey_id, "contact-7", "--org", ORG)
    assert result.exit_code == 1
    assert "Contact not enrolled" in result.stdout

    result = _invoke("execution", "show", execution_id, "--org", ORG)
    assert result.exit_code == 0, result.stdout
    assert f"Journey {journey_id} version v1" in result.stdout


def test_publish_missing_definition(repo):
    result = _invoke("journey", "publish", "j-1", "nowhere.yaml", "--org", ORG)
    assert result.exit_code == 1
    assert "Specified path does not exist" in result.stdout


def test_trigger_add_and_lifecycle(repo):
    journey = Journey(organization_id=ORG, name="Nurture", created_by="tester",
                      status=JourneyStatus.ACTIVE)
    asyncio.run(repo.save_journey(journey))

    result = _invoke("journey", "trigger-add", journey.id, "segment",
                     "--org", ORG, "--config", '{"segmentId": "seg-1"}')
    assert result.exit_code == 0, result.stdout
    [trigger] = asyncio.run(repo.find_triggers_by_journey(ORG, journey.id))
    assert trigger.config == {"segmentId": "seg-1"}

    result = _invoke("journey", "trigger-add", journey.id, "segment", "--org", ORG,
                     "--config", "[1, 2]")
    assert result.exit_code == 1

    result = _invoke("journey", "pause", journey.id, "--org", ORG)
    assert result.stdout.strip() == f"Journey {journey.id}: paused"
    result = _invoke("journey", "pause", journey.id, "--org", ORG)
    assert result.exit_code == 1
    assert "Cannot pause" in result.stdout
    result = _invoke("journey", "resume", journey.id, "--org", ORG)
    assert result.stdout.strip() == f"Journey {journey.id}: active"
    result = _invoke("journey", "archive", journey.id, "--org", ORG)
    assert result.stdout.strip() == f"Journey {journey.id}: archived"


def _seed_execution(repo, status=ExecutionStatus.ACTIVE, contact="contact-1"):
    execution = JourneyExecution(journey_id="journey-1", version_id="version-1",
                                 organization_id=ORG, contact_id=contact, status=status)
    asyncio.run(repo.create_execution(execution))
    return execution


def test_execution_list_and_show(repo):
    result = _invoke("execution", "list")
    assert result.exit_code == 0
    assert "No executions found" in result.stdout

    active = _seed_execution(repo)
    done = _seed_execution(repo, ExecutionStatus.COMPLETED, contact="contact-2")
    step = StepExecution(execution_id=active.id, step_id="step-1", organization_id=ORG)
    asyncio.run(repo.create_step_execution(step))
    asyncio.run(repo.log_execution(active.id, ORG, LogLevel.INFO, "Journey execution started"))

    result = _invoke("execution", "list", "--status", "active")
    assert result.exit_code == 0, result.stdout
    assert active.id in result.stdout
    assert done.id not in result.stdout

    result = _invoke("execution", "show", active.id, "--org", ORG)
    assert result.exit_code == 0, result.stdout
    assert f"Execution {active.id}: active" in result.stdout
    assert "step-1: running" in result.stdout
    assert "[info]" in result.stdout
    assert "Journey execution started" in result.stdout
    assert "Journey journey-1 version version-1" in result.stdout

    result = _invoke("execution", "show", "missing-id", "--org", ORG)
    assert result.exit_code == 1
    assert "Execution not found" in result.stdout


def test_execution_cancel(repo):
    execution = _seed_execution(repo)

    result = _invoke("execution", "cancel", execution.id, "--org", ORG)
    assert result.stdout.strip() == "Canceled"
    result = _invoke("execution", "cancel", execution.id, "--org", ORG)
    assert result.stdout.strip() == "Execution already finished"
    assert asyncio.run(repo.find_execution_by_id(execution.id, ORG)).status == ExecutionStatus.CANCELED


def test_sweep_stale(repo):
    result = _invoke("sweep", "stale")
    assert result.exit_code == 0, result.stdout
    assert "Canceled 0 stale executions" in result.stdout
