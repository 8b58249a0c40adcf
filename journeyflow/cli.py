"""Command line interface for the journey engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .config import JourneyflowConfig, load_config
from .engine import JourneyEngine
from .errors import JourneyError
from .models import ExecutionStatus, JourneyDefinition, TriggerType
from .worker import JourneyWorker

T = TypeVar("T")

app = typer.Typer(help="CLI for journeyflow journeys")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
sweep_app = typer.Typer(help="One-off maintenance sweeps")
journey_app = typer.Typer(help="Commands for managing journeys")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")

app.add_typer(worker_app, name="worker")
app.add_typer(sweep_app, name="sweep")
app.add_typer(journey_app, name="journey")
app.add_typer(execution_app, name="execution")

OrgOption = typer.Option(..., "--org", envvar="JOURNEYFLOW_ORG", help="Organization id")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """journeyflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


def _engine(ctx: typer.Context) -> JourneyEngine:
    settings: JourneyflowConfig = ctx.obj or load_config()
    return JourneyEngine.from_config(settings)


def _run(engine: JourneyEngine, action: Callable[[], Awaitable[T]]) -> T:
    """Run ``action`` with the transport connected, reporting engine errors."""

    async def runner() -> T:
        await engine.transport.connect()
        try:
            return await action()
        finally:
            await engine.transport.disconnect()

    try:
        return asyncio.run(runner())
    except JourneyError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str]) -> dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Config must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ----------------------------------------------------------------------
# worker


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker consuming every engine topic.

    Example:
        journeyflow worker run --lifespan 300
    """
    engine = _engine(ctx)
    worker = JourneyWorker(engine)
    typer.echo(f"Starting worker on: {', '.join(worker.topics)}")
    asyncio.run(worker.start(lifespan=lifespan))


# ----------------------------------------------------------------------
# sweeps


@sweep_app.command("stale")
def sweep_stale(ctx: typer.Context) -> None:
    """Cancel active executions older than the staleness threshold."""
    engine = _engine(ctx)
    canceled = _run(engine, engine.reaper.cleanup_stale_executions)
    typer.echo(f"Canceled {len(canceled)} stale executions")


@sweep_app.command("segments")
def sweep_segments(ctx: typer.Context) -> None:
    """Evaluate every segment trigger on active journeys."""
    engine = _engine(ctx)
    decisions = _run(engine, engine.triggers.evaluate_segment_triggers)
    fired = sum(1 for d in decisions if d.fired)
    typer.echo(f"Evaluated {len(decisions)} segment decisions, {fired} enrolled")


# ----------------------------------------------------------------------
# journeys


@journey_app.command("create")
def journey_create(
    ctx: typer.Context,
    name: str,
    org: str = OrgOption,
    created_by: str = typer.Option("cli", help="Author recorded on the journey"),
    description: Optional[str] = None,
) -> None:
    """Create a draft journey and print its id."""
    engine = _engine(ctx)
    journey = _run(
        engine,
        lambda: engine.journeys.create_journey(org, name, created_by, description),
    )
    typer.echo(journey.id)


@journey_app.command("trigger-add")
def journey_trigger_add(
    ctx: typer.Context,
    journey_id: str,
    trigger_type: TriggerType,
    org: str = OrgOption,
    config: Optional[str] = typer.Option(None, help="Trigger config as a JSON object"),
) -> None:
    """
    Attach a trigger to a journey.

    Example:
        journeyflow journey trigger-add <journey_id> score_threshold --config '{"minScore": 50}'
    """
    engine = _engine(ctx)
    trigger_config = _parse_json(config)
    trigger = _run(
        engine,
        lambda: engine.journeys.add_trigger(org, journey_id, trigger_type, trigger_config),
    )
    typer.echo(trigger.id)


@journey_app.command("publish")
def journey_publish(
    ctx: typer.Context,
    journey_id: str,
    definition_path: Path,
    org: str = OrgOption,
) -> None:
    """
    Publish a YAML journey definition as a new version.

    The file holds ``steps`` (key, type, config) and ``connections``
    (from_key, to_key, label). An optional ``triggers`` list (type, config)
    is attached before publishing.
    """
    if not definition_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(definition_path) as f:
        data = yaml.safe_load(f) or {}
    triggers = data.pop("triggers", None) or []
    definition = JourneyDefinition.model_validate(data)
    engine = _engine(ctx)

    async def publish():
        for trigger in triggers:
            await engine.journeys.add_trigger(
                org, journey_id, TriggerType(trigger["type"]), trigger.get("config") or {}
            )
        return await engine.journeys.publish(org, journey_id, definition)

    version = _run(engine, publish)
    typer.echo(f"Published version {version.version_number} ({version.id})")


@journey_app.command("pause")
def journey_pause(ctx: typer.Context, journey_id: str, org: str = OrgOption) -> None:
    """Pause an active journey."""
    engine = _engine(ctx)
    journey = _run(engine, lambda: engine.journeys.pause(org, journey_id))
    typer.echo(f"Journey {journey.id}: {journey.status.value}")


@journey_app.command("resume")
def journey_resume(ctx: typer.Context, journey_id: str, org: str = OrgOption) -> None:
    """Resume a paused journey."""
    engine = _engine(ctx)
    journey = _run(engine, lambda: engine.journeys.resume(org, journey_id))
    typer.echo(f"Journey {journey.id}: {journey.status.value}")


@journey_app.command("archive")
def journey_archive(ctx: typer.Context, journey_id: str, org: str = OrgOption) -> None:
    """Archive an active or paused journey."""
    engine = _engine(ctx)
    journey = _run(engine, lambda: engine.journeys.archive(org, journey_id))
    typer.echo(f"Journey {journey.id}: {journey.status.value}")


# ----------------------------------------------------------------------
# executions


@execution_app.command("start")
def execution_start(
    ctx: typer.Context, journey_id: str, contact_id: str, org: str = OrgOption
) -> None:
    """Enroll a contact into a journey's latest version."""
    engine = _engine(ctx)
    execution = _run(
        engine,
        lambda: engine.dispatcher.start_execution(org, journey_id, contact_id),
    )
    if execution is None:
        typer.echo("Contact not enrolled (entry guard)")
        raise typer.Exit(code=1)
    typer.echo(execution.id)


@execution_app.command("list")
def execution_list(
    ctx: typer.Context,
    org: Optional[str] = typer.Option(None, "--org", envvar="JOURNEYFLOW_ORG"),
    status: Optional[ExecutionStatus] = None,
) -> None:
    """
    List executions with their current status.

    Example:
        journeyflow execution list --status active
        # Output: 7f0c...    journey-1    contact-9    active
    """
    engine = _engine(ctx)
    executions = _run(engine, lambda: engine.repository.list_executions(org, status))
    if not executions:
        typer.echo("No executions found")
        return
    for e in executions:
        typer.echo(f"{e.id}\t{e.journey_id}\t{e.contact_id}\t{e.status.value}")


@execution_app.command("show")
def execution_show(ctx: typer.Context, execution_id: str, org: str = OrgOption) -> None:
    """Show an execution with its step history and trace log."""
    engine = _engine(ctx)
    repo = engine.repository

    async def load():
        execution = await repo.find_execution_by_id(execution_id, org)
        if execution is None:
            return None, None, [], []
        return (
            execution,
            await repo.find_version(org, execution.version_id),
            await repo.list_step_executions(execution_id),
            await repo.list_execution_logs(execution_id),
        )

    execution, version, steps, logs = _run(engine, load)
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    pinned = f"v{version.version_number}" if version else execution.version_id
    typer.echo(f"Journey {execution.journey_id} version {pinned}")
    typer.echo(f"Contact {execution.contact_id}, current step {execution.current_step_id}")
    for step in steps:
        typer.echo(
            f"- {step.step_id}: {step.status.value}"
            + (f" ({step.started_at} -> {step.completed_at})" if step.completed_at else "")
            + (f" error={step.error}" if step.error else "")
        )
    for entry in logs:
        typer.echo(f"[{entry.level.value}] {entry.created_at} {entry.message}")


@execution_app.command("cancel")
def execution_cancel(ctx: typer.Context, execution_id: str, org: str = OrgOption) -> None:
    """Cancel an execution; already-finished executions are left alone."""
    engine = _engine(ctx)
    changed = _run(engine, lambda: engine.journeys.cancel_execution(org, execution_id))
    typer.echo("Canceled" if changed else "Execution already finished")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
