"""PostgreSQL implementation of the journey repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import asyncpg

from ..errors import ExecutionAlreadyActive
from ..models import (
    ExecutionLog,
    ExecutionStatus,
    Journey,
    JourneyExecution,
    JourneySettings,
    JourneyStep,
    JourneyTrigger,
    JourneyVersion,
    LogLevel,
    StepConnection,
    StepExecution,
    TriggerType,
)
from .repository import JourneyRepository, TriggerWithJourney

_SCHEMA = """
CREATE TABLE IF NOT EXISTS journeys (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL,
    created_by TEXT NOT NULL,
    settings JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS journey_versions (
    id TEXT PRIMARY KEY,
    journey_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    version_number INTEGER NOT NULL,
    published_at TIMESTAMPTZ NOT NULL,
    UNIQUE (journey_id, version_number)
);
CREATE TABLE IF NOT EXISTS journey_steps (
    id TEXT PRIMARY KEY,
    version_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    type TEXT NOT NULL,
    config JSONB NOT NULL,
    key TEXT,
    position_x INTEGER NOT NULL DEFAULT 0,
    position_y INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS journey_step_connections (
    id SERIAL PRIMARY KEY,
    version_id TEXT NOT NULL,
    from_step_id TEXT NOT NULL,
    to_step_id TEXT NOT NULL,
    label TEXT
);
CREATE INDEX IF NOT EXISTS ix_connections_from ON journey_step_connections (from_step_id);
CREATE TABLE IF NOT EXISTS journey_triggers (
    id TEXT PRIMARY KEY,
    journey_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    type TEXT NOT NULL,
    config JSONB NOT NULL,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS journey_executions (
    id TEXT PRIMARY KEY,
    journey_id TEXT NOT NULL,
    version_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    contact_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    current_step_id TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_active_execution
    ON journey_executions (journey_id, contact_id) WHERE status = 'active';
CREATE TABLE IF NOT EXISTS step_executions (
    id TEXT PRIMARY KEY,
    execution_id TEXT NOT NULL,
    step_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    result JSONB,
    error TEXT
);
CREATE INDEX IF NOT EXISTS ix_step_executions_execution ON step_executions (execution_id);
CREATE TABLE IF NOT EXISTS execution_logs (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL
);
"""

_EXECUTION_COLUMNS = (
    "id, journey_id, version_id, organization_id, contact_id, status, "
    "started_at, completed_at, current_step_id"
)
_STEP_EXECUTION_COLUMNS = (
    "id, execution_id, step_id, organization_id, status, started_at, "
    "completed_at, result, error"
)


def _journey(row: asyncpg.Record, prefix: str = "") -> Journey:
    return Journey(
        id=row[f"{prefix}id"],
        organization_id=row[f"{prefix}organization_id"],
        name=row[f"{prefix}name"],
        description=row[f"{prefix}description"],
        status=row[f"{prefix}status"],
        created_by=row[f"{prefix}created_by"],
        settings=JourneySettings.model_validate(row[f"{prefix}settings"]),
        created_at=row[f"{prefix}created_at"],
        updated_at=row[f"{prefix}updated_at"],
    )


def _version(row: asyncpg.Record) -> JourneyVersion:
    return JourneyVersion(**dict(row))


def _step(row: asyncpg.Record) -> JourneyStep:
    data = dict(row)
    data.pop("ordinal", None)
    return JourneyStep(**data)


def _connection(row: asyncpg.Record) -> StepConnection:
    return StepConnection(
        from_step_id=row["from_step_id"], to_step_id=row["to_step_id"], label=row["label"]
    )


def _trigger(row: asyncpg.Record) -> JourneyTrigger:
    return JourneyTrigger(
        id=row["id"],
        journey_id=row["journey_id"],
        organization_id=row["organization_id"],
        type=row["type"],
        config=row["config"],
        enabled=row["enabled"],
    )


def _execution(row: asyncpg.Record) -> JourneyExecution:
    return JourneyExecution(**dict(row))


def _step_execution(row: asyncpg.Record) -> StepExecution:
    return StepExecution(**dict(row))


class PostgresJourneyRepository(JourneyRepository):
    """Persist journey state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await conn.execute(_SCHEMA)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await self._connect()
        try:
            yield conn
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_journey(self, journey: Journey) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO journeys (id, organization_id, name, description, status,
                                      created_by, settings, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    status = EXCLUDED.status,
                    settings = EXCLUDED.settings,
                    updated_at = EXCLUDED.updated_at
                """,
                journey.id,
                journey.organization_id,
                journey.name,
                journey.description,
                journey.status.value,
                journey.created_by,
                journey.settings.model_dump(mode="json"),
                journey.created_at,
                journey.updated_at,
            )

    async def find_journey(
        self, organization_id: str, journey_id: str
    ) -> Journey | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM journeys WHERE id = $1 AND organization_id = $2",
                journey_id,
                organization_id,
            )
        return _journey(row) if row else None

    async def save_version(
        self,
        version: JourneyVersion,
        steps: Sequence[JourneyStep],
        connections: Sequence[StepConnection],
    ) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO journey_versions (id, journey_id, organization_id, version_number, published_at) VALUES ($1, $2, $3, $4, $5)",
                    version.id,
                    version.journey_id,
                    version.organization_id,
                    version.version_number,
                    version.published_at,
                )
                await conn.executemany(
                    "INSERT INTO journey_steps (id, version_id, organization_id, ordinal, type, config, key, position_x, position_y) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                    [
                        (
                            step.id,
                            step.version_id,
                            step.organization_id,
                            ordinal,
                            step.type.value,
                            step.config,
                            step.key,
                            step.position_x,
                            step.position_y,
                        )
                        for ordinal, step in enumerate(steps)
                    ],
                )
                await conn.executemany(
                    "INSERT INTO journey_step_connections (version_id, from_step_id, to_step_id, label) VALUES ($1, $2, $3, $4)",
                    [
                        (version.id, c.from_step_id, c.to_step_id, c.label)
                        for c in connections
                    ],
                )

    async def find_latest_version(
        self, organization_id: str, journey_id: str
    ) -> JourneyVersion | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, journey_id, organization_id, version_number, published_at
                FROM journey_versions
                WHERE journey_id = $1 AND organization_id = $2
                ORDER BY version_number DESC LIMIT 1
                """,
                journey_id,
                organization_id,
            )
        return _version(row) if row else None

    async def find_version(
        self, organization_id: str, version_id: str
    ) -> JourneyVersion | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, journey_id, organization_id, version_number, published_at FROM journey_versions WHERE id = $1 AND organization_id = $2",
                version_id,
                organization_id,
            )
        return _version(row) if row else None

    async def list_version_steps(self, version_id: str) -> list[JourneyStep]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM journey_steps WHERE version_id = $1 ORDER BY ordinal",
                version_id,
            )
        return [_step(r) for r in rows]

    async def list_version_connections(self, version_id: str) -> list[StepConnection]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT from_step_id, to_step_id, label FROM journey_step_connections WHERE version_id = $1 ORDER BY id",
                version_id,
            )
        return [_connection(r) for r in rows]

    async def find_step_by_id(
        self, step_id: str, organization_id: str
    ) -> JourneyStep | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM journey_steps WHERE id = $1 AND organization_id = $2",
                step_id,
                organization_id,
            )
        return _step(row) if row else None

    async def find_connections_from(self, step_id: str) -> list[StepConnection]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT from_step_id, to_step_id, label FROM journey_step_connections WHERE from_step_id = $1 ORDER BY id",
                step_id,
            )
        return [_connection(r) for r in rows]

    # ------------------------------------------------------------------
    async def save_trigger(self, trigger: JourneyTrigger) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO journey_triggers (id, journey_id, organization_id, type, config, enabled)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    config = EXCLUDED.config,
                    enabled = EXCLUDED.enabled
                """,
                trigger.id,
                trigger.journey_id,
                trigger.organization_id,
                trigger.type.value,
                trigger.config,
                trigger.enabled,
            )

    async def find_triggers_by_journey(
        self, organization_id: str, journey_id: str
    ) -> list[JourneyTrigger]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM journey_triggers WHERE journey_id = $1 AND organization_id = $2 ORDER BY created_at",
                journey_id,
                organization_id,
            )
        return [_trigger(r) for r in rows]

    async def _triggers_with_journeys(
        self, trigger_type: TriggerType, organization_id: Optional[str]
    ) -> list[TriggerWithJourney]:
        query = """
            SELECT t.*, j.id AS j_id, j.organization_id AS j_organization_id,
                   j.name AS j_name, j.description AS j_description,
                   j.status AS j_status, j.created_by AS j_created_by,
                   j.settings AS j_settings, j.created_at AS j_created_at,
                   j.updated_at AS j_updated_at
            FROM journey_triggers t
            JOIN journeys j ON j.id = t.journey_id
            WHERE t.type = $1 AND t.enabled AND j.status = 'active'
        """
        params: list[Any] = [trigger_type.value]
        if organization_id is not None:
            query += " AND t.organization_id = $2"
            params.append(organization_id)
        query += " ORDER BY t.created_at"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [(_trigger(r), _journey(r, prefix="j_")) for r in rows]

    async def find_triggers_by_type(
        self, organization_id: str, trigger_type: TriggerType
    ) -> list[TriggerWithJourney]:
        return await self._triggers_with_journeys(trigger_type, organization_id)

    async def find_active_journeys_with_segment_triggers(
        self,
    ) -> list[TriggerWithJourney]:
        return await self._triggers_with_journeys(TriggerType.SEGMENT, None)

    # ------------------------------------------------------------------
    async def create_execution(self, execution: JourneyExecution) -> None:
        async with self._connection() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO journey_executions ({_EXECUTION_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                    execution.id,
                    execution.journey_id,
                    execution.version_id,
                    execution.organization_id,
                    execution.contact_id,
                    execution.status.value,
                    execution.started_at,
                    execution.completed_at,
                    execution.current_step_id,
                )
            except asyncpg.UniqueViolationError as exc:
                raise ExecutionAlreadyActive(
                    f"Contact {execution.contact_id} already active in journey {execution.journey_id}"
                ) from exc

    async def save_execution(self, execution: JourneyExecution) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE journey_executions SET status = $1, completed_at = $2, current_step_id = $3 WHERE id = $4",
                execution.status.value,
                execution.completed_at,
                execution.current_step_id,
                execution.id,
            )

    async def find_execution_by_id(
        self, execution_id: str, organization_id: str
    ) -> JourneyExecution | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM journey_executions WHERE id = $1 AND organization_id = $2",
                execution_id,
                organization_id,
            )
        return _execution(row) if row else None

    async def find_active_execution(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> JourneyExecution | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM journey_executions
                WHERE organization_id = $1 AND journey_id = $2 AND contact_id = $3
                  AND status = 'active'
                """,
                organization_id,
                journey_id,
                contact_id,
            )
        return _execution(row) if row else None

    async def list_contact_executions(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> list[JourneyExecution]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM journey_executions
                WHERE organization_id = $1 AND journey_id = $2 AND contact_id = $3
                ORDER BY started_at
                """,
                organization_id,
                journey_id,
                contact_id,
            )
        return [_execution(r) for r in rows]

    async def find_stale_executions(self, older_than: datetime) -> list[JourneyExecution]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM journey_executions
                WHERE status = 'active' AND started_at < $1
                ORDER BY started_at
                """,
                older_than,
            )
        return [_execution(r) for r in rows]

    async def list_executions(
        self,
        organization_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[JourneyExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if organization_id is not None:
            params.append(organization_id)
            clauses.append(f"organization_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_EXECUTION_COLUMNS} FROM journey_executions {where} ORDER BY started_at",
                *params,
            )
        return [_execution(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_step_execution(self, step_execution: StepExecution) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO step_executions ({_STEP_EXECUTION_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                step_execution.id,
                step_execution.execution_id,
                step_execution.step_id,
                step_execution.organization_id,
                step_execution.status.value,
                step_execution.started_at,
                step_execution.completed_at,
                step_execution.result,
                step_execution.error,
            )

    async def update_step_execution(self, step_execution: StepExecution) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE step_executions
                SET status = $1, completed_at = $2, result = $3, error = $4
                WHERE id = $5
                """,
                step_execution.status.value,
                step_execution.completed_at,
                step_execution.result,
                step_execution.error,
                step_execution.id,
            )

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_STEP_EXECUTION_COLUMNS} FROM step_executions WHERE execution_id = $1 ORDER BY started_at",
                execution_id,
            )
        return [_step_execution(r) for r in rows]

    async def find_completed_step_execution(
        self, execution_id: str, step_id: str
    ) -> StepExecution | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_STEP_EXECUTION_COLUMNS} FROM step_executions
                WHERE execution_id = $1 AND step_id = $2 AND status = 'completed'
                LIMIT 1
                """,
                execution_id,
                step_id,
            )
        return _step_execution(row) if row else None

    # ------------------------------------------------------------------
    async def log_execution(
        self,
        execution_id: str,
        organization_id: str,
        level: LogLevel,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = ExecutionLog(
            execution_id=execution_id,
            organization_id=organization_id,
            level=level,
            message=message,
            metadata=metadata,
        )
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO execution_logs (id, execution_id, organization_id, level, message, metadata, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                entry.id,
                entry.execution_id,
                entry.organization_id,
                entry.level.value,
                entry.message,
                entry.metadata,
                entry.created_at,
            )

    async def list_execution_logs(self, execution_id: str) -> list[ExecutionLog]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT id, execution_id, organization_id, level, message, metadata, created_at FROM execution_logs WHERE execution_id = $1 ORDER BY seq",
                execution_id,
            )
        return [ExecutionLog(**dict(r)) for r in rows]
