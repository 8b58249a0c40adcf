"""SQLite implementation of the journey repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS journeys (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL,
        created_by TEXT NOT NULL,
        settings TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_versions (
        id TEXT PRIMARY KEY,
        journey_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        version_number INTEGER NOT NULL,
        published_at TEXT NOT NULL,
        UNIQUE (journey_id, version_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_steps (
        id TEXT PRIMARY KEY,
        version_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        ordinal INTEGER NOT NULL,
        type TEXT NOT NULL,
        config TEXT NOT NULL,
        key TEXT,
        position_x INTEGER NOT NULL DEFAULT 0,
        position_y INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_step_connections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        version_id TEXT NOT NULL,
        from_step_id TEXT NOT NULL,
        to_step_id TEXT NOT NULL,
        label TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_triggers (
        id TEXT PRIMARY KEY,
        journey_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        type TEXT NOT NULL,
        config TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_executions (
        id TEXT PRIMARY KEY,
        journey_id TEXT NOT NULL,
        version_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        contact_id TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        current_step_id TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_active_execution
    ON journey_executions (journey_id, contact_id) WHERE status = 'active'
    """,
    """
    CREATE TABLE IF NOT EXISTS step_executions (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        result TEXT,
        error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_logs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

_EXECUTION_COLUMNS = (
    "id, journey_id, version_id, organization_id, contact_id, status, "
    "started_at, completed_at, current_step_id"
)
_STEP_EXECUTION_COLUMNS = (
    "id, execution_id, step_id, organization_id, status, started_at, "
    "completed_at, result, error"
)
_JOURNEY_COLUMNS = (
    "id, organization_id, name, description, status, created_by, settings, "
    "created_at, updated_at"
)
_JOINED_JOURNEY_COLUMNS = ", ".join(
    f"j.{c.strip()} AS j_{c.strip()}" for c in _JOURNEY_COLUMNS.split(",")
)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text keeps lexical order equal to time order.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


class SQLiteJourneyRepository(JourneyRepository):
    """Persist journey state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        try:
            cur.execute(query, params)
        except sqlite3.Error:
            self._conn.rollback()
            raise
        self._conn.commit()

    def _execute_many(self, statements: Iterable[Tuple[str, Sequence[Any]]]) -> None:
        """Run several statements in one transaction."""
        cur = self._conn.cursor()
        try:
            for query, params in statements:
                cur.execute(query, tuple(params))
        except sqlite3.Error:
            self._conn.rollback()
            raise
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _journey(row: sqlite3.Row) -> Journey:
        return Journey(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            description=row["description"],
            status=row["status"],
            created_by=row["created_by"],
            settings=JourneySettings.model_validate(json.loads(row["settings"])),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _version(row: sqlite3.Row) -> JourneyVersion:
        return JourneyVersion(
            id=row["id"],
            journey_id=row["journey_id"],
            organization_id=row["organization_id"],
            version_number=row["version_number"],
            published_at=_dt(row["published_at"]),
        )

    @staticmethod
    def _step(row: sqlite3.Row) -> JourneyStep:
        return JourneyStep(
            id=row["id"],
            version_id=row["version_id"],
            organization_id=row["organization_id"],
            type=row["type"],
            config=json.loads(row["config"]),
            key=row["key"],
            position_x=row["position_x"],
            position_y=row["position_y"],
        )

    @staticmethod
    def _connection(row: sqlite3.Row) -> StepConnection:
        return StepConnection(
            from_step_id=row["from_step_id"],
            to_step_id=row["to_step_id"],
            label=row["label"],
        )

    @staticmethod
    def _trigger(row: sqlite3.Row) -> JourneyTrigger:
        return JourneyTrigger(
            id=row["id"],
            journey_id=row["journey_id"],
            organization_id=row["organization_id"],
            type=row["type"],
            config=json.loads(row["config"]),
            enabled=bool(row["enabled"]),
        )

    @staticmethod
    def _execution(row: sqlite3.Row) -> JourneyExecution:
        return JourneyExecution(
            id=row["id"],
            journey_id=row["journey_id"],
            version_id=row["version_id"],
            organization_id=row["organization_id"],
            contact_id=row["contact_id"],
            status=row["status"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            current_step_id=row["current_step_id"],
        )

    @staticmethod
    def _step_execution(row: sqlite3.Row) -> StepExecution:
        return StepExecution(
            id=row["id"],
            execution_id=row["execution_id"],
            step_id=row["step_id"],
            organization_id=row["organization_id"],
            status=row["status"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            result=_loads(row["result"]),
            error=row["error"],
        )

    # ------------------------------------------------------------------
    # Journeys and versions
    async def save_journey(self, journey: Journey) -> None:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO journeys ({_JOURNEY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                status = excluded.status,
                settings = excluded.settings,
                updated_at = excluded.updated_at
            """,
            journey.id,
            journey.organization_id,
            journey.name,
            journey.description,
            journey.status.value,
            journey.created_by,
            journey.settings.model_dump_json(),
            _ts(journey.created_at),
            _ts(journey.updated_at),
        )

    async def find_journey(
        self, organization_id: str, journey_id: str
    ) -> Journey | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_JOURNEY_COLUMNS} FROM journeys WHERE id = ? AND organization_id = ?",
            journey_id,
            organization_id,
        )
        return self._journey(row) if row else None

    async def save_version(
        self,
        version: JourneyVersion,
        steps: Sequence[JourneyStep],
        connections: Sequence[StepConnection],
    ) -> None:
        statements: list[Tuple[str, Sequence[Any]]] = [
            (
                "INSERT INTO journey_versions (id, journey_id, organization_id, version_number, published_at) VALUES (?, ?, ?, ?, ?)",
                (
                    version.id,
                    version.journey_id,
                    version.organization_id,
                    version.version_number,
                    _ts(version.published_at),
                ),
            )
        ]
        for ordinal, step in enumerate(steps):
            statements.append(
                (
                    "INSERT INTO journey_steps (id, version_id, organization_id, ordinal, type, config, key, position_x, position_y) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        step.id,
                        step.version_id,
                        step.organization_id,
                        ordinal,
                        step.type.value,
                        json.dumps(step.config),
                        step.key,
                        step.position_x,
                        step.position_y,
                    ),
                )
            )
        for conn in connections:
            statements.append(
                (
                    "INSERT INTO journey_step_connections (version_id, from_step_id, to_step_id, label) VALUES (?, ?, ?, ?)",
                    (version.id, conn.from_step_id, conn.to_step_id, conn.label),
                )
            )
        await asyncio.to_thread(self._execute_many, statements)

    async def find_latest_version(
        self, organization_id: str, journey_id: str
    ) -> JourneyVersion | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT id, journey_id, organization_id, version_number, published_at
            FROM journey_versions
            WHERE journey_id = ? AND organization_id = ?
            ORDER BY version_number DESC LIMIT 1
            """,
            journey_id,
            organization_id,
        )
        return self._version(row) if row else None

    async def find_version(
        self, organization_id: str, version_id: str
    ) -> JourneyVersion | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, journey_id, organization_id, version_number, published_at FROM journey_versions WHERE id = ? AND organization_id = ?",
            version_id,
            organization_id,
        )
        return self._version(row) if row else None

    async def list_version_steps(self, version_id: str) -> list[JourneyStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM journey_steps WHERE version_id = ? ORDER BY ordinal",
            version_id,
        )
        return [self._step(r) for r in rows]

    async def list_version_connections(self, version_id: str) -> list[StepConnection]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT from_step_id, to_step_id, label FROM journey_step_connections WHERE version_id = ? ORDER BY id",
            version_id,
        )
        return [self._connection(r) for r in rows]

    async def find_step_by_id(
        self, step_id: str, organization_id: str
    ) -> JourneyStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM journey_steps WHERE id = ? AND organization_id = ?",
            step_id,
            organization_id,
        )
        return self._step(row) if row else None

    async def find_connections_from(self, step_id: str) -> list[StepConnection]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT from_step_id, to_step_id, label FROM journey_step_connections WHERE from_step_id = ? ORDER BY id",
            step_id,
        )
        return [self._connection(r) for r in rows]

    # ------------------------------------------------------------------
    # Triggers
    async def save_trigger(self, trigger: JourneyTrigger) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO journey_triggers (id, journey_id, organization_id, type, config, enabled)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                config = excluded.config,
                enabled = excluded.enabled
            """,
            trigger.id,
            trigger.journey_id,
            trigger.organization_id,
            trigger.type.value,
            json.dumps(trigger.config),
            int(trigger.enabled),
        )

    async def find_triggers_by_journey(
        self, organization_id: str, journey_id: str
    ) -> list[JourneyTrigger]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM journey_triggers WHERE journey_id = ? AND organization_id = ? ORDER BY rowid",
            journey_id,
            organization_id,
        )
        return [self._trigger(r) for r in rows]

    def _triggers_with_journeys(
        self, trigger_type: TriggerType, organization_id: Optional[str]
    ) -> list[TriggerWithJourney]:
        query = f"""
            SELECT t.id AS t_id, t.journey_id, t.organization_id AS t_org, t.type,
                   t.config, t.enabled,
                   {_JOINED_JOURNEY_COLUMNS}
            FROM journey_triggers t
            JOIN journeys j ON j.id = t.journey_id
            WHERE t.type = ? AND t.enabled = 1 AND j.status = 'active'
        """
        params: list[Any] = [trigger_type.value]
        if organization_id is not None:
            query += " AND t.organization_id = ?"
            params.append(organization_id)
        query += " ORDER BY t.rowid"
        pairs: list[TriggerWithJourney] = []
        for row in self._fetchall(query, *params):
            trigger = JourneyTrigger(
                id=row["t_id"],
                journey_id=row["journey_id"],
                organization_id=row["t_org"],
                type=row["type"],
                config=json.loads(row["config"]),
                enabled=bool(row["enabled"]),
            )
            journey = Journey(
                id=row["j_id"],
                organization_id=row["j_organization_id"],
                name=row["j_name"],
                description=row["j_description"],
                status=row["j_status"],
                created_by=row["j_created_by"],
                settings=JourneySettings.model_validate(json.loads(row["j_settings"])),
                created_at=_dt(row["j_created_at"]),
                updated_at=_dt(row["j_updated_at"]),
            )
            pairs.append((trigger, journey))
        return pairs

    async def find_triggers_by_type(
        self, organization_id: str, trigger_type: TriggerType
    ) -> list[TriggerWithJourney]:
        return await asyncio.to_thread(
            self._triggers_with_journeys, trigger_type, organization_id
        )

    async def find_active_journeys_with_segment_triggers(
        self,
    ) -> list[TriggerWithJourney]:
        return await asyncio.to_thread(
            self._triggers_with_journeys, TriggerType.SEGMENT, None
        )

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: JourneyExecution) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO journey_executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                execution.id,
                execution.journey_id,
                execution.version_id,
                execution.organization_id,
                execution.contact_id,
                execution.status.value,
                _ts(execution.started_at),
                _ts(execution.completed_at),
                execution.current_step_id,
            )
        except sqlite3.IntegrityError as exc:
            raise ExecutionAlreadyActive(
                f"Contact {execution.contact_id} already active in journey {execution.journey_id}"
            ) from exc

    async def save_execution(self, execution: JourneyExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE journey_executions SET status = ?, completed_at = ?, current_step_id = ? WHERE id = ?",
            execution.status.value,
            _ts(execution.completed_at),
            execution.current_step_id,
            execution.id,
        )

    async def find_execution_by_id(
        self, execution_id: str, organization_id: str
    ) -> JourneyExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM journey_executions WHERE id = ? AND organization_id = ?",
            execution_id,
            organization_id,
        )
        return self._execution(row) if row else None

    async def find_active_execution(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> JourneyExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM journey_executions
            WHERE organization_id = ? AND journey_id = ? AND contact_id = ? AND status = 'active'
            """,
            organization_id,
            journey_id,
            contact_id,
        )
        return self._execution(row) if row else None

    async def list_contact_executions(
        self, organization_id: str, journey_id: str, contact_id: str
    ) -> list[JourneyExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM journey_executions
            WHERE organization_id = ? AND journey_id = ? AND contact_id = ?
            ORDER BY started_at
            """,
            organization_id,
            journey_id,
            contact_id,
        )
        return [self._execution(r) for r in rows]

    async def find_stale_executions(self, older_than: datetime) -> list[JourneyExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM journey_executions
            WHERE status = 'active' AND started_at < ?
            ORDER BY started_at
            """,
            _ts(older_than),
        )
        return [self._execution(r) for r in rows]

    async def list_executions(
        self,
        organization_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[JourneyExecution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM journey_executions WHERE 1 = 1"
        params: list[Any] = []
        if organization_id is not None:
            query += " AND organization_id = ?"
            params.append(organization_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY started_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._execution(r) for r in rows]

    # ------------------------------------------------------------------
    # Step executions
    async def create_step_execution(self, step_execution: StepExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO step_executions ({_STEP_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            step_execution.id,
            step_execution.execution_id,
            step_execution.step_id,
            step_execution.organization_id,
            step_execution.status.value,
            _ts(step_execution.started_at),
            _ts(step_execution.completed_at),
            _json(step_execution.result),
            step_execution.error,
        )

    async def update_step_execution(self, step_execution: StepExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_executions
            SET status = ?, completed_at = ?, result = ?, error = ?
            WHERE id = ?
            """,
            step_execution.status.value,
            _ts(step_execution.completed_at),
            _json(step_execution.result),
            step_execution.error,
            step_execution.id,
        )

    async def list_step_executions(self, execution_id: str) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_EXECUTION_COLUMNS} FROM step_executions WHERE execution_id = ? ORDER BY started_at, rowid",
            execution_id,
        )
        return [self._step_execution(r) for r in rows]

    async def find_completed_step_execution(
        self, execution_id: str, step_id: str
    ) -> StepExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_STEP_EXECUTION_COLUMNS} FROM step_executions
            WHERE execution_id = ? AND step_id = ? AND status = 'completed'
            LIMIT 1
            """,
            execution_id,
            step_id,
        )
        return self._step_execution(row) if row else None

    # ------------------------------------------------------------------
    # Logs
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
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO execution_logs (id, execution_id, organization_id, level, message, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            entry.id,
            entry.execution_id,
            entry.organization_id,
            entry.level.value,
            entry.message,
            _json(entry.metadata),
            _ts(entry.created_at),
        )

    async def list_execution_logs(self, execution_id: str) -> list[ExecutionLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, execution_id, organization_id, level, message, metadata, created_at FROM execution_logs WHERE execution_id = ? ORDER BY seq",
            execution_id,
        )
        return [
            ExecutionLog(
                id=r["id"],
                execution_id=r["execution_id"],
                organization_id=r["organization_id"],
                level=r["level"],
                message=r["message"],
                metadata=_loads(r["metadata"]),
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
