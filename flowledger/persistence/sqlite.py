"""SQLite implementation of the workflow repositories."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

from ..contracts import (
    EventType,
    NodeRun,
    RunStatus,
    WorkflowAlias,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowRun,
)
from ..errors import NodeRunNotFoundError, RunNotFoundError, StorageError
from .repository import DefinitionLifecycleMixin, apply_node_run_changes, validate_run_changes

_RUN_COLUMNS = (
    "id, workflow_id, workflow_version, trigger_type, trigger_context, input, output, status, "
    "started_at, completed_at, current_node_id, error, correlation_id, created_at, updated_at"
)
_NODE_RUN_COLUMNS = (
    "id, run_id, node_id, attempt, status, input, output, error, started_at, completed_at, duration_ms"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _json(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: str | None) -> Any:
    return json.loads(value) if value else None


def _run_column(column: str, value: Any) -> Any:
    if column == "status":
        return RunStatus(value).value
    if column == "output":
        return _json(value)
    if isinstance(value, datetime):
        return _ts(value)
    return value


class SQLiteWorkflowStore(DefinitionLifecycleMixin):
    """Persist definitions, runs and events using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                name TEXT NOT NULL,
                definition TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (id, version)
            );
            CREATE TABLE IF NOT EXISTS workflow_aliases (
                workflow_id TEXT PRIMARY KEY,
                draft_version INTEGER,
                published_version INTEGER,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version INTEGER NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_context TEXT,
                input TEXT,
                output TEXT,
                status TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                current_node_id TEXT,
                error TEXT,
                correlation_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_workflow_runs_status ON workflow_runs (status);
            CREATE TABLE IF NOT EXISTS workflow_node_runs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                duration_ms INTEGER,
                UNIQUE (run_id, node_id, attempt)
            );
            CREATE TABLE IF NOT EXISTS workflow_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                type TEXT NOT NULL,
                payload TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_workflow_events_run ON workflow_events (run_id, seq);
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        try:
            cur.execute(query, params)
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise StorageError(str(e)) from e
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_version=row["workflow_version"],
            trigger_type=row["trigger_type"],
            trigger_context=_load(row["trigger_context"]) or {},
            input=_load(row["input"]) or {},
            output=_load(row["output"]),
            status=row["status"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            current_node_id=row["current_node_id"],
            error=row["error"],
            correlation_id=row["correlation_id"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_node_run(row: sqlite3.Row) -> NodeRun:
        return NodeRun(
            id=row["id"],
            run_id=row["run_id"],
            node_id=row["node_id"],
            attempt=row["attempt"],
            status=row["status"],
            input=_load(row["input"]) or {},
            output=_load(row["output"]),
            error=row["error"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            duration_ms=row["duration_ms"],
        )

    # ------------------------------------------------------------------
    # Definitions
    async def _insert_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflows (id, version, status, name, definition, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            definition.id,
            definition.version,
            definition.status.value,
            definition.name,
            json.dumps(definition.to_record()),
            _ts(definition.created_at),
            _ts(definition.updated_at),
        )

    async def _upsert_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, version, status, name, definition, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id, version) DO UPDATE SET
                status = excluded.status,
                name = excluded.name,
                definition = excluded.definition,
                updated_at = excluded.updated_at
            """,
            definition.id,
            definition.version,
            definition.status.value,
            definition.name,
            json.dumps(definition.to_record()),
            _ts(definition.created_at),
            _ts(definition.updated_at),
        )

    async def _save_alias(self, alias: WorkflowAlias) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_aliases (workflow_id, draft_version, published_version, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (workflow_id) DO UPDATE SET
                draft_version = excluded.draft_version,
                published_version = excluded.published_version,
                updated_at = excluded.updated_at
            """,
            alias.workflow_id,
            alias.draft_version,
            alias.published_version,
            _ts(alias.updated_at),
        )

    async def _max_version(self, workflow_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT MAX(version) AS version FROM workflows WHERE id = ?", workflow_id
        )
        return (row["version"] if row else None) or 0

    async def get_by_version(self, workflow_id: str, version: int) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition FROM workflows WHERE id = ? AND version = ?",
            workflow_id,
            version,
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate(json.loads(row["definition"]))

    async def get_alias(self, workflow_id: str) -> WorkflowAlias | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT workflow_id, draft_version, published_version, updated_at FROM workflow_aliases "
            "WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            return None
        return WorkflowAlias(
            workflow_id=row["workflow_id"],
            draft_version=row["draft_version"],
            published_version=row["published_version"],
            updated_at=_dt(row["updated_at"]),
        )

    async def list_latest(self, limit: int = 100, offset: int = 0) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT w.definition FROM workflow_aliases a
            JOIN workflows w
              ON w.id = a.workflow_id
             AND w.version = COALESCE(a.published_version, a.draft_version)
            ORDER BY w.updated_at DESC
            LIMIT ? OFFSET ?
            """,
            limit,
            offset,
        )
        return [WorkflowDefinition.model_validate(json.loads(r["definition"])) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.workflow_id,
            run.workflow_version,
            run.trigger_type,
            json.dumps(run.trigger_context),
            json.dumps(run.input),
            _json(run.output),
            run.status.value,
            _ts(run.started_at),
            _ts(run.completed_at),
            run.current_node_id,
            run.error,
            run.correlation_id,
            _ts(run.created_at),
            _ts(run.updated_at),
        )
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = ?", run_id
        )
        return self._row_to_run(row) if row else None

    async def get_run_or_raise(self, run_id: str) -> WorkflowRun:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowRun]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            *params,
            limit,
            offset,
        )
        return [self._row_to_run(r) for r in rows]

    async def update_status(
        self, run_id: str, unless_status: Sequence[RunStatus] = (), **changes: Any
    ) -> WorkflowRun | None:
        values = validate_run_changes(changes)
        assignments = ", ".join(f"{column} = ?" for column in values)
        params = [_run_column(column, value) for column, value in values.items()]
        params.append(run_id)
        query = f"UPDATE workflow_runs SET {assignments} WHERE id = ?"
        if unless_status:
            query += f" AND status NOT IN ({', '.join('?' for _ in unless_status)})"
            params.extend(RunStatus(s).value for s in unless_status)
        updated = await asyncio.to_thread(self._execute, query, *params)
        run = await self.get_run_or_raise(run_id)
        return run if updated else None

    async def update_input(self, run_id: str, input: dict[str, Any]) -> WorkflowRun:
        run = await self.get_run_or_raise(run_id)
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_runs SET input = ? WHERE id = ?",
            json.dumps(input),
            run_id,
        )
        return run.model_copy(update={"input": dict(input)})

    async def create_node_run(self, node_run: NodeRun) -> NodeRun:
        await self.get_run_or_raise(node_run.run_id)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_node_runs ({_NODE_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            node_run.id,
            node_run.run_id,
            node_run.node_id,
            node_run.attempt,
            node_run.status.value,
            json.dumps(node_run.input, default=str),
            _json(node_run.output),
            node_run.error,
            _ts(node_run.started_at),
            _ts(node_run.completed_at),
            node_run.duration_ms,
        )
        return node_run

    async def update_node_run(self, node_run_id: str, **changes: Any) -> NodeRun:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_NODE_RUN_COLUMNS} FROM workflow_node_runs WHERE id = ?",
            node_run_id,
        )
        if not row:
            raise NodeRunNotFoundError(node_run_id)
        node_run = apply_node_run_changes(self._row_to_node_run(row), changes)
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_node_runs
            SET status = ?, output = ?, error = ?, completed_at = ?, duration_ms = ?
            WHERE id = ?
            """,
            node_run.status.value,
            _json(node_run.output),
            node_run.error,
            _ts(node_run.completed_at),
            node_run.duration_ms,
            node_run_id,
        )
        return node_run

    async def get_node_runs(self, run_id: str) -> list[NodeRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_NODE_RUN_COLUMNS} FROM workflow_node_runs WHERE run_id = ? ORDER BY seq",
            run_id,
        )
        return [self._row_to_node_run(r) for r in rows]

    # ------------------------------------------------------------------
    # Events
    async def append_event(
        self, run_id: str, type: EventType, payload: dict[str, Any] | None = None
    ) -> WorkflowEvent:
        event = WorkflowEvent(run_id=run_id, type=type, payload=payload or {})
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_events (id, run_id, type, payload, created_at) VALUES (?, ?, ?, ?, ?)",
            event.id,
            event.run_id,
            event.type.value,
            json.dumps(event.payload, default=str),
            _ts(event.created_at),
        )
        return event

    async def list_events(self, run_id: str, since: datetime | None = None) -> list[WorkflowEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, run_id, type, payload, created_at FROM workflow_events WHERE run_id = ? ORDER BY seq",
            run_id,
        )
        events = [
            WorkflowEvent(
                id=r["id"],
                run_id=r["run_id"],
                type=r["type"],
                payload=_load(r["payload"]) or {},
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
        if since is not None:
            events = [e for e in events if e.created_at > since]
        return events
