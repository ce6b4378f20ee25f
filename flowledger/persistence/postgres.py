"""PostgreSQL implementation of the workflow repositories."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

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


def _json(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: str | None) -> Any:
    return json.loads(value) if value else None


class PostgresWorkflowStore(DefinitionLifecycleMixin):
    """Persist definitions, runs and events using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                name TEXT NOT NULL,
                definition JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_aliases (
                workflow_id TEXT PRIMARY KEY,
                draft_version INTEGER,
                published_version INTEGER,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version INTEGER NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_context JSONB,
                input JSONB,
                output JSONB,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                current_node_id TEXT,
                error TEXT,
                correlation_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_node_runs (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL REFERENCES workflow_runs (id),
                node_id TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                duration_ms INTEGER,
                UNIQUE (run_id, node_id, attempt)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_events (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                type TEXT NOT NULL,
                payload JSONB,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> None:
        conn = await self._connect()
        try:
            await conn.execute(query, *params)
        except asyncpg.UniqueViolationError as e:
            raise StorageError(str(e)) from e
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_version=row["workflow_version"],
            trigger_type=row["trigger_type"],
            trigger_context=_load(row["trigger_context"]) or {},
            input=_load(row["input"]) or {},
            output=_load(row["output"]),
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            current_node_id=row["current_node_id"],
            error=row["error"],
            correlation_id=row["correlation_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_node_run(row: asyncpg.Record) -> NodeRun:
        return NodeRun(
            id=row["id"],
            run_id=row["run_id"],
            node_id=row["node_id"],
            attempt=row["attempt"],
            status=row["status"],
            input=_load(row["input"]) or {},
            output=_load(row["output"]),
            error=row["error"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
        )

    # ------------------------------------------------------------------
    # Definitions
    async def _insert_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            "INSERT INTO workflows (id, version, status, name, definition, created_at, updated_at) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7)",
            definition.id,
            definition.version,
            definition.status.value,
            definition.name,
            json.dumps(definition.to_record()),
            definition.created_at,
            definition.updated_at,
        )

    async def _upsert_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, version, status, name, definition, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id, version) DO UPDATE SET
                status = EXCLUDED.status,
                name = EXCLUDED.name,
                definition = EXCLUDED.definition,
                updated_at = EXCLUDED.updated_at
            """,
            definition.id,
            definition.version,
            definition.status.value,
            definition.name,
            json.dumps(definition.to_record()),
            definition.created_at,
            definition.updated_at,
        )

    async def _save_alias(self, alias: WorkflowAlias) -> None:
        await self._execute(
            """
            INSERT INTO workflow_aliases (workflow_id, draft_version, published_version, updated_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (workflow_id) DO UPDATE SET
                draft_version = EXCLUDED.draft_version,
                published_version = EXCLUDED.published_version,
                updated_at = EXCLUDED.updated_at
            """,
            alias.workflow_id,
            alias.draft_version,
            alias.published_version,
            alias.updated_at,
        )

    async def _max_version(self, workflow_id: str) -> int:
        row = await self._fetchrow("SELECT MAX(version) AS version FROM workflows WHERE id = $1", workflow_id)
        return (row["version"] if row else None) or 0

    async def get_by_version(self, workflow_id: str, version: int) -> WorkflowDefinition | None:
        row = await self._fetchrow(
            "SELECT definition FROM workflows WHERE id = $1 AND version = $2", workflow_id, version
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate(json.loads(row["definition"]))

    async def get_alias(self, workflow_id: str) -> WorkflowAlias | None:
        row = await self._fetchrow(
            "SELECT workflow_id, draft_version, published_version, updated_at FROM workflow_aliases "
            "WHERE workflow_id = $1",
            workflow_id,
        )
        if not row:
            return None
        return WorkflowAlias(**dict(row))

    async def list_latest(self, limit: int = 100, offset: int = 0) -> list[WorkflowDefinition]:
        rows = await self._fetch(
            """
            SELECT w.definition FROM workflow_aliases a
            JOIN workflows w
              ON w.id = a.workflow_id
             AND w.version = COALESCE(a.published_version, a.draft_version)
            ORDER BY w.updated_at DESC
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
        )
        return [WorkflowDefinition.model_validate(json.loads(r["definition"])) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await self._execute(
            f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)",
            run.id,
            run.workflow_id,
            run.workflow_version,
            run.trigger_type,
            json.dumps(run.trigger_context),
            json.dumps(run.input),
            _json(run.output),
            run.status.value,
            run.started_at,
            run.completed_at,
            run.current_node_id,
            run.error,
            run.correlation_id,
            run.created_at,
            run.updated_at,
        )
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchrow(f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = $1", run_id)
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
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(RunStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        rows = await self._fetch(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs {where} "
            f"ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}",
            *params,
        )
        return [self._row_to_run(r) for r in rows]

    async def update_status(
        self, run_id: str, unless_status: Sequence[RunStatus] = (), **changes: Any
    ) -> WorkflowRun | None:
        values = validate_run_changes(changes)
        params: list[Any] = []
        assignments: list[str] = []
        for column, value in values.items():
            if column == "status":
                value = RunStatus(value).value
            elif column == "output":
                value = _json(value)
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")
        params.append(run_id)
        query = f"UPDATE workflow_runs SET {', '.join(assignments)} WHERE id = ${len(params)}"
        if unless_status:
            params.append([RunStatus(s).value for s in unless_status])
            query += f" AND NOT (status = ANY(${len(params)}::text[]))"
        row = await self._fetchrow(f"{query} RETURNING {_RUN_COLUMNS}", *params)
        if row is not None:
            return self._row_to_run(row)
        await self.get_run_or_raise(run_id)
        return None

    async def update_input(self, run_id: str, input: dict[str, Any]) -> WorkflowRun:
        run = await self.get_run_or_raise(run_id)
        await self._execute("UPDATE workflow_runs SET input = $1 WHERE id = $2", json.dumps(input), run_id)
        return run.model_copy(update={"input": dict(input)})

    async def create_node_run(self, node_run: NodeRun) -> NodeRun:
        await self.get_run_or_raise(node_run.run_id)
        await self._execute(
            f"INSERT INTO workflow_node_runs ({_NODE_RUN_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
            node_run.id,
            node_run.run_id,
            node_run.node_id,
            node_run.attempt,
            node_run.status.value,
            json.dumps(node_run.input, default=str),
            _json(node_run.output),
            node_run.error,
            node_run.started_at,
            node_run.completed_at,
            node_run.duration_ms,
        )
        return node_run

    async def update_node_run(self, node_run_id: str, **changes: Any) -> NodeRun:
        row = await self._fetchrow(
            f"SELECT {_NODE_RUN_COLUMNS} FROM workflow_node_runs WHERE id = $1", node_run_id
        )
        if not row:
            raise NodeRunNotFoundError(node_run_id)
        node_run = apply_node_run_changes(self._row_to_node_run(row), changes)
        await self._execute(
            """
            UPDATE workflow_node_runs
            SET status = $1, output = $2, error = $3, completed_at = $4, duration_ms = $5
            WHERE id = $6
            """,
            node_run.status.value,
            _json(node_run.output),
            node_run.error,
            node_run.completed_at,
            node_run.duration_ms,
            node_run_id,
        )
        return node_run

    async def get_node_runs(self, run_id: str) -> list[NodeRun]:
        rows = await self._fetch(
            f"SELECT {_NODE_RUN_COLUMNS} FROM workflow_node_runs WHERE run_id = $1 ORDER BY seq", run_id
        )
        return [self._row_to_node_run(r) for r in rows]

    # ------------------------------------------------------------------
    # Events
    async def append_event(
        self, run_id: str, type: EventType, payload: dict[str, Any] | None = None
    ) -> WorkflowEvent:
        event = WorkflowEvent(run_id=run_id, type=type, payload=payload or {})
        await self._execute(
            "INSERT INTO workflow_events (id, run_id, type, payload, created_at) VALUES ($1, $2, $3, $4, $5)",
            event.id,
            event.run_id,
            event.type.value,
            json.dumps(event.payload, default=str),
            event.created_at,
        )
        return event

    async def list_events(self, run_id: str, since: datetime | None = None) -> list[WorkflowEvent]:
        if since is None:
            rows = await self._fetch(
                "SELECT id, run_id, type, payload, created_at FROM workflow_events WHERE run_id = $1 ORDER BY seq",
                run_id,
            )
        else:
            rows = await self._fetch(
                "SELECT id, run_id, type, payload, created_at FROM workflow_events "
                "WHERE run_id = $1 AND created_at > $2 ORDER BY seq",
                run_id,
                since,
            )
        return [
            WorkflowEvent(
                id=r["id"],
                run_id=r["run_id"],
                type=r["type"],
                payload=_load(r["payload"]) or {},
                created_at=r["created_at"],
            )
            for r in rows
        ]
