"""In-memory implementation of the workflow repositories."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

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
from .repository import DefinitionLifecycleMixin, apply_node_run_changes, apply_run_changes


class InMemoryWorkflowStore(DefinitionLifecycleMixin):
    """Store definitions, runs and events in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Returned models are copies, so
    callers never share state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._aliases: Dict[str, WorkflowAlias] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._node_runs: Dict[str, NodeRun] = {}
        self._events: Dict[str, List[WorkflowEvent]] = {}

    # ------------------------------------------------------------------
    # Definitions
    async def _insert_definition(self, definition: WorkflowDefinition) -> None:
        key = (definition.id, definition.version)
        if key in self._definitions:
            raise StorageError(f"Workflow {definition.id} version {definition.version} already exists")
        self._definitions[key] = definition.model_copy(deep=True)

    async def _upsert_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[(definition.id, definition.version)] = definition.model_copy(deep=True)

    async def _save_alias(self, alias: WorkflowAlias) -> None:
        self._aliases[alias.workflow_id] = alias.model_copy()

    async def _max_version(self, workflow_id: str) -> int:
        return max((version for wf_id, version in self._definitions if wf_id == workflow_id), default=0)

    async def get_by_version(self, workflow_id: str, version: int) -> WorkflowDefinition | None:
        definition = self._definitions.get((workflow_id, version))
        return definition.model_copy(deep=True) if definition else None

    async def get_alias(self, workflow_id: str) -> WorkflowAlias | None:
        alias = self._aliases.get(workflow_id)
        return alias.model_copy() if alias else None

    async def list_latest(self, limit: int = 100, offset: int = 0) -> list[WorkflowDefinition]:
        latest = [await self.get(workflow_id) for workflow_id in self._aliases]
        latest = [d for d in latest if d is not None]
        latest.sort(key=lambda d: d.updated_at, reverse=True)
        return latest[offset : offset + limit]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        if run.id in self._runs:
            raise StorageError(f"Workflow run already exists: {run.id}")
        self._runs[run.id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

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
        runs = [
            r
            for r in self._runs.values()
            if (workflow_id is None or r.workflow_id == workflow_id) and (status is None or r.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[offset : offset + limit]]

    async def update_status(
        self, run_id: str, unless_status: Sequence[RunStatus] = (), **changes: Any
    ) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status in unless_status:
            return None
        updated = apply_run_changes(run, changes)
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    async def update_input(self, run_id: str, input: dict[str, Any]) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        self._runs[run_id] = run.model_copy(update={"input": dict(input)}, deep=True)
        return self._runs[run_id].model_copy(deep=True)

    async def create_node_run(self, node_run: NodeRun) -> NodeRun:
        if node_run.run_id not in self._runs:
            raise RunNotFoundError(node_run.run_id)
        for existing in self._node_runs.values():
            if (existing.run_id, existing.node_id, existing.attempt) == (
                node_run.run_id,
                node_run.node_id,
                node_run.attempt,
            ):
                raise StorageError(
                    f"Node run for {node_run.node_id} attempt {node_run.attempt} already exists in run {node_run.run_id}"
                )
        self._node_runs[node_run.id] = node_run.model_copy(deep=True)
        return node_run.model_copy(deep=True)

    async def update_node_run(self, node_run_id: str, **changes: Any) -> NodeRun:
        node_run = self._node_runs.get(node_run_id)
        if node_run is None:
            raise NodeRunNotFoundError(node_run_id)
        updated = apply_node_run_changes(node_run, changes)
        self._node_runs[node_run_id] = updated
        return updated.model_copy(deep=True)

    async def get_node_runs(self, run_id: str) -> list[NodeRun]:
        # insertion order is start order
        return [nr.model_copy(deep=True) for nr in self._node_runs.values() if nr.run_id == run_id]

    # ------------------------------------------------------------------
    # Events
    async def append_event(
        self, run_id: str, type: EventType, payload: dict[str, Any] | None = None
    ) -> WorkflowEvent:
        event = WorkflowEvent(run_id=run_id, type=type, payload=payload or {})
        self._events.setdefault(run_id, []).append(event)
        return event.model_copy(deep=True)

    async def list_events(self, run_id: str, since: datetime | None = None) -> list[WorkflowEvent]:
        return [
            e.model_copy(deep=True)
            for e in self._events.get(run_id, [])
            if since is None or e.created_at > since
        ]
