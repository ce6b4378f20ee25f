"""Repository abstractions for workflow definitions, runs and events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from pydantic import BaseModel, ValidationError

from ..contracts import (
    EventType,
    NodeRun,
    NodeRunStatus,
    RunStatus,
    WorkflowAlias,
    WorkflowDefinition,
    WorkflowDraftInput,
    WorkflowDraftUpdate,
    WorkflowEvent,
    WorkflowRun,
    WorkflowStatus,
    WorkflowTrigger,
    default_edges,
    default_nodes,
    new_id,
    utcnow,
)
from ..errors import StorageError, WorkflowNotFoundError

# Fields of a run that the engine is allowed to change after creation.
RUN_MUTABLE_FIELDS = frozenset(
    {"status", "started_at", "completed_at", "current_node_id", "error", "output"}
)
NODE_RUN_MUTABLE_FIELDS = frozenset({"status", "output", "error", "completed_at", "duration_ms"})


class RunRepository(Protocol):
    """Persistence for runs and their append-only node-run history."""

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Return the run or ``None``."""

    async def get_run_or_raise(self, run_id: str) -> WorkflowRun:
        """Return the run or raise ``RunNotFoundError``."""

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowRun]:
        """Return runs, newest first."""

    async def update_status(
        self, run_id: str, unless_status: Sequence[RunStatus] = (), **changes: Any
    ) -> WorkflowRun | None:
        """Write only the columns named in ``changes``.

        When the stored status is one of ``unless_status`` nothing is written
        and ``None`` is returned. The check and the write are one atomic step.
        """

    async def update_input(self, run_id: str, input: dict[str, Any]) -> WorkflowRun:
        """Replace the run input (used to record approvals)."""

    async def create_node_run(self, node_run: NodeRun) -> NodeRun:
        """Persist a new node-run row; ``(run_id, node_id, attempt)`` is unique."""

    async def update_node_run(self, node_run_id: str, **changes: Any) -> NodeRun:
        """Finalize a running node-run. Terminal rows cannot be changed."""

    async def get_node_runs(self, run_id: str) -> list[NodeRun]:
        """Return node-runs ordered by start time then attempt."""


class EventRepository(Protocol):
    """Append-only run event log."""

    async def append_event(
        self, run_id: str, type: EventType, payload: dict[str, Any] | None = None
    ) -> WorkflowEvent:
        """Append an event."""

    async def list_events(self, run_id: str, since: datetime | None = None) -> list[WorkflowEvent]:
        """Return events for ``run_id`` in creation order."""


class DefinitionRepository(Protocol):
    """Versioned workflow definitions with draft/published aliases."""

    async def create_draft(
        self,
        draft: WorkflowDraftInput,
        created_by: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Create version 1 of a new workflow as a draft."""

    async def update_draft(self, workflow_id: str, updates: WorkflowDraftUpdate) -> WorkflowDefinition:
        """Update the current draft in place."""

    async def publish(self, workflow_id: str) -> WorkflowDefinition:
        """Copy the current draft into a new published version."""

    async def archive(self, workflow_id: str) -> WorkflowDefinition:
        """Mark the current version archived."""

    async def get(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition | None:
        """Return a pinned version, else published, else draft."""

    async def get_by_version(self, workflow_id: str, version: int) -> WorkflowDefinition | None:
        """Return one exact version."""

    async def get_draft(self, workflow_id: str) -> WorkflowDefinition | None:
        """Return the current draft version."""

    async def get_published(self, workflow_id: str) -> WorkflowDefinition | None:
        """Return the current published version."""

    async def get_alias(self, workflow_id: str) -> WorkflowAlias | None:
        """Return the draft/published pointers."""

    async def list_latest(self, limit: int = 100, offset: int = 0) -> list[WorkflowDefinition]:
        """Return the current version of every workflow."""


class DefinitionLifecycleMixin:
    """Draft/publish/archive logic shared by every backend.

    Backends provide the storage primitives; version numbering and alias
    bookkeeping live here.
    """

    async def _insert_definition(self, definition: WorkflowDefinition) -> None:
        raise NotImplementedError

    async def _upsert_definition(self, definition: WorkflowDefinition) -> None:
        raise NotImplementedError

    async def _save_alias(self, alias: WorkflowAlias) -> None:
        raise NotImplementedError

    async def _max_version(self, workflow_id: str) -> int:
        raise NotImplementedError

    async def get_by_version(self, workflow_id: str, version: int) -> WorkflowDefinition | None:
        raise NotImplementedError

    async def get_alias(self, workflow_id: str) -> WorkflowAlias | None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    async def create_draft(
        self,
        draft: WorkflowDraftInput,
        created_by: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        workflow_id = workflow_id or new_id("wf")
        values = draft.model_dump(exclude_none=True, by_alias=True)
        values.setdefault("triggers", [WorkflowTrigger(id=new_id("trg"), type="manual").model_dump()])
        definition = WorkflowDefinition.model_validate(
            {
                **values,
                "id": workflow_id,
                "version": 1,
                "status": WorkflowStatus.DRAFT,
                "created_by": created_by,
            }
        )
        if draft.nodes is None and draft.edges is None:
            definition = definition.model_copy(update={"nodes": default_nodes(), "edges": default_edges()})
        await self._insert_definition(definition)
        await self._save_alias(WorkflowAlias(workflow_id=workflow_id, draft_version=1))
        return definition

    async def update_draft(self, workflow_id: str, updates: WorkflowDraftUpdate) -> WorkflowDefinition:
        draft = await self.get_draft(workflow_id)
        if draft is None:
            raise WorkflowNotFoundError(workflow_id)
        changes = updates.model_dump(exclude_none=True, by_alias=True)
        updated = WorkflowDefinition.model_validate(
            {**draft.to_record(), **changes, "status": WorkflowStatus.DRAFT, "updated_at": utcnow()}
        )
        await self._upsert_definition(updated)
        alias = await self.get_alias(workflow_id)
        await self._save_alias(
            WorkflowAlias(
                workflow_id=workflow_id,
                draft_version=draft.version,
                published_version=alias.published_version if alias else None,
            )
        )
        return updated

    async def publish(self, workflow_id: str) -> WorkflowDefinition:
        draft = await self.get_draft(workflow_id)
        if draft is None:
            raise WorkflowNotFoundError(workflow_id)
        next_version = await self._max_version(workflow_id) + 1
        now = utcnow()
        published = draft.model_copy(
            update={
                "version": next_version,
                "status": WorkflowStatus.PUBLISHED,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )
        await self._insert_definition(published)
        await self._save_alias(
            WorkflowAlias(
                workflow_id=workflow_id,
                draft_version=draft.version,
                published_version=next_version,
            )
        )
        return published

    async def archive(self, workflow_id: str) -> WorkflowDefinition:
        existing = await self.get(workflow_id)
        if existing is None:
            raise WorkflowNotFoundError(workflow_id)
        archived = existing.model_copy(
            update={"status": WorkflowStatus.ARCHIVED, "updated_at": utcnow()}, deep=True
        )
        await self._upsert_definition(archived)
        return archived

    async def get(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition | None:
        if version is not None:
            return await self.get_by_version(workflow_id, version)
        alias = await self.get_alias(workflow_id)
        if alias is None:
            return None
        if alias.published_version:
            return await self.get_by_version(workflow_id, alias.published_version)
        if alias.draft_version:
            return await self.get_by_version(workflow_id, alias.draft_version)
        return None

    async def get_draft(self, workflow_id: str) -> WorkflowDefinition | None:
        alias = await self.get_alias(workflow_id)
        if alias is None or not alias.draft_version:
            return None
        return await self.get_by_version(workflow_id, alias.draft_version)

    async def get_published(self, workflow_id: str) -> WorkflowDefinition | None:
        alias = await self.get_alias(workflow_id)
        if alias is None or not alias.published_version:
            return None
        return await self.get_by_version(workflow_id, alias.published_version)


class RunChanges(BaseModel):
    """Typed view of the mutable run columns."""

    status: Optional[RunStatus] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_node_id: Optional[str] = None
    error: Optional[str] = None
    output: Optional[dict[str, Any]] = None


def validate_run_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Check ``changes`` against the mutable run fields and coerce their values.

    Returns only the fields named in ``changes`` plus a fresh ``updated_at``.
    """
    unknown = set(changes) - RUN_MUTABLE_FIELDS
    if unknown:
        raise StorageError(f"Cannot update run fields: {', '.join(sorted(unknown))}")
    if "status" in changes and changes["status"] is None:
        raise StorageError("Run status cannot be cleared")
    try:
        parsed = RunChanges.model_validate(changes)
    except ValidationError as e:
        raise StorageError(f"Invalid run changes: {e}") from e
    values = {name: getattr(parsed, name) for name in changes}
    values["updated_at"] = utcnow()
    return values


def apply_run_changes(run: WorkflowRun, changes: dict[str, Any]) -> WorkflowRun:
    """Validate ``changes`` against the mutable run fields and apply them."""
    return WorkflowRun.model_validate({**run.model_dump(), **validate_run_changes(changes)})


def apply_node_run_changes(node_run: NodeRun, changes: dict[str, Any]) -> NodeRun:
    """Apply ``changes`` to a running node-run; terminal rows are immutable."""
    unknown = set(changes) - NODE_RUN_MUTABLE_FIELDS
    if unknown:
        raise StorageError(f"Cannot update node-run fields: {', '.join(sorted(unknown))}")
    if node_run.status != NodeRunStatus.RUNNING:
        raise StorageError(f"Node run {node_run.id} is already {node_run.status.value}")
    return NodeRun.model_validate({**node_run.model_dump(), **changes})
