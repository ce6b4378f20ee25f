"""Workflow service: definition lifecycle and run control on top of the engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .agent import AgentPromptExecutor, PydanticAIPromptExecutor
from .compiler import validate_workflow_definition
from .config import FlowLedgerConfig
from .contracts import (
    AgentPromptResult,
    EventType,
    RunDetails,
    RunStatus,
    ValidationReport,
    WorkflowDefinition,
    WorkflowDraftInput,
    WorkflowDraftUpdate,
    WorkflowEvent,
    WorkflowRun,
    WorkflowStatus,
    new_id,
    utcnow,
)
from .engine import RepositoryDefinitionResolver, WorkflowEngine
from .errors import WorkflowNotFoundError, WorkflowValidationError
from .persistence import WorkflowStore
from .schedules import (
    SCHEDULE_TRIGGER,
    Schedule,
    ScheduledTaskSummary,
    as_utc,
    next_run_at,
    runs_between,
    schedule_triggers,
)

logger = logging.getLogger(__name__)

CANCEL_REASON = "Cancelled by user"
_IN_FLIGHT = (RunStatus.QUEUED, RunStatus.RUNNING)
_SETTLED = (RunStatus.COMPLETED, RunStatus.CANCELLED)


class WorkflowService:
    """Facade used by the CLI and embedding applications.

    Only one driver executes a given run at a time inside this process; a
    second request to drive an active run returns the run as it is.
    """

    def __init__(
        self,
        store: WorkflowStore,
        execute_agent_prompt: Optional[AgentPromptExecutor] = None,
        config: Optional[FlowLedgerConfig] = None,
    ):
        self.store = store
        self.config = config or FlowLedgerConfig()
        self._prompt_executor = execute_agent_prompt
        self.engine = WorkflowEngine(
            runs=store,
            events=store,
            execute_agent_prompt=self._execute_agent_prompt,
            resolver=RepositoryDefinitionResolver(store),
            config=self.config.engine,
        )
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    async def _execute_agent_prompt(
        self,
        prompt: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> AgentPromptResult:
        # the default executor needs model credentials, so build it on first use
        if self._prompt_executor is None:
            self._prompt_executor = PydanticAIPromptExecutor(
                model=self.config.agent.model, instructions=self.config.agent.instructions
            )
        return await self._prompt_executor(
            prompt, working_directory=working_directory, model=model, max_turns=max_turns
        )

    # ------------------------------------------------------------------
    # Definitions
    async def create_draft(self, draft: WorkflowDraftInput, created_by: Optional[str] = None) -> WorkflowDefinition:
        definition = await self.store.create_draft(draft, created_by=created_by)
        logger.info(f"Created workflow draft {definition.id} ({definition.name})")
        return definition

    async def update_draft(self, workflow_id: str, updates: WorkflowDraftUpdate) -> WorkflowDefinition:
        return await self.store.update_draft(workflow_id, updates)

    def validate_draft(self, definition: WorkflowDefinition) -> ValidationReport:
        return validate_workflow_definition(definition)

    async def validate(self, workflow_id: str, version: Optional[int] = None) -> ValidationReport:
        return self.validate_draft(await self.get_workflow(workflow_id, version))

    async def publish(self, workflow_id: str) -> WorkflowDefinition:
        draft = await self.store.get_draft(workflow_id)
        if draft is None:
            raise WorkflowNotFoundError(workflow_id)
        report = validate_workflow_definition(draft)
        if not report.valid:
            raise WorkflowValidationError(report.errors)
        published = await self.store.publish(workflow_id)
        logger.info(f"Published workflow {workflow_id} as version {published.version}")
        return published

    async def archive(self, workflow_id: str) -> WorkflowDefinition:
        archived = await self.store.archive(workflow_id)
        logger.info(f"Archived workflow {workflow_id} version {archived.version}")
        return archived

    async def list_workflows(self, limit: int = 100, offset: int = 0) -> List[WorkflowDefinition]:
        return await self.store.list_latest(limit=limit, offset=offset)

    async def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        definition = await self.store.get(workflow_id, version)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id, version)
        return definition

    # ------------------------------------------------------------------
    # Runs
    async def start_run(
        self,
        workflow_id: str,
        version: Optional[int] = None,
        input: Optional[Dict[str, Any]] = None,
        trigger_type: str = "manual",
        trigger_context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        background: bool = False,
    ) -> WorkflowRun:
        """Create a queued run of ``workflow_id`` and drive it.

        Without a pinned ``version`` the published version is used, falling
        back to the draft. Archived and invalid definitions are refused. With
        ``background=True`` the run is driven in a task and the queued run is
        returned immediately.
        """
        if version is not None:
            definition = await self.store.get_by_version(workflow_id, version)
        else:
            definition = await self.store.get_published(workflow_id) or await self.store.get_draft(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id, version)
        if definition.status == WorkflowStatus.ARCHIVED:
            raise WorkflowValidationError([f"Workflow is archived and cannot be run: {workflow_id}"])
        report = validate_workflow_definition(definition)
        if not report.valid:
            raise WorkflowValidationError(report.errors)

        run_fields: Dict[str, Any] = {
            "workflow_id": definition.id,
            "workflow_version": definition.version,
            "trigger_type": trigger_type,
            "trigger_context": trigger_context or {},
            "input": input or {},
        }
        if correlation_id:
            run_fields["correlation_id"] = correlation_id
        run = await self.store.create_run(WorkflowRun(**run_fields))
        logger.info(f"Queued run {run.id} for workflow {definition.id} v{definition.version}")

        if background:
            task = asyncio.create_task(self.execute_run(run.id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return run
        return await self.execute_run(run.id)

    async def execute_run(self, run_id: str) -> WorkflowRun:
        """Drive ``run_id`` unless another driver in this process already is."""
        lock = self._run_locks.setdefault(run_id, asyncio.Lock())
        if lock.locked():
            logger.warning(f"Run {run_id} is already being driven; skipping duplicate execution")
            return await self.store.get_run_or_raise(run_id)
        async with lock:
            try:
                return await self.engine.execute(run_id)
            finally:
                self._run_locks.pop(run_id, None)

    @property
    def active_run_ids(self) -> set[str]:
        return {run_id for run_id, lock in self._run_locks.items() if lock.locked()}

    async def wait_for_background_runs(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WorkflowRun]:
        return await self.store.list_runs(workflow_id=workflow_id, status=status, limit=limit, offset=offset)

    async def get_run(self, run_id: str) -> RunDetails:
        return await self.engine.get_run_with_details(run_id)

    async def get_run_events(self, run_id: str, since: Optional[datetime] = None) -> List[WorkflowEvent]:
        await self.store.get_run_or_raise(run_id)
        return await self.store.list_events(run_id, since=since)

    async def cancel_run(self, run_id: str, reason: str = CANCEL_REASON) -> WorkflowRun:
        updated = await self.store.update_status(
            run_id,
            unless_status=_SETTLED,
            status=RunStatus.CANCELLED,
            completed_at=utcnow(),
            error=reason,
        )
        if updated is None:
            run = await self.store.get_run_or_raise(run_id)
            logger.info(f"Run {run_id} is already {run.status.value}; not cancelling")
            return run
        await self.store.append_event(run_id, EventType.RUN_CANCELLED, {"reason": reason})
        logger.info(f"Cancelled run {run_id}")
        return updated

    async def approve(self, run_id: str, node_id: Optional[str] = None) -> WorkflowRun:
        """Record an approval for ``node_id`` (default: the run cursor) and re-drive."""
        run = await self.store.get_run_or_raise(run_id)
        node_id = node_id or run.current_node_id
        if node_id:
            current_input = dict(run.input)
            approvals = dict(current_input.get("approvals") or {})
            approvals[node_id] = True
            current_input["approvals"] = approvals
            await self.store.update_input(run_id, current_input)
            logger.info(f"Approved node {node_id} of run {run_id}")
        return await self.execute_run(run_id)

    async def resume_run(self, run_id: str) -> WorkflowRun:
        """Re-drive a run from its last checkpoint."""
        return await self.execute_run(run_id)

    async def recover_in_flight_runs(self) -> List[WorkflowRun]:
        """Re-drive queued and running runs left over from a previous process.

        Runs waiting on an approval are left alone; checkpoints make the
        re-drive skip every node that already completed.
        """
        candidates: List[WorkflowRun] = []
        for status in _IN_FLIGHT:
            offset = 0
            while True:
                batch = await self.store.list_runs(status=status, limit=100, offset=offset)
                if not batch:
                    break
                candidates.extend(batch)
                offset += len(batch)

        recovered: List[WorkflowRun] = []
        for run in candidates:
            if run.id in self.active_run_ids or await self._awaiting_approval(run.id):
                continue
            logger.info(f"Recovering in-flight run {run.id} ({run.status.value})")
            recovered.append(await self.execute_run(run.id))
        return recovered

    async def _awaiting_approval(self, run_id: str) -> bool:
        events = await self.store.list_events(run_id)
        return bool(events) and events[-1].type == EventType.RUN_PAUSED

    # ------------------------------------------------------------------
    # Schedules
    async def backfill_schedule(self, workflow_id: str, start: datetime, end: datetime) -> List[WorkflowRun]:
        """Queue one run per fire time of every enabled schedule trigger in ``[start, end]``.

        Runs are pinned to the published version and driven in the
        background; ``wait_for_background_runs`` waits for them.
        """
        definition = await self.store.get_published(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)

        queued: List[WorkflowRun] = []
        for trigger in schedule_triggers(definition):
            if not trigger.enabled:
                continue
            for scheduled_at in runs_between(trigger.schedule, start, end):
                run = await self.start_run(
                    workflow_id,
                    version=definition.version,
                    trigger_type=SCHEDULE_TRIGGER,
                    trigger_context={
                        "trigger_id": trigger.id,
                        "scheduled_at": scheduled_at.isoformat(),
                        "backfill": True,
                    },
                    correlation_id=new_id("wf_backfill"),
                    background=True,
                )
                queued.append(run)
        logger.info(f"Queued {len(queued)} backfill runs for workflow {workflow_id} v{definition.version}")
        return queued

    async def run_due_schedules(self, now: Optional[datetime] = None) -> List[WorkflowRun]:
        """Start a run for every enabled schedule trigger whose fire time has passed.

        The next fire time is computed from the trigger's latest scheduled run,
        or from when the version was published. Missed fire times collapse
        into a single run, and ``max_runs`` caps the non-backfill runs.
        """
        now = as_utc(now or utcnow())
        started: List[WorkflowRun] = []
        for definition in await self._scheduled_workflows():
            runs = await self._all_runs(definition.id)
            for trigger in schedule_triggers(definition):
                if not trigger.enabled:
                    continue
                fired = [
                    datetime.fromisoformat(run.trigger_context["scheduled_at"])
                    for run in runs
                    if run.trigger_type == SCHEDULE_TRIGGER
                    and run.trigger_context.get("trigger_id") == trigger.id
                    and "scheduled_at" in run.trigger_context
                    and not run.trigger_context.get("backfill")
                ]
                if trigger.max_runs is not None and len(fired) >= trigger.max_runs:
                    continue
                due = _latest_due(trigger.schedule, max(fired, default=definition.created_at), now)
                if due is None:
                    continue
                run = await self.start_run(
                    definition.id,
                    version=definition.version,
                    trigger_type=SCHEDULE_TRIGGER,
                    trigger_context={"trigger_id": trigger.id, "scheduled_at": due.isoformat()},
                    background=True,
                )
                logger.info(f"Schedule trigger {trigger.id} of workflow {definition.id} fired for {due.isoformat()}")
                started.append(run)
        return started

    async def list_scheduled_tasks(
        self, limit: int = 100, offset: int = 0, now: Optional[datetime] = None
    ) -> List[ScheduledTaskSummary]:
        """Summarise published workflows that declare schedule triggers."""
        now = as_utc(now or utcnow())
        summaries: List[ScheduledTaskSummary] = []
        for definition in await self._scheduled_workflows():
            triggers = schedule_triggers(definition)
            upcoming = [next_run_at(t.schedule, now) for t in triggers if t.enabled]
            runs = await self._all_runs(definition.id)
            last = runs[0] if runs else None
            summaries.append(
                ScheduledTaskSummary(
                    workflow_id=definition.id,
                    workflow_version=definition.version,
                    name=definition.name,
                    status=definition.status.value,
                    schedules=[t.schedule for t in triggers],
                    enabled=any(t.enabled for t in triggers),
                    next_run_at=min((t for t in upcoming if t is not None), default=None),
                    run_count=len(runs),
                    last_run_at=(last.completed_at or last.started_at or last.created_at) if last else None,
                    last_run_status=last.status.value if last else None,
                )
            )
        return summaries[offset : offset + limit]

    async def _scheduled_workflows(self) -> List[WorkflowDefinition]:
        workflows: List[WorkflowDefinition] = []
        offset = 0
        while True:
            batch = await self.store.list_latest(limit=100, offset=offset)
            if not batch:
                return workflows
            workflows.extend(
                d
                for d in batch
                if d.status == WorkflowStatus.PUBLISHED and any(t.type == SCHEDULE_TRIGGER for t in d.triggers)
            )
            offset += len(batch)

    async def _all_runs(self, workflow_id: str) -> List[WorkflowRun]:
        runs: List[WorkflowRun] = []
        while True:
            batch = await self.store.list_runs(workflow_id=workflow_id, limit=100, offset=len(runs))
            if not batch:
                return runs
            runs.extend(batch)


def _latest_due(schedule: Schedule, anchor: datetime, now: datetime) -> Optional[datetime]:
    """Latest fire time in ``(anchor, now]``, if any."""
    due = next_run_at(schedule, anchor)
    if due is None or due > now:
        return None
    while True:
        following = next_run_at(schedule, due)
        if following is None or following > now:
            return due
        due = following
