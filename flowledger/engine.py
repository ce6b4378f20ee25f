"""Workflow engine: drives a run through its compiled graph.

A run advances one node at a time. Every successful node writes a checkpoint
into ``run.output["__runtime"]`` before the next node starts, so a run that is
re-driven after a crash or restart continues from the recorded cursor and never
re-executes the node the checkpoint marks as completed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Tuple, Union

from pydantic import ValidationError

from .agent import AgentPromptExecutor, coerce_prompt_result
from .compiler import CompiledWorkflow, compile_workflow_definition
from .conditions import evaluate_condition
from .config import EngineConfig
from .constants import RESUME_REASON_CHECKPOINT, RUNTIME_KEY
from .contracts import (
    Checkpoint,
    CompensationConfig,
    EdgeCondition,
    EventType,
    NodeRun,
    NodeRunStatus,
    NodeType,
    RetryPolicy,
    RunDetails,
    RunStatus,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    WorkflowRun,
    utcnow,
    with_checkpoint,
)
from .errors import (
    DefinitionNotFoundError,
    MaxStepsExceededError,
    NodeConfigurationError,
    NodeFailedError,
    NodeTimeoutError,
    ResumeIntegrityError,
    RetryProfileError,
    RunTimeoutError,
    WorkflowError,
)
from .nodes import NodeExecutionContext, NodeExecutionResult, WorkflowNodeExecutor
from .persistence.repository import DefinitionRepository, EventRepository, RunRepository
from .templates import resolve_template_string
from .utils.retry import compute_retry_delay, resolve_node_policy, sleep_ms

logger = logging.getLogger(__name__)

TERMINAL_RUN_STATUSES = (RunStatus.COMPLETED, RunStatus.CANCELLED)


class _RunCancelled(Exception):
    """A guarded run write found the run cancelled."""


# ----------------------------------------------------------------------
# Definition resolution


@dataclass
class ResolvedDefinition:
    definition: WorkflowDefinition
    compiled: CompiledWorkflow


class DefinitionResolver(Protocol):
    async def resolve(self, run: WorkflowRun) -> ResolvedDefinition: ...


class RepositoryDefinitionResolver:
    """Resolve the definition version a run is pinned to from a repository."""

    def __init__(self, definitions: DefinitionRepository):
        self.definitions = definitions
        self._compiled: Dict[Tuple[str, int], CompiledWorkflow] = {}

    async def resolve(self, run: WorkflowRun) -> ResolvedDefinition:
        definition = await self.definitions.get_by_version(run.workflow_id, run.workflow_version)
        if definition is None:
            raise DefinitionNotFoundError(run.id)
        key = (definition.id, definition.version)
        compiled = self._compiled.get(key)
        # drafts are edited in place and keep their version number
        if compiled is None or compiled.definition.updated_at != definition.updated_at:
            compiled = compile_workflow_definition(definition)
            self._compiled[key] = compiled
        return ResolvedDefinition(definition=definition, compiled=compiled)


class StaticDefinitionResolver:
    """Resolve runs against a fixed set of in-memory definitions."""

    def __init__(self, definitions: Union[WorkflowDefinition, Iterable[WorkflowDefinition]]):
        if isinstance(definitions, WorkflowDefinition):
            definitions = [definitions]
        self._definitions = {(d.id, d.version): d for d in definitions}

    async def resolve(self, run: WorkflowRun) -> ResolvedDefinition:
        definition = self._definitions.get((run.workflow_id, run.workflow_version))
        if definition is None:
            raise DefinitionNotFoundError(run.id)
        return ResolvedDefinition(definition=definition, compiled=compile_workflow_definition(definition))


# ----------------------------------------------------------------------
# Engine


@dataclass
class RunContextState:
    run_context: Dict[str, Any]
    node_outputs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeOutcome:
    """Result of driving one node through its retry policy."""

    node_run: NodeRun
    succeeded: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    pause_requested: bool = False
    pause_reason: Optional[str] = None
    cancelled: bool = False


class WorkflowEngine:
    """Execute workflow runs against their pinned definition version."""

    def __init__(
        self,
        runs: RunRepository,
        events: EventRepository,
        execute_agent_prompt: AgentPromptExecutor,
        resolver: Optional[DefinitionResolver] = None,
        node_executor: Optional[WorkflowNodeExecutor] = None,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = sleep_ms,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runs = runs
        self.events = events
        self.execute_agent_prompt = execute_agent_prompt
        self.resolver = resolver
        self.config = config or EngineConfig()
        self.node_executor = node_executor or WorkflowNodeExecutor(sleep=sleep)
        self._sleep = sleep
        self._clock = clock

    def set_definition_resolver(self, resolver: DefinitionResolver) -> None:
        self.resolver = resolver

    async def get_run_with_details(self, run_id: str) -> RunDetails:
        run = await self.runs.get_run_or_raise(run_id)
        return RunDetails(
            run=run,
            node_runs=await self.runs.get_node_runs(run_id),
            events=await self.events.list_events(run_id),
        )

    # ------------------------------------------------------------------
    async def execute(self, run_id: str) -> WorkflowRun:
        """Drive ``run_id`` until it completes, fails, pauses or is cancelled.

        Raises:
            RunNotFoundError: If the run does not exist.
            DefinitionNotFoundError: If the pinned definition cannot be found.
            ResumeIntegrityError: If the checkpoint cursor is not in the definition.
        """
        run = await self.runs.get_run_or_raise(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            logger.info(f"Run {run_id} is already {run.status.value}; nothing to do")
            return run
        if self.resolver is None:
            raise DefinitionNotFoundError(run_id)

        try:
            resolved = await self.resolver.resolve(run)
        except WorkflowError as e:
            return await self._fail_run(run, str(e), node_id=run.current_node_id)

        definition, compiled = resolved.definition, resolved.compiled
        checkpoint = run.checkpoint
        if checkpoint is not None:
            if checkpoint.next_node_id is not None and checkpoint.next_node_id not in compiled.nodes:
                raise ResumeIntegrityError(run.id, checkpoint.next_node_id, run.workflow_version)
            cursor: Optional[str] = checkpoint.next_node_id
            step = checkpoint.step
        else:
            cursor = run.current_node_id or compiled.start_node_id
            if cursor not in compiled.nodes:
                raise ResumeIntegrityError(run.id, cursor, run.workflow_version)
            step = 0

        state = await self._build_context_state(run, definition)
        started = await self.runs.update_status(
            run.id,
            unless_status=TERMINAL_RUN_STATUSES,
            status=RunStatus.RUNNING,
            started_at=run.started_at or utcnow(),
            completed_at=None,
            current_node_id=cursor,
            error=None,
        )
        if started is None:
            run = await self.runs.get_run_or_raise(run_id)
            logger.info(f"Run {run_id} became {run.status.value} before it started; nothing to do")
            return run
        run = started
        await self.events.append_event(
            run.id,
            EventType.RUN_STARTED,
            {"workflow_id": run.workflow_id, "workflow_version": run.workflow_version},
        )
        if checkpoint is not None:
            logger.info(
                f"Resuming run {run.id} from checkpoint step {checkpoint.step} "
                f"(completed={checkpoint.completed_node_id}, next={checkpoint.next_node_id})"
            )
            await self.events.append_event(
                run.id,
                EventType.RUN_RESUMED,
                {
                    "reason": RESUME_REASON_CHECKPOINT,
                    "step": checkpoint.step,
                    "completed_node_id": checkpoint.completed_node_id,
                    "next_node_id": checkpoint.next_node_id,
                },
            )

        run_timeout_ms = definition.defaults.max_run_time_ms or self.config.default_run_timeout_ms
        deadline = self._clock() + run_timeout_ms / 1000
        max_steps = self.config.max_execution_steps

        try:
            while cursor is not None:
                if await self._is_cancelled(run.id):
                    return await self.runs.get_run_or_raise(run.id)
                if self._clock() > deadline:
                    raise RunTimeoutError(run_timeout_ms)
                if step >= max_steps:
                    raise MaxStepsExceededError(max_steps)

                node = compiled.nodes[cursor]
                run = await self._update_active_run(run.id, current_node_id=node.id)
                outcome = await self._execute_node_with_retry(run, definition, node, state)
                if outcome.cancelled:
                    return await self.runs.get_run_or_raise(run.id)

                if outcome.pause_requested:
                    await self.events.append_event(
                        run.id,
                        EventType.RUN_PAUSED,
                        {"node_id": node.id, "reason": outcome.pause_reason},
                    )
                    logger.info(f"Run {run.id} paused at node {node.id}: {outcome.pause_reason}")
                    return await self.runs.get_run_or_raise(run.id)

                if outcome.succeeded:
                    state.node_outputs[node.id] = outcome.output

                next_edge = None
                if node.type != NodeType.END.value:
                    next_edge = self._select_next_edge(compiled, node, outcome, state)
                if not outcome.succeeded and next_edge is None:
                    raise NodeFailedError(node.id, outcome.error)

                step += 1
                next_node_id = next_edge.to if next_edge is not None else None
                await self._write_checkpoint(
                    run.id,
                    Checkpoint(
                        step=step,
                        completed_node_id=node.id,
                        next_node_id=next_node_id,
                        node_run_id=outcome.node_run.id,
                    ),
                )
                if outcome.succeeded:
                    await self.events.append_event(
                        run.id,
                        EventType.NODE_SUCCEEDED,
                        {
                            "node_id": node.id,
                            "attempt": outcome.node_run.attempt,
                            "duration_ms": outcome.node_run.duration_ms,
                            "pause_requested": False,
                            "next_node_id": next_node_id,
                        },
                    )
                cursor = next_node_id

            if await self._is_cancelled(run.id):
                return await self.runs.get_run_or_raise(run.id)
            return await self._complete_run(run.id, state, step)
        except _RunCancelled:
            logger.info(f"Run {run.id} was cancelled while running; stopping at node {cursor}")
            return await self.runs.get_run_or_raise(run.id)
        except WorkflowError as e:
            if await self._is_cancelled(run.id):
                return await self.runs.get_run_or_raise(run.id)
            return await self._fail_run(run, str(e), node_id=cursor)

    # ------------------------------------------------------------------
    async def _build_context_state(self, run: WorkflowRun, definition: WorkflowDefinition) -> RunContextState:
        node_outputs: Dict[str, Any] = {}
        for node_run in await self.runs.get_node_runs(run.id):
            if node_run.status == NodeRunStatus.SUCCEEDED and node_run.output is not None:
                node_outputs[node_run.node_id] = node_run.output

        approvals = run.input.get("approvals")
        return RunContextState(
            run_context={
                "run": {"id": run.id, "input": run.input, "trigger_context": run.trigger_context},
                "trigger": run.trigger_context,
                "approvals": approvals if isinstance(approvals, dict) else {},
                "system": {"now": utcnow().isoformat()},
                "workflow": {"id": definition.id, "version": definition.version},
            },
            node_outputs=node_outputs,
        )

    def _resolve_node_settings(
        self, definition: WorkflowDefinition, node: WorkflowNode
    ) -> Tuple[RetryPolicy, Optional[CompensationConfig]]:
        try:
            return resolve_node_policy(definition, node), node.compensation_config()
        except RetryProfileError as e:
            raise NodeConfigurationError(node.id, str(e)) from e
        except ValidationError as e:
            reasons = "; ".join(err["msg"] for err in e.errors())
            raise NodeConfigurationError(node.id, f"invalid compensation block: {reasons}") from e

    async def _execute_node_with_retry(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        state: RunContextState,
    ) -> NodeOutcome:
        # resolved before any node-run row is created
        policy, compensation = self._resolve_node_settings(definition, node)
        timeout_ms = node.timeout_ms or definition.defaults.node_timeout_ms or self.config.default_node_timeout_ms
        prior_attempts = [nr.attempt for nr in await self.runs.get_node_runs(run.id) if nr.node_id == node.id]
        attempt_offset = max(prior_attempts, default=0)
        context = NodeExecutionContext(
            run_context=state.run_context,
            node_outputs=state.node_outputs,
            execute_agent_prompt=self.execute_agent_prompt,
            defaults=definition.defaults,
        )

        outcome: Optional[NodeOutcome] = None
        for local_attempt in range(1, policy.max_attempts + 1):
            if outcome is not None and await self._is_cancelled(run.id):
                outcome.cancelled = True
                return outcome

            attempt = attempt_offset + local_attempt
            node_run = await self.runs.create_node_run(
                NodeRun(
                    run_id=run.id,
                    node_id=node.id,
                    attempt=attempt,
                    input={"run_input": run.input, "node_config": node.config},
                )
            )
            await self.events.append_event(
                run.id,
                EventType.NODE_STARTED,
                {"node_id": node.id, "attempt": attempt, "node_type": node.type},
            )

            started = self._clock()
            try:
                result: NodeExecutionResult = await asyncio.wait_for(
                    self.node_executor.execute(node, context), timeout=timeout_ms / 1000
                )
            except asyncio.TimeoutError:
                error: Exception = NodeTimeoutError(node.id, timeout_ms)
            except Exception as e:  # any node failure is retried under the policy
                error = e
            else:
                node_run = await self.runs.update_node_run(
                    node_run.id,
                    status=NodeRunStatus.SUCCEEDED,
                    output=result.output,
                    completed_at=utcnow(),
                    duration_ms=self._elapsed_ms(started),
                )
                if result.pause_requested:
                    await self.events.append_event(
                        run.id,
                        EventType.NODE_SUCCEEDED,
                        {
                            "node_id": node.id,
                            "attempt": attempt,
                            "duration_ms": node_run.duration_ms,
                            "pause_requested": True,
                        },
                    )
                return NodeOutcome(
                    node_run=node_run,
                    succeeded=True,
                    output=result.output,
                    pause_requested=result.pause_requested,
                    pause_reason=result.pause_reason,
                )

            message = str(error) or error.__class__.__name__
            will_retry = local_attempt < policy.max_attempts
            logger.warning(f"Node {node.id} attempt {attempt} failed in run {run.id}: {message}")

            failure_output: Optional[Dict[str, Any]] = None
            if will_retry and compensation and compensation.enabled and compensation.strategy == "before_retry":
                failure_output = {
                    "compensation": await self._apply_compensation(
                        run, definition, node, compensation, state, message, attempt
                    )
                }

            node_run = await self.runs.update_node_run(
                node_run.id,
                status=NodeRunStatus.FAILED,
                error=message,
                output=failure_output,
                completed_at=utcnow(),
                duration_ms=self._elapsed_ms(started),
            )
            compensation_applied = bool(failure_output and failure_output["compensation"].get("applied"))
            await self.events.append_event(
                run.id,
                EventType.NODE_FAILED,
                {
                    "node_id": node.id,
                    "attempt": attempt,
                    "error": message,
                    "duration_ms": node_run.duration_ms,
                    "will_retry": will_retry,
                    "compensation_applied": compensation_applied,
                },
            )
            outcome = NodeOutcome(node_run=node_run, succeeded=False, error=message)

            if will_retry:
                await self._sleep(compute_retry_delay(policy, local_attempt))

        return outcome

    async def _apply_compensation(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        compensation: CompensationConfig,
        state: RunContextState,
        error: str,
        attempt: int,
    ) -> Dict[str, Any]:
        template_context = {
            **state.run_context,
            "nodes": state.node_outputs,
            "compensation": {"node_id": node.id, "error": error, "attempt": attempt},
        }
        prompt = resolve_template_string(compensation.prompt_template, template_context).value.strip()
        if not prompt:
            logger.warning(f"Compensation for node {node.id} skipped: empty prompt_template")
            return {"applied": False, "error": "Compensation prompt_template resolved to an empty string."}

        try:
            result = coerce_prompt_result(
                await self.execute_agent_prompt(
                    prompt,
                    working_directory=definition.defaults.working_directory,
                    model=definition.defaults.model,
                    max_turns=compensation.max_turns,
                )
            )
        except Exception as e:  # recorded on the node-run, the retry still happens
            logger.warning(f"Compensation for node {node.id} in run {run.id} failed: {e}")
            return {"applied": False, "error": str(e)}
        logger.info(f"Compensation applied for node {node.id} in run {run.id} before retry")
        return {"applied": True, "text": result.content}

    def _select_next_edge(
        self,
        compiled: CompiledWorkflow,
        node: WorkflowNode,
        outcome: NodeOutcome,
        state: RunContextState,
    ) -> Optional[WorkflowEdge]:
        """Return the first outgoing edge, in declaration order, that matches.

        A failed outcome only reaches here for non-critical nodes; critical
        failures never follow an edge.
        """
        if not outcome.succeeded and node.critical:
            return None

        for edge in compiled.edges_from(node.id):
            if edge.condition == EdgeCondition.ALWAYS.value:
                return edge
            if edge.condition == EdgeCondition.SUCCESS.value:
                if outcome.succeeded:
                    return edge
                continue
            if edge.condition == EdgeCondition.FAILURE.value:
                if not outcome.succeeded:
                    return edge
                continue

            expression = edge.condition_expression()
            current = outcome.output if outcome.succeeded else {"error": outcome.error}
            context = {**state.run_context, "nodes": state.node_outputs, "current": current}
            if expression and evaluate_condition(expression, context):
                return edge
        return None

    async def _update_active_run(self, run_id: str, **changes: Any) -> WorkflowRun:
        """Write ``changes`` unless the run has been cancelled meanwhile."""
        run = await self.runs.update_status(run_id, unless_status=(RunStatus.CANCELLED,), **changes)
        if run is None:
            raise _RunCancelled(run_id)
        return run

    async def _write_checkpoint(self, run_id: str, checkpoint: Checkpoint) -> None:
        run = await self.runs.get_run_or_raise(run_id)
        await self._update_active_run(run_id, output=with_checkpoint(run.output, checkpoint))

    async def _is_cancelled(self, run_id: str) -> bool:
        run = await self.runs.get_run(run_id)
        return run is not None and run.status == RunStatus.CANCELLED

    async def _complete_run(self, run_id: str, state: RunContextState, steps: int) -> WorkflowRun:
        current = await self.runs.get_run_or_raise(run_id)
        runtime = (current.output or {}).get(RUNTIME_KEY, {})
        run = await self._update_active_run(
            run_id,
            status=RunStatus.COMPLETED,
            completed_at=utcnow(),
            current_node_id=None,
            error=None,
            output={"nodes": state.node_outputs, "steps": steps, RUNTIME_KEY: runtime},
        )
        await self.events.append_event(run_id, EventType.RUN_COMPLETED, {"steps": steps})
        logger.info(f"Run {run_id} completed after {steps} steps")
        return run

    async def _fail_run(self, run: WorkflowRun, error: str, node_id: Optional[str] = None) -> WorkflowRun:
        updated = await self.runs.update_status(
            run.id,
            unless_status=TERMINAL_RUN_STATUSES,
            status=RunStatus.FAILED,
            completed_at=utcnow(),
            error=error,
        )
        if updated is None:
            current = await self.runs.get_run_or_raise(run.id)
            logger.info(f"Run {run.id} is already {current.status.value}; not recording failure: {error}")
            return current
        await self.events.append_event(run.id, EventType.RUN_FAILED, {"error": error, "node_id": node_id})
        logger.error(f"Run {run.id} failed at node {node_id}: {error}")
        return updated

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))
