"""Core data contracts for flowledger workflows, runs and audit records."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import CHECKPOINT_KEY, RUNTIME_KEY


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeRunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_CANCELLED = "run_cancelled"
    NODE_STARTED = "node_started"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"


class NodeType(str, Enum):
    """Closed set of node behaviours understood by the node executor."""

    START = "start"
    END = "end"
    WAIT = "wait"
    CONDITION = "condition"
    APPROVAL = "approval"
    AGENT_STEP = "agent_step"
    TOOL = "tool"
    MCP_TOOL = "mcp_tool"
    CONNECTOR_TOOL = "connector_tool"
    MEMORY_READ = "memory_read"
    MEMORY_WRITE = "memory_write"
    NOTIFICATION = "notification"
    SUBWORKFLOW = "subworkflow"
    PARALLEL = "parallel"
    LOOP = "loop"


class EdgeCondition(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ALWAYS = "always"
    CUSTOM = "custom"


# ----------------------------------------------------------------------
# Retry and compensation


class RetryPolicy(BaseModel):
    """Concrete retry policy for a node."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_ms: int = Field(default=1000, ge=0)
    max_backoff_ms: int = Field(default=20000, ge=0)
    jitter_ratio: float = Field(default=0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_cap(self) -> "RetryPolicy":
        if self.max_backoff_ms < self.backoff_ms:
            raise ValueError("max_backoff_ms must be >= backoff_ms")
        return self


class RetryOverrides(BaseModel):
    """Partial retry policy; fields left unset fall back to the profile."""

    max_attempts: Optional[int] = None
    backoff_ms: Optional[int] = None
    max_backoff_ms: Optional[int] = None
    jitter_ratio: Optional[float] = None


class CompensationConfig(BaseModel):
    enabled: bool = False
    strategy: str = "before_retry"
    prompt_template: str = ""
    max_turns: Optional[int] = None


# ----------------------------------------------------------------------
# Definitions


class WorkflowTrigger(BaseModel):
    """Stored trigger declaration. Type-specific fields are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str = "manual"
    enabled: bool = True


class WorkflowNode(BaseModel):
    id: str
    # Kept as a plain string so that unknown types reach the executor and
    # fail there as a node failure.
    type: str
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    retry_profile: Optional[str] = None
    retry: Optional[RetryOverrides] = None
    compensation: Optional[CompensationConfig] = None
    critical: bool = True

    def compensation_config(self) -> Optional[CompensationConfig]:
        """Return the compensation block declared on the node or in its config."""
        if self.compensation is not None:
            return self.compensation
        raw = self.config.get("compensation")
        if isinstance(raw, dict):
            return CompensationConfig.model_validate(raw)
        return None


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: str = Field(alias="from")
    to: str
    condition: str = EdgeCondition.SUCCESS.value
    expression: Optional[str] = None
    label: Optional[str] = None

    def condition_expression(self) -> Optional[str]:
        """Expression to evaluate, or ``None`` for structural conditions."""
        if self.condition == EdgeCondition.CUSTOM.value:
            return (self.expression or "").strip()
        if self.condition in (
            EdgeCondition.SUCCESS.value,
            EdgeCondition.FAILURE.value,
            EdgeCondition.ALWAYS.value,
        ):
            return None
        return self.condition.strip()


class WorkflowDefaults(BaseModel):
    working_directory: Optional[str] = None
    model: Optional[str] = None
    # Unset limits fall back to the engine configuration.
    max_run_time_ms: Optional[int] = Field(default=None, gt=0)
    node_timeout_ms: Optional[int] = Field(default=None, gt=0)
    retry_profile: Optional[str] = None
    retry: Optional[RetryPolicy] = None


def default_nodes() -> List[WorkflowNode]:
    return [
        WorkflowNode(id="start", type=NodeType.START.value, name="Start"),
        WorkflowNode(id="end", type=NodeType.END.value, name="End"),
    ]


def default_edges() -> List[WorkflowEdge]:
    return [WorkflowEdge(id="edge_start_end", from_="start", to="end", condition="always")]


class WorkflowDefinition(BaseModel):
    """One immutable version of a workflow graph."""

    id: str
    version: int = Field(default=1, gt=0)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    schema_version: str = "1"
    triggers: List[WorkflowTrigger] = Field(default_factory=list)
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    defaults: WorkflowDefaults = Field(default_factory=WorkflowDefaults)
    permissions_profile: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def to_record(self) -> dict[str, Any]:
        """JSON-compatible dump that keeps edge ``from`` keys."""
        return self.model_dump(mode="json", by_alias=True)


class WorkflowDraftInput(BaseModel):
    """Fields accepted when creating a draft."""

    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    triggers: Optional[List[WorkflowTrigger]] = None
    nodes: Optional[List[WorkflowNode]] = None
    edges: Optional[List[WorkflowEdge]] = None
    defaults: Optional[WorkflowDefaults] = None
    permissions_profile: Optional[str] = None


class WorkflowDraftUpdate(BaseModel):
    """Fields accepted when updating a draft in place."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    triggers: Optional[List[WorkflowTrigger]] = None
    nodes: Optional[List[WorkflowNode]] = None
    edges: Optional[List[WorkflowEdge]] = None
    defaults: Optional[WorkflowDefaults] = None
    permissions_profile: Optional[str] = None


class WorkflowAlias(BaseModel):
    """Pointers to the current draft and published versions of a workflow."""

    workflow_id: str
    draft_version: Optional[int] = None
    published_version: Optional[int] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Runs


class Checkpoint(BaseModel):
    """Durable marker of the last definitely-completed node of a run."""

    step: int = Field(ge=0)
    completed_node_id: str
    next_node_id: Optional[str] = None
    node_run_id: str
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    id: str = Field(default_factory=lambda: new_id("run"))
    workflow_id: str
    workflow_version: int
    trigger_type: str = "manual"
    trigger_context: Dict[str, Any] = Field(default_factory=dict)
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    status: RunStatus = RunStatus.QUEUED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_node_id: Optional[str] = None
    error: Optional[str] = None
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def checkpoint(self) -> Optional[Checkpoint]:
        runtime = (self.output or {}).get(RUNTIME_KEY) or {}
        raw = runtime.get(CHECKPOINT_KEY)
        if not raw:
            return None
        return Checkpoint.model_validate(raw)


def with_checkpoint(output: Optional[Dict[str, Any]], checkpoint: Checkpoint) -> Dict[str, Any]:
    """Return a copy of ``output`` carrying ``checkpoint`` under ``__runtime``."""
    updated = dict(output or {})
    runtime = dict(updated.get(RUNTIME_KEY) or {})
    runtime[CHECKPOINT_KEY] = checkpoint.model_dump(mode="json")
    updated[RUNTIME_KEY] = runtime
    return updated


class NodeRun(BaseModel):
    """One attempt of one node within a run."""

    id: str = Field(default_factory=lambda: new_id("nr"))
    run_id: str
    node_id: str
    attempt: int = Field(ge=1)
    status: NodeRunStatus = NodeRunStatus.RUNNING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class WorkflowEvent(BaseModel):
    id: str = Field(default_factory=lambda: new_id("evt"))
    run_id: str
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class RunDetails(BaseModel):
    run: WorkflowRun
    node_runs: List[NodeRun] = Field(default_factory=list)
    events: List[WorkflowEvent] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Agent integration


class AgentPromptResult(BaseModel):
    """Result returned by an agent prompt executor."""

    content: str = ""
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
