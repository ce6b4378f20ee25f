"""Exception hierarchy for flowledger."""

from __future__ import annotations


class FlowLedgerError(Exception):
    """Base class for all flowledger errors."""


class ConfigurationError(FlowLedgerError):
    """Invalid static configuration (profiles, policies, config files)."""


class RetryProfileError(ConfigurationError):
    """Unknown retry profile name or an invalid merged policy."""


class WorkflowError(FlowLedgerError):
    """Execution-level error captured into run state instead of propagating."""


class WorkflowValidationError(WorkflowError):
    """Definition failed structural validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Workflow validation failed: {' | '.join(self.errors)}")


class NodeExecutionError(WorkflowError):
    """A single node attempt failed."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class UnsupportedNodeTypeError(NodeExecutionError):
    def __init__(self, node_id: str, node_type: str):
        self.node_type = node_type
        super().__init__(node_id, f"Unsupported node type: {node_type}")


class EmptyPromptError(NodeExecutionError):
    """A required prompt template resolved to an empty string."""


class NodeTimeoutError(NodeExecutionError):
    def __init__(self, node_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(node_id, f"Node timed out after {timeout_ms}ms")


class NodeConfigurationError(WorkflowError):
    """A node's retry policy or compensation block cannot be resolved."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} is misconfigured: {message}")


class NodeFailedError(WorkflowError):
    """A node failed with no attempts remaining."""

    def __init__(self, node_id: str, error: str | None):
        self.node_id = node_id
        self.error = error
        super().__init__(error or f"Node failed: {node_id}")


class ConditionSyntaxError(WorkflowError):
    """Condition expression could not be parsed."""

    def __init__(self, expression: str, message: str, position: int | None = None):
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid condition {expression!r}{where}: {message}")


class RunTimeoutError(WorkflowError):
    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Run timed out after {timeout_ms}ms")


class MaxStepsExceededError(WorkflowError):
    def __init__(self, max_steps: int):
        self.max_steps = max_steps
        super().__init__(f"Workflow exceeded max execution steps ({max_steps}).")


class ResumeIntegrityError(FlowLedgerError):
    """Checkpoint points at a node that no longer exists in the definition."""

    def __init__(self, run_id: str, node_id: str, workflow_version: int):
        self.run_id = run_id
        self.node_id = node_id
        self.workflow_version = workflow_version
        super().__init__(
            f"Run {run_id} cannot resume: checkpoint node {node_id!r} "
            f"does not exist in workflow version {workflow_version}"
        )


class StorageError(FlowLedgerError):
    """Repository-level failure."""


class RunNotFoundError(StorageError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run not found: {run_id}")


class NodeRunNotFoundError(StorageError):
    def __init__(self, node_run_id: str):
        self.node_run_id = node_run_id
        super().__init__(f"Workflow node run not found: {node_run_id}")


class WorkflowNotFoundError(StorageError):
    def __init__(self, workflow_id: str, version: int | None = None):
        self.workflow_id = workflow_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Workflow not found: {workflow_id}{suffix}")


class DefinitionNotFoundError(StorageError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow definition not found for run {run_id}")
