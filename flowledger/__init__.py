"""flowledger: Durable, resumable workflow execution for AI agent steps."""

from .agent import PydanticAIPromptExecutor
from .compiler import compile_workflow_definition, validate_workflow_definition
from .contracts import (
    NodeType,
    RunStatus,
    WorkflowDefinition,
    WorkflowDraftInput,
    WorkflowEdge,
    WorkflowNode,
    WorkflowRun,
)
from .engine import RepositoryDefinitionResolver, StaticDefinitionResolver, WorkflowEngine
from .persistence import get_repository
from .service import WorkflowService

__version__ = "0.1.0"
__all__ = [
    "NodeType",
    "RunStatus",
    "WorkflowDefinition",
    "WorkflowDraftInput",
    "WorkflowEdge",
    "WorkflowNode",
    "WorkflowRun",
    "WorkflowEngine",
    "WorkflowService",
    "RepositoryDefinitionResolver",
    "StaticDefinitionResolver",
    "PydanticAIPromptExecutor",
    "compile_workflow_definition",
    "validate_workflow_definition",
    "get_repository",
]
