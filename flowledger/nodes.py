"""Node executor: performs the behaviour declared by a node's type."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .agent import AgentPromptExecutor, coerce_prompt_result
from .conditions import evaluate_condition
from .constants import DEFAULT_APPROVAL_REASON
from .contracts import NodeType, WorkflowDefaults, WorkflowNode
from .errors import EmptyPromptError, UnsupportedNodeTypeError
from .templates import resolve_template_string, resolve_template_value
from .utils.retry import sleep_ms

logger = logging.getLogger(__name__)

# Node types delegated to the agent through a synthesized instruction.
DISPATCH_NODE_TYPES = frozenset(
    {
        NodeType.TOOL,
        NodeType.MCP_TOOL,
        NodeType.CONNECTOR_TOOL,
        NodeType.MEMORY_READ,
        NodeType.MEMORY_WRITE,
        NodeType.NOTIFICATION,
        NodeType.SUBWORKFLOW,
    }
)


@dataclass
class NodeExecutionContext:
    """Everything a node can see while it executes."""

    run_context: Dict[str, Any]
    node_outputs: Dict[str, Any]
    execute_agent_prompt: AgentPromptExecutor
    defaults: Optional[WorkflowDefaults] = None

    def template_context(self) -> Dict[str, Any]:
        return {**self.run_context, "nodes": self.node_outputs}


@dataclass
class NodeExecutionResult:
    output: Dict[str, Any] = field(default_factory=dict)
    pause_requested: bool = False
    pause_reason: Optional[str] = None


Handler = Callable[[WorkflowNode, NodeExecutionContext], Awaitable[NodeExecutionResult]]


def _str_option(config: Dict[str, Any], key: str, fallback: Optional[str] = None) -> Optional[str]:
    value = config.get(key)
    return value if isinstance(value, str) and value else fallback


def _int_option(config: Dict[str, Any], key: str) -> Optional[int]:
    value = config.get(key)
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


class WorkflowNodeExecutor:
    """Dispatch node execution by ``NodeType``.

    The set of behaviours is closed: every ``NodeType`` member has exactly one
    handler, and anything else fails with ``UnsupportedNodeTypeError``.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = sleep_ms) -> None:
        self._sleep = sleep
        self._handlers: Dict[NodeType, Handler] = {
            NodeType.START: self._run_marker,
            NodeType.END: self._run_marker,
            NodeType.WAIT: self._run_wait,
            NodeType.CONDITION: self._run_condition,
            NodeType.APPROVAL: self._run_approval,
            NodeType.AGENT_STEP: self._run_agent_step,
            NodeType.PARALLEL: self._run_passthrough,
            NodeType.LOOP: self._run_passthrough,
        }
        for node_type in DISPATCH_NODE_TYPES:
            self._handlers[node_type] = self._run_dispatch
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for node types: {sorted(t.value for t in missing)}")

    async def execute(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        try:
            node_type = NodeType(node.type)
        except ValueError:
            raise UnsupportedNodeTypeError(node.id, node.type) from None
        return await self._handlers[node_type](node, context)

    # ------------------------------------------------------------------
    async def _run_marker(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult(output={"ok": True})

    async def _run_wait(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        raw = node.config.get("duration_ms", 0)
        resolved = resolve_template_value(raw, context.template_context()).value
        try:
            duration_ms = max(0, int(float(resolved or 0)))
        except (TypeError, ValueError):
            duration_ms = 0
        await self._sleep(duration_ms)
        return NodeExecutionResult(output={"waited_ms": duration_ms})

    async def _run_condition(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        expression = str(node.config.get("expression") or "").strip()
        result = evaluate_condition(expression, context.template_context())
        return NodeExecutionResult(output={"expression": expression, "result": result})

    async def _run_approval(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        approvals = context.run_context.get("approvals") or {}
        approved = bool(node.config.get("auto_approve")) or approvals.get(node.id) is True
        if approved:
            return NodeExecutionResult(output={"approved": True})

        reason = str(node.config.get("reason") or DEFAULT_APPROVAL_REASON)
        return NodeExecutionResult(
            output={"approved": False, "paused": True, "reason": reason},
            pause_requested=True,
            pause_reason=reason,
        )

    async def _run_agent_step(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        template = str(node.config.get("prompt_template") or node.config.get("prompt") or "").strip()
        resolved = resolve_template_string(template, context.template_context())
        prompt = resolved.value.strip()
        if not prompt:
            raise EmptyPromptError(node.id, f"agent_step node {node.id} has an empty prompt_template.")

        defaults = context.defaults or WorkflowDefaults()
        result = coerce_prompt_result(
            await context.execute_agent_prompt(
                prompt,
                working_directory=_str_option(node.config, "working_directory", defaults.working_directory),
                model=_str_option(node.config, "model", defaults.model),
                max_turns=_int_option(node.config, "max_turns"),
            )
        )
        return NodeExecutionResult(
            output={
                "text": result.content,
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
                "missing_paths": resolved.missing_paths,
            }
        )

    async def _run_dispatch(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        config = {k: v for k, v in node.config.items() if k != "compensation"}
        resolved = resolve_template_value(config, context.template_context())
        resolved_config: Dict[str, Any] = resolved.value
        prompt = build_dispatch_prompt(node, resolved_config)

        defaults = context.defaults or WorkflowDefaults()
        result = coerce_prompt_result(
            await context.execute_agent_prompt(
                prompt,
                working_directory=_str_option(resolved_config, "working_directory", defaults.working_directory),
                model=_str_option(resolved_config, "model", defaults.model),
                max_turns=_int_option(resolved_config, "max_turns"),
            )
        )
        return NodeExecutionResult(output={"text": result.content, "missing_paths": resolved.missing_paths})

    async def _run_passthrough(self, node: WorkflowNode, context: NodeExecutionContext) -> NodeExecutionResult:
        # TODO: real fan-out for parallel and iteration for loop nodes
        logger.info(f"Node {node.id} ({node.type}) executed in compatibility mode")
        return NodeExecutionResult(
            output={
                "passthrough": True,
                "node_type": node.type,
                "note": f"{node.type} node executed in compatibility mode",
            }
        )


def build_dispatch_prompt(node: WorkflowNode, resolved_config: Dict[str, Any]) -> str:
    """Describe a tool-like node as a natural-language instruction."""
    return "\n".join(
        [
            f"Execute workflow node type: {node.type}",
            f"Node name: {node.name}",
            f"Node config JSON: {json.dumps(resolved_config, default=str)}",
            "Use available tools as needed and return a concise JSON summary in your final response.",
        ]
    )
