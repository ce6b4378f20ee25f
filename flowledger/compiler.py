"""Validation and compilation of workflow definitions into an executable graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from pydantic import ValidationError

from .conditions import parse_condition
from .contracts import (
    EdgeCondition,
    NodeType,
    ValidationReport,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from .errors import ConditionSyntaxError, RetryProfileError, WorkflowValidationError
from .schedules import SCHEDULE_TRIGGER, ScheduleTrigger
from .utils.retry import RETRY_PROFILES, resolve_node_policy

_KNOWN_TYPES = {t.value for t in NodeType}


@dataclass
class CompiledWorkflow:
    definition: WorkflowDefinition
    start_node_id: str
    nodes: Dict[str, WorkflowNode] = field(default_factory=dict)
    outgoing: Dict[str, List[WorkflowEdge]] = field(default_factory=dict)
    incoming_count: Dict[str, int] = field(default_factory=dict)

    def edges_from(self, node_id: str) -> List[WorkflowEdge]:
        return self.outgoing.get(node_id, [])


def validate_workflow_definition(definition: WorkflowDefinition) -> ValidationReport:
    """Check that the node/edge graph is well formed."""
    errors: list[str] = []
    warnings: list[str] = []

    if not definition.name.strip():
        errors.append("Workflow name is required.")
    if not definition.nodes:
        errors.append("Workflow must include at least one node.")

    default_profile = definition.defaults.retry_profile
    default_profile_known = not default_profile or default_profile in RETRY_PROFILES
    if not default_profile_known:
        errors.append(f"Unknown default retry profile: {default_profile}")

    node_ids: set[str] = set()
    for node in definition.nodes:
        if not node.id.strip():
            errors.append("Every node must have a non-empty id.")
            continue
        if node.id in node_ids:
            errors.append(f"Duplicate node id: {node.id}")
        node_ids.add(node.id)
        if node.type not in _KNOWN_TYPES:
            warnings.append(f"Node {node.id} has unsupported type {node.type!r}; it will fail at runtime.")
        if node.type in (NodeType.PARALLEL.value, NodeType.LOOP.value):
            warnings.append(f"Node {node.id} ({node.type}) runs in pass-through compatibility mode.")
        errors.extend(_node_runtime_errors(definition, node, default_profile_known))

    start_nodes = [n for n in definition.nodes if n.type == NodeType.START.value]
    end_nodes = [n for n in definition.nodes if n.type == NodeType.END.value]
    if not start_nodes:
        errors.append("Workflow requires a start node.")
    elif len(start_nodes) > 1:
        errors.append(
            "Workflow must have exactly one start node, found "
            f"{len(start_nodes)}: {', '.join(n.id for n in start_nodes)}"
        )
    if not end_nodes:
        warnings.append("Workflow has no end node; runs will end when no matching edge is found.")

    for edge in definition.edges:
        if edge.from_ not in node_ids:
            errors.append(f"Edge {edge.id} references unknown source node: {edge.from_}")
        if edge.to not in node_ids:
            errors.append(f"Edge {edge.id} references unknown target node: {edge.to}")
        expression = edge.condition_expression()
        if expression is None:
            continue
        if not expression:
            errors.append(f"Edge {edge.id} uses {EdgeCondition.CUSTOM.value} condition without an expression.")
            continue
        try:
            parse_condition(expression)
        except ConditionSyntaxError as e:
            errors.append(f"Edge {edge.id} has an invalid expression: {e}")

    for trigger in definition.triggers:
        if trigger.type != SCHEDULE_TRIGGER:
            continue
        try:
            ScheduleTrigger.from_trigger(trigger)
        except ValidationError as e:
            errors.append(f"Trigger {trigger.id} has an invalid schedule: {_describe(e)}")
    if not definition.triggers:
        warnings.append("Workflow has no triggers; it can only run manually.")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def _node_runtime_errors(definition: WorkflowDefinition, node: WorkflowNode, default_profile_known: bool) -> list[str]:
    """Errors the engine would otherwise only hit when it reaches ``node``."""
    errors: list[str] = []
    if node.retry_profile and node.retry_profile not in RETRY_PROFILES:
        errors.append(f"Node {node.id} references unknown retry profile: {node.retry_profile}")
    elif node.retry_profile or default_profile_known:
        try:
            resolve_node_policy(definition, node)
        except RetryProfileError as e:
            errors.append(f"Node {node.id} has an invalid retry policy: {e}")
    try:
        node.compensation_config()
    except ValidationError as e:
        errors.append(f"Node {node.id} has an invalid compensation block: {_describe(e)}")
    return errors


def _describe(error: ValidationError) -> str:
    return "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in error.errors())


def compile_workflow_definition(definition: WorkflowDefinition) -> CompiledWorkflow:
    """Validate ``definition`` and index its edges by source node.

    Raises:
        WorkflowValidationError: If the definition is not well formed.
    """
    report = validate_workflow_definition(definition)
    if not report.valid:
        raise WorkflowValidationError(report.errors)

    start_node = next(n for n in definition.nodes if n.type == NodeType.START.value)
    compiled = CompiledWorkflow(definition=definition, start_node_id=start_node.id)
    for node in definition.nodes:
        compiled.nodes[node.id] = node
        compiled.outgoing[node.id] = []
        compiled.incoming_count[node.id] = 0

    # declaration order is preserved; edge selection depends on it
    for edge in definition.edges:
        compiled.outgoing[edge.from_].append(edge)
        compiled.incoming_count[edge.to] += 1

    return compiled
