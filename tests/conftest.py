"""Shared fixtures for flowledger tests."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Optional

import pytest

from flowledger.contracts import (
    AgentPromptResult,
    WorkflowDefaults,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStatus,
    WorkflowTrigger,
)
from flowledger.persistence import InMemoryWorkflowStore

NO_RETRY = {"max_attempts": 1, "backoff_ms": 0, "max_backoff_ms": 0, "jitter_ratio": 0}


class RecordingPromptExecutor:
    """Prompt executor double that records every call.

    ``handler`` receives the prompt and returns (or raises) the reply; it may
    be sync or async. Without a handler every prompt answers ``"ok"``.
    """

    def __init__(self, handler: Optional[Callable[[str], Any]] = None):
        self.calls: list[dict[str, Any]] = []
        self._handler = handler

    async def __call__(
        self,
        prompt: str,
        *,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> Any:
        self.calls.append(
            {
                "prompt": prompt,
                "working_directory": working_directory,
                "model": model,
                "max_turns": max_turns,
            }
        )
        if self._handler is None:
            return AgentPromptResult(content="ok")
        result = self._handler(prompt)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def prompts(self) -> list[str]:
        return [call["prompt"] for call in self.calls]


def build_definition(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    workflow_id: str = "wf_test",
    version: int = 1,
    **defaults: Any,
) -> WorkflowDefinition:
    """Build a published definition with fast, non-retrying defaults."""
    return WorkflowDefinition(
        id=workflow_id,
        version=version,
        status=WorkflowStatus.PUBLISHED,
        name="Test Workflow",
        triggers=[WorkflowTrigger(id="manual_1", type="manual")],
        nodes=[WorkflowNode.model_validate(n) for n in nodes],
        edges=[WorkflowEdge.model_validate(e) for e in edges],
        defaults=WorkflowDefaults.model_validate(
            {"max_run_time_ms": 60_000, "node_timeout_ms": 10_000, "retry": NO_RETRY, **defaults}
        ),
        created_by="test",
    )


def linear_definition(*middle: dict[str, Any], **defaults: Any) -> WorkflowDefinition:
    """``start -> middle... -> end`` joined by success edges."""
    nodes = [{"id": "start_1", "type": "start", "name": "Start"}, *middle, {"id": "end_1", "type": "end", "name": "End"}]
    edges = [
        {"id": f"edge_{a['id']}_{b['id']}", "from": a["id"], "to": b["id"], "condition": "success"}
        for a, b in zip(nodes, nodes[1:])
    ]
    return build_definition(nodes, edges, **defaults)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay_ms: float) -> None:
        self.delays.append(delay_ms)


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def prompt_executor() -> RecordingPromptExecutor:
    return RecordingPromptExecutor()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_prompt_executor() -> type[RecordingPromptExecutor]:
    return RecordingPromptExecutor


@pytest.fixture
def make_definition() -> Callable[..., WorkflowDefinition]:
    return build_definition


@pytest.fixture
def make_linear_definition() -> Callable[..., WorkflowDefinition]:
    return linear_definition
