import pytest

from flowledger.constants import RESUME_REASON_CHECKPOINT
from flowledger.contracts import (
    Checkpoint,
    EventType,
    NodeRun,
    NodeRunStatus,
    RunStatus,
    WorkflowRun,
    utcnow,
    with_checkpoint,
)
from flowledger.engine import StaticDefinitionResolver, WorkflowEngine
from flowledger.errors import ResumeIntegrityError
from flowledger.persistence import SQLiteWorkflowStore

TOOL_NODE = {"id": "tool_1", "type": "tool", "name": "Tool", "config": {"action": "sync"}}


async def _run_with_checkpoint(store, next_node_id: str) -> WorkflowRun:
    run = await store.create_run(
        WorkflowRun(
            workflow_id="wf_test",
            workflow_version=1,
            status=RunStatus.RUNNING,
            started_at=utcnow(),
            current_node_id="tool_1",
        )
    )
    tool_run = await store.create_node_run(
        NodeRun(
            run_id=run.id,
            node_id="tool_1",
            attempt=1,
            status=NodeRunStatus.SUCCEEDED,
            output={"text": "already done"},
            completed_at=utcnow(),
            duration_ms=5,
        )
    )
    checkpoint = Checkpoint(step=2, completed_node_id="tool_1", next_node_id=next_node_id, node_run_id=tool_run.id)
    return await store.update_status(run.id, output=with_checkpoint(None, checkpoint))


@pytest.mark.asyncio
async def test_resumes_from_checkpoint_without_rerunning_completed_node(
    store, prompt_executor, make_linear_definition
):
    definition = make_linear_definition(TOOL_NODE)
    engine = WorkflowEngine(store, store, prompt_executor, resolver=StaticDefinitionResolver(definition))
    run = await _run_with_checkpoint(store, next_node_id="end_1")

    result = await engine.execute(run.id)

    assert result.status == RunStatus.COMPLETED
    assert prompt_executor.calls == []

    node_runs = await store.get_node_runs(run.id)
    assert [nr.node_id for nr in node_runs if nr.node_id == "tool_1"] == ["tool_1"]
    assert [nr.node_id for nr in node_runs] == ["tool_1", "end_1"]

    events = await store.list_events(run.id)
    resumed = [e for e in events if e.type == EventType.RUN_RESUMED]
    assert len(resumed) == 1
    assert resumed[0].payload["reason"] == RESUME_REASON_CHECKPOINT
    assert resumed[0].payload["next_node_id"] == "end_1"

    # outputs of nodes completed before the restart stay visible
    assert result.output["nodes"]["tool_1"] == {"text": "already done"}
    assert result.output["steps"] == 3
    assert result.checkpoint.completed_node_id == "end_1"
    assert result.checkpoint.next_node_id is None


@pytest.mark.asyncio
async def test_checkpoint_pointing_at_removed_node_is_rejected(store, prompt_executor, make_linear_definition):
    definition = make_linear_definition(TOOL_NODE)
    engine = WorkflowEngine(store, store, prompt_executor, resolver=StaticDefinitionResolver(definition))
    run = await _run_with_checkpoint(store, next_node_id="ghost_node")

    with pytest.raises(ResumeIntegrityError) as exc_info:
        await engine.execute(run.id)

    assert exc_info.value.node_id == "ghost_node"
    assert (await store.get_run(run.id)).status == RunStatus.RUNNING
    assert prompt_executor.calls == []


@pytest.mark.asyncio
async def test_compensation_runs_before_retry(store, make_prompt_executor, make_linear_definition):
    failures = {"tool": 0}

    def handler(prompt: str) -> str:
        if prompt.startswith("Execute workflow node type: tool") and failures["tool"] == 0:
            failures["tool"] += 1
            raise RuntimeError("tool exploded")
        return "ok"

    prompts = make_prompt_executor(handler)
    definition = make_linear_definition(
        {
            **TOOL_NODE,
            "retry": {"max_attempts": 2, "backoff_ms": 0, "max_backoff_ms": 0, "jitter_ratio": 0},
            "config": {
                "action": "sync",
                "compensation": {
                    "enabled": True,
                    "strategy": "before_retry",
                    "prompt_template": "compensate {{compensation.node_id}} after {{compensation.error}}",
                    "max_turns": 1,
                },
            },
        }
    )
    engine = WorkflowEngine(store, store, prompts, resolver=StaticDefinitionResolver(definition))
    run = await store.create_run(WorkflowRun(workflow_id="wf_test", workflow_version=1))

    result = await engine.execute(run.id)

    assert result.status == RunStatus.COMPLETED
    assert len(prompts.calls) == 3
    assert prompts.calls[1]["prompt"] == "compensate tool_1 after tool exploded"
    assert prompts.calls[1]["max_turns"] == 1

    tool_runs = [nr for nr in await store.get_node_runs(run.id) if nr.node_id == "tool_1"]
    assert [(nr.attempt, nr.status) for nr in tool_runs] == [
        (1, NodeRunStatus.FAILED),
        (2, NodeRunStatus.SUCCEEDED),
    ]
    assert tool_runs[0].error == "tool exploded"
    assert tool_runs[0].output["compensation"]["applied"] is True

    failed_events = [e for e in await store.list_events(run.id) if e.type == EventType.NODE_FAILED]
    assert len(failed_events) == 1
    assert failed_events[0].payload["compensation_applied"] is True
    assert failed_events[0].payload["will_retry"] is True


@pytest.mark.asyncio
async def test_failed_compensation_is_recorded_and_retry_continues(
    store, make_prompt_executor, make_linear_definition
):
    calls = {"tool": 0}

    def handler(prompt: str) -> str:
        if prompt.startswith("undo"):
            raise RuntimeError("cannot undo")
        calls["tool"] += 1
        if calls["tool"] == 1:
            raise RuntimeError("first attempt failed")
        return "ok"

    prompts = make_prompt_executor(handler)
    definition = make_linear_definition(
        {
            **TOOL_NODE,
            "retry": {"max_attempts": 2, "backoff_ms": 0, "max_backoff_ms": 0, "jitter_ratio": 0},
            "compensation": {"enabled": True, "prompt_template": "undo {{compensation.node_id}}"},
        }
    )
    engine = WorkflowEngine(store, store, prompts, resolver=StaticDefinitionResolver(definition))
    run = await store.create_run(WorkflowRun(workflow_id="wf_test", workflow_version=1))

    result = await engine.execute(run.id)

    assert result.status == RunStatus.COMPLETED
    first = next(nr for nr in await store.get_node_runs(run.id) if nr.node_id == "tool_1")
    assert first.output == {"compensation": {"applied": False, "error": "cannot undo"}}


@pytest.mark.asyncio
async def test_checkpoint_survives_reopening_the_sqlite_file(tmp_path, make_prompt_executor, make_linear_definition):
    db_path = tmp_path / "runs.db"
    definition = make_linear_definition(
        {"id": "draft", "type": "agent_step", "config": {"prompt_template": "Draft the notes"}},
        {"id": "gate", "type": "approval"},
    )
    prompts = make_prompt_executor(lambda prompt: "drafted")

    first = SQLiteWorkflowStore(db_path)
    run = await first.create_run(WorkflowRun(workflow_id="wf_test", workflow_version=1))
    paused = await WorkflowEngine(first, first, prompts, resolver=StaticDefinitionResolver(definition)).execute(run.id)
    assert paused.checkpoint.next_node_id == "gate"
    first.close()

    reopened = SQLiteWorkflowStore(db_path)
    try:
        stored = await reopened.get_run_or_raise(run.id)
        assert stored.checkpoint.completed_node_id == "draft"
        await reopened.update_input(run.id, {"approvals": {"gate": True}})

        engine = WorkflowEngine(reopened, reopened, prompts, resolver=StaticDefinitionResolver(definition))
        result = await engine.execute(run.id)

        assert result.status == RunStatus.COMPLETED
        assert prompts.prompts == ["Draft the notes"]
        assert result.output["nodes"]["draft"]["text"] == "drafted"
        draft_runs = [nr for nr in await reopened.get_node_runs(run.id) if nr.node_id == "draft"]
        assert [nr.attempt for nr in draft_runs] == [1]
        resumed = [e for e in await reopened.list_events(run.id) if e.type == EventType.RUN_RESUMED]
        assert [e.payload["next_node_id"] for e in resumed] == ["gate"]
    finally:
        reopened.close()
