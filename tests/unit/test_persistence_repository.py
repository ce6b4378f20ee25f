from datetime import timedelta

import pytest

from flowledger.contracts import (
    EventType,
    NodeRun,
    NodeRunStatus,
    RunStatus,
    WorkflowDraftInput,
    WorkflowDraftUpdate,
    WorkflowNode,
    WorkflowRun,
    WorkflowStatus,
    utcnow,
)
from flowledger.errors import NodeRunNotFoundError, RunNotFoundError, StorageError, WorkflowNotFoundError
from flowledger.persistence import InMemoryWorkflowStore, SQLiteWorkflowStore


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowStore()
    else:
        store = SQLiteWorkflowStore(tmp_path / "wf.db")
        yield store
        store.close()


@pytest.mark.asyncio
async def test_create_draft_uses_default_graph(repo):
    draft = await repo.create_draft(WorkflowDraftInput(name="Nightly report"), created_by="alice")

    assert draft.version == 1
    assert draft.status == WorkflowStatus.DRAFT
    assert draft.created_by == "alice"
    assert [n.id for n in draft.nodes] == ["start", "end"]
    assert [(e.from_, e.to, e.condition) for e in draft.edges] == [("start", "end", "always")]
    assert [t.type for t in draft.triggers] == ["manual"]

    alias = await repo.get_alias(draft.id)
    assert alias.draft_version == 1
    assert alias.published_version is None


@pytest.mark.asyncio
async def test_publish_creates_new_versions_and_keeps_old_ones(repo):
    draft = await repo.create_draft(WorkflowDraftInput(name="Report"), workflow_id="wf_report")

    first = await repo.publish("wf_report")
    assert first.version == 2
    assert first.status == WorkflowStatus.PUBLISHED

    await repo.update_draft(
        "wf_report",
        WorkflowDraftUpdate(
            name="Report v2",
            nodes=[
                WorkflowNode(id="start", type="start"),
                WorkflowNode(id="wait", type="wait"),
                WorkflowNode(id="end", type="end"),
            ],
        ),
    )
    still_draft = await repo.get_draft("wf_report")
    assert still_draft.version == draft.version
    assert still_draft.name == "Report v2"

    second = await repo.publish("wf_report")
    assert second.version == 3
    assert [n.id for n in second.nodes] == ["start", "wait", "end"]

    pinned = await repo.get("wf_report", version=2)
    assert pinned.name == "Report"
    assert [n.id for n in pinned.nodes] == ["start", "end"]

    current = await repo.get("wf_report")
    assert current.version == 3
    assert (await repo.get_published("wf_report")).version == 3


@pytest.mark.asyncio
async def test_archive_marks_current_version(repo):
    await repo.create_draft(WorkflowDraftInput(name="Old"), workflow_id="wf_old")
    await repo.publish("wf_old")

    archived = await repo.archive("wf_old")
    assert archived.version == 2
    assert (await repo.get("wf_old")).status == WorkflowStatus.ARCHIVED
    assert (await repo.get_draft("wf_old")).status == WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_lifecycle_on_unknown_workflow(repo):
    assert await repo.get("wf_missing") is None
    with pytest.raises(WorkflowNotFoundError):
        await repo.publish("wf_missing")
    with pytest.raises(WorkflowNotFoundError):
        await repo.update_draft("wf_missing", WorkflowDraftUpdate(name="x"))
    with pytest.raises(WorkflowNotFoundError):
        await repo.archive("wf_missing")


@pytest.mark.asyncio
async def test_list_latest_returns_current_versions(repo):
    await repo.create_draft(WorkflowDraftInput(name="A"), workflow_id="wf_a")
    await repo.create_draft(WorkflowDraftInput(name="B"), workflow_id="wf_b")
    await repo.publish("wf_b")

    latest = {d.id: d for d in await repo.list_latest()}
    assert latest["wf_a"].version == 1
    assert latest["wf_b"].version == 2


@pytest.mark.asyncio
async def test_run_crud(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1, input={"topic": "x"}))

    started = utcnow()
    await repo.update_status(run.id, status=RunStatus.RUNNING, started_at=started, current_node_id="start")
    await repo.update_input(run.id, {"topic": "x", "approvals": {"gate": True}})
    await repo.update_status(run.id, status=RunStatus.COMPLETED, completed_at=utcnow(), output={"steps": 2})

    stored = await repo.get_run_or_raise(run.id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.started_at == started
    assert stored.current_node_id == "start"
    assert stored.output == {"steps": 2}
    assert stored.input["approvals"] == {"gate": True}
    assert stored.correlation_id == run.correlation_id

    assert [r.id for r in await repo.list_runs(workflow_id="wf_a")] == [run.id]
    assert await repo.list_runs(status=RunStatus.RUNNING) == []


@pytest.mark.asyncio
async def test_run_updates_reject_unknown_fields(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1))
    with pytest.raises(StorageError):
        await repo.update_status(run.id, workflow_id="other")


@pytest.mark.asyncio
async def test_guarded_update_skips_cancelled_runs(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1, status=RunStatus.RUNNING))
    await repo.update_status(run.id, status=RunStatus.CANCELLED, error="stop")

    skipped = await repo.update_status(
        run.id, unless_status=(RunStatus.CANCELLED,), status=RunStatus.COMPLETED, output={"steps": 3}
    )

    assert skipped is None
    stored = await repo.get_run_or_raise(run.id)
    assert stored.status == RunStatus.CANCELLED
    assert stored.output is None

    applied = await repo.update_status(run.id, unless_status=(RunStatus.COMPLETED,), error="stopped twice")
    assert applied.error == "stopped twice"


@pytest.mark.asyncio
async def test_update_writes_only_changed_fields(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1, status=RunStatus.RUNNING))
    stale = await repo.get_run_or_raise(run.id)
    await repo.update_status(run.id, status=RunStatus.CANCELLED, error="Cancelled by user")

    await repo.update_status(stale.id, output={"note": "late write"}, current_node_id="step_2")

    stored = await repo.get_run_or_raise(run.id)
    assert stored.status == RunStatus.CANCELLED
    assert stored.error == "Cancelled by user"
    assert stored.output == {"note": "late write"}
    assert stored.current_node_id == "step_2"


@pytest.mark.asyncio
async def test_missing_run(repo):
    assert await repo.get_run("run_missing") is None
    with pytest.raises(RunNotFoundError):
        await repo.get_run_or_raise("run_missing")
    with pytest.raises(RunNotFoundError):
        await repo.update_status("run_missing", status=RunStatus.FAILED)


@pytest.mark.asyncio
async def test_node_runs_are_unique_per_attempt(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1))
    await repo.create_node_run(NodeRun(run_id=run.id, node_id="tool_1", attempt=1))

    with pytest.raises(StorageError):
        await repo.create_node_run(NodeRun(run_id=run.id, node_id="tool_1", attempt=1))

    await repo.create_node_run(NodeRun(run_id=run.id, node_id="tool_1", attempt=2))
    assert [nr.attempt for nr in await repo.get_node_runs(run.id)] == [1, 2]


@pytest.mark.asyncio
async def test_node_run_for_unknown_run(repo):
    with pytest.raises(RunNotFoundError):
        await repo.create_node_run(NodeRun(run_id="run_missing", node_id="a", attempt=1))


@pytest.mark.asyncio
async def test_terminal_node_runs_are_immutable(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1))
    node_run = await repo.create_node_run(NodeRun(run_id=run.id, node_id="a", attempt=1, input={"k": 1}))

    finished = await repo.update_node_run(
        node_run.id,
        status=NodeRunStatus.SUCCEEDED,
        output={"text": "done"},
        completed_at=utcnow(),
        duration_ms=12,
    )
    assert finished.status == NodeRunStatus.SUCCEEDED
    assert finished.output == {"text": "done"}

    with pytest.raises(StorageError):
        await repo.update_node_run(node_run.id, status=NodeRunStatus.FAILED, error="late")
    with pytest.raises(NodeRunNotFoundError):
        await repo.update_node_run("nr_missing", status=NodeRunStatus.FAILED)

    stored = (await repo.get_node_runs(run.id))[0]
    assert stored.status == NodeRunStatus.SUCCEEDED
    assert stored.input == {"k": 1}
    assert stored.duration_ms == 12


@pytest.mark.asyncio
async def test_events_keep_append_order(repo):
    run = await repo.create_run(WorkflowRun(workflow_id="wf_a", workflow_version=1))
    await repo.append_event(run.id, EventType.RUN_STARTED, {"workflow_id": "wf_a"})
    await repo.append_event(run.id, EventType.NODE_STARTED, {"node_id": "start"})
    await repo.append_event(run.id, EventType.NODE_SUCCEEDED, {"node_id": "start"})
    await repo.append_event("run_other", EventType.RUN_STARTED)

    events = await repo.list_events(run.id)
    assert [e.type for e in events] == [EventType.RUN_STARTED, EventType.NODE_STARTED, EventType.NODE_SUCCEEDED]
    assert events[1].payload == {"node_id": "start"}

    future = utcnow() + timedelta(hours=1)
    assert await repo.list_events(run.id, since=future) == []
