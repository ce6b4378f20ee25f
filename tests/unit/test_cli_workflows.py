import asyncio
import re

import pytest
from typer.testing import CliRunner

import flowledger.cli as cli
import flowledger.persistence as persistence
from flowledger.cli import app
from flowledger.contracts import RunStatus, WorkflowDraftInput

WORKFLOW_YAML = """
name: Review pipeline
description: Draft and approve release notes
nodes:
  - id: start_1
    type: start
  - id: draft
    type: agent_step
    config:
      prompt_template: "Draft notes for {{run.input.tag}}"
  - id: gate
    type: approval
    config:
      reason: Check the notes
  - id: end_1
    type: end
edges:
  - {id: e1, from: start_1, to: draft}
  - {id: e2, from: draft, to: gate}
  - {id: e3, from: gate, to: end_1}
defaults:
  retry_profile: fast_safe
"""

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_store(store, prompt_executor, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", store)
    monkeypatch.setattr(cli, "_prompt_executor", prompt_executor)
    return store


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def _create(tmp_path) -> str:
    path = tmp_path / "review.yaml"
    path.write_text(WORKFLOW_YAML)
    result = _invoke("workflow", "create", str(path), "--created-by", "alice")
    assert result.exit_code == 0, result.stdout
    match = re.search(r"Created draft (\S+) \(version 1\)", result.stdout)
    assert match, result.stdout
    return match.group(1)


def test_create_publish_and_list(tmp_path):
    workflow_id = _create(tmp_path)

    result = _invoke("workflow", "validate", workflow_id)
    assert result.exit_code == 0
    assert "Workflow is valid" in result.stdout

    result = _invoke("workflow", "publish", workflow_id)
    assert result.exit_code == 0
    assert f"Published {workflow_id} version 2" in result.stdout

    result = _invoke("workflow", "list")
    assert result.exit_code == 0
    assert f"{workflow_id}\tv2\tpublished\tReview pipeline" in result.stdout

    result = _invoke("workflow", "show", workflow_id, "--version", "1")
    assert result.exit_code == 0
    assert f"Workflow {workflow_id} v1: draft" in result.stdout
    assert "Draft notes for {{run.input.tag}}" in result.stdout


def test_missing_workflow():
    result = _invoke("workflow", "show", "missing-id")
    assert result.exit_code == 1
    assert "Workflow not found" in result.stdout


def test_list_without_workflows():
    result = _invoke("workflow", "list")
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_create_rejects_invalid_documents(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("description: no name\n")
    result = _invoke("workflow", "create", str(path))
    assert result.exit_code == 1
    assert "Invalid workflow document" in result.stdout

    result = _invoke("workflow", "create", str(tmp_path / "missing.yaml"))
    assert result.exit_code == 1
    assert "Specified path does not exist" in result.stdout


def test_publish_invalid_draft_reports_errors(cli_store):
    draft = asyncio.run(cli_store.create_draft(WorkflowDraftInput(name="Empty", nodes=[], edges=[])))

    result = _invoke("workflow", "publish", draft.id)

    assert result.exit_code == 1
    assert "Workflow validation failed:" in result.stdout
    assert "  - Workflow requires a start node." in result.stdout


def test_run_start_approve_and_inspect(tmp_path, cli_store, prompt_executor):
    workflow_id = _create(tmp_path)
    _invoke("workflow", "publish", workflow_id)

    result = _invoke("run", "start", workflow_id, "--input", '{"tag": "v2.0"}')
    assert result.exit_code == 0
    match = re.search(r"Run (\S+): running", result.stdout)
    assert match, result.stdout
    run_id = match.group(1)
    assert prompt_executor.prompts == ["Draft notes for v2.0"]

    result = _invoke("run", "show", run_id)
    assert "Current node: gate" in result.stdout
    assert "- draft #1: succeeded" in result.stdout

    result = _invoke("run", "approve", run_id)
    assert result.exit_code == 0
    assert f"Run {run_id}: completed" in result.stdout

    result = _invoke("run", "events", run_id)
    assert "\trun_paused\t" in result.stdout
    assert result.stdout.strip().splitlines()[-1].split("\t")[1] == "run_completed"

    result = _invoke("run", "list", "--workflow-id", workflow_id)
    assert f"{run_id}\t{workflow_id}\tv2\tcompleted" in result.stdout


def test_run_start_with_bad_input(tmp_path):
    workflow_id = _create(tmp_path)
    result = _invoke("run", "start", workflow_id, "--input", "[1, 2]")
    assert result.exit_code == 1
    assert "--input must be a JSON object" in result.stdout


def test_run_cancel_and_missing_run(tmp_path, cli_store):
    workflow_id = _create(tmp_path)
    result = _invoke("run", "start", workflow_id)
    run_id = re.search(r"Run (\S+):", result.stdout).group(1)

    result = _invoke("run", "cancel", run_id)
    assert f"Run {run_id}: cancelled" in result.stdout
    assert asyncio.run(cli_store.get_run(run_id)).status == RunStatus.CANCELLED

    result = _invoke("run", "show", "run_missing")
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_recover_without_in_flight_runs():
    result = _invoke("run", "recover")
    assert result.exit_code == 0
    assert "No in-flight runs to recover" in result.stdout


SCHEDULED_YAML = """
name: Hourly digest
triggers:
  - id: hourly
    type: schedule
    schedule: {type: every, interval_ms: 3600000, start_at: "2026-03-01T00:00:00Z"}
"""


def test_backfill_and_list_schedules(tmp_path, cli_store):
    path = tmp_path / "digest.yaml"
    path.write_text(SCHEDULED_YAML)
    result = _invoke("workflow", "create", str(path))
    workflow_id = re.search(r"Created draft (\S+) ", result.stdout).group(1)

    result = _invoke("workflow", "schedules")
    assert "No scheduled workflows found" in result.stdout

    _invoke("workflow", "publish", workflow_id)
    result = _invoke("workflow", "backfill", workflow_id, "--from", "2026-03-01T00:00:00", "--to", "2026-03-01T02:00:00")

    assert result.exit_code == 0, result.stdout
    assert f"Queued 3 runs for {workflow_id}" in result.stdout
    assert "\t2026-03-01T01:00:00+00:00\tcompleted" in result.stdout
    runs = asyncio.run(cli_store.list_runs(workflow_id=workflow_id))
    assert len(runs) == 3
    assert {r.trigger_type for r in runs} == {"schedule"}

    result = _invoke("workflow", "schedules")
    assert result.exit_code == 0
    assert f"{workflow_id}\tv2\tenabled\tnext: " in result.stdout
    assert "runs: 3\tHourly digest" in result.stdout


def test_backfill_unpublished_workflow(tmp_path):
    workflow_id = _create(tmp_path)
    result = _invoke("workflow", "backfill", workflow_id, "--from", "2026-03-01", "--to", "2026-03-02")
    assert result.exit_code == 1
    assert "Workflow not found" in result.stdout


def test_run_due_without_schedules():
    result = _invoke("workflow", "run-due")
    assert result.exit_code == 0
    assert "No schedules are due" in result.stdout
