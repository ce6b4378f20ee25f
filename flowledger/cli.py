"""Command line interface for managing flowledger workflows and runs."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import BaseModel, ValidationError

from flowledger.agent import AgentPromptExecutor
from flowledger.config import configure_logging, load_config
from flowledger.contracts import RunStatus, WorkflowDraftInput, WorkflowDraftUpdate, WorkflowRun
from flowledger.errors import (
    ResumeIntegrityError,
    RunNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from flowledger.persistence import get_repository
from flowledger.service import WorkflowService

app = typer.Typer(help="CLI for flowledger workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
run_app = typer.Typer(help="Commands for starting and controlling runs")

app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")

# Overridable for embedding and tests; ``None`` uses the configured pydantic-ai agent.
_prompt_executor: AgentPromptExecutor | None = None


@app.callback()
def main() -> None:
    """flowledger CLI entry point."""
    configure_logging(load_config())


def _service() -> WorkflowService:
    return WorkflowService(get_repository(), execute_agent_prompt=_prompt_executor, config=load_config())


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except WorkflowNotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    except RunNotFoundError:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    except WorkflowValidationError as e:
        typer.secho("Workflow validation failed:", fg=typer.colors.RED)
        for error in e.errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)
    except ResumeIntegrityError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _read_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    # YAML is a superset of JSON, so both formats load here
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        typer.secho("Workflow file must contain a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _load_model(model: type[BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        typer.secho(f"Invalid workflow document:\n{e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json_option(value: Optional[str], name: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON for --{name}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(parsed, dict):
        typer.secho(f"--{name} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return parsed


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("create")
def workflow_create(path: Path, created_by: Optional[str] = None) -> None:
    """
    Create a workflow draft from a YAML or JSON file.

    Example:
        flowledger workflow create ./review.yaml
        # Output: Created draft wf_3f2a... (version 1)
    """
    draft = _load_model(WorkflowDraftInput, _read_document(path))
    definition = _run(_service().create_draft(draft, created_by=created_by))
    typer.echo(f"Created draft {definition.id} (version {definition.version})")


@workflow_app.command("update")
def workflow_update(workflow_id: str, path: Path) -> None:
    """Replace fields of the current draft with those in a YAML or JSON file."""
    updates = _load_model(WorkflowDraftUpdate, _read_document(path))
    definition = _run(_service().update_draft(workflow_id, updates))
    typer.echo(f"Updated draft {definition.id}")


@workflow_app.command("validate")
def workflow_validate(workflow_id: str, version: Optional[int] = None) -> None:
    """Validate a workflow version (default: published, else draft)."""
    report = _run(_service().validate(workflow_id, version))
    for warning in report.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    if not report.valid:
        for error in report.errors:
            typer.secho(f"error: {error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("Workflow is valid")


@workflow_app.command("publish")
def workflow_publish(workflow_id: str) -> None:
    """Publish the current draft as a new immutable version."""
    definition = _run(_service().publish(workflow_id))
    typer.echo(f"Published {definition.id} version {definition.version}")


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    """Archive a workflow so that no new runs can start."""
    definition = _run(_service().archive(workflow_id))
    typer.echo(f"Archived {definition.id} version {definition.version}")


@workflow_app.command("list")
def workflow_list(limit: int = 100, offset: int = 0) -> None:
    """
    List the current version of every workflow.

    Example:
        flowledger workflow list
        # Output: wf_3f2a...    v2    published    Review pipeline
    """
    workflows = _run(_service().list_workflows(limit=limit, offset=offset))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\tv{wf.version}\t{wf.status.value}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str, version: Optional[int] = None) -> None:
    """Show a workflow definition as YAML."""
    definition = _run(_service().get_workflow(workflow_id, version))
    typer.echo(f"Workflow {definition.id} v{definition.version}: {definition.status.value}")
    typer.echo(yaml.safe_dump(definition.to_record(), sort_keys=False))


async def _drive_scheduled(service: WorkflowService, queued: list[WorkflowRun]) -> list[WorkflowRun]:
    await service.wait_for_background_runs()
    return [await service.store.get_run_or_raise(run.id) for run in queued]


async def _backfill(workflow_id: str, start: datetime, end: datetime) -> list[WorkflowRun]:
    service = _service()
    return await _drive_scheduled(service, await service.backfill_schedule(workflow_id, start, end))


async def _run_due() -> list[WorkflowRun]:
    service = _service()
    return await _drive_scheduled(service, await service.run_due_schedules())


def _echo_scheduled(runs: list[WorkflowRun]) -> None:
    for run in runs:
        typer.echo(f"{run.id}\t{run.trigger_context.get('scheduled_at')}\t{run.status.value}")


@workflow_app.command("backfill")
def workflow_backfill(
    workflow_id: str,
    start: datetime = typer.Option(..., "--from", help="Window start; naive times are UTC"),
    end: datetime = typer.Option(..., "--to", help="Window end (inclusive)"),
) -> None:
    """
    Run the published version once per schedule fire time in a past window.

    Example:
        flowledger workflow backfill wf_3f2a... --from 2026-03-01 --to 2026-03-02
        # Output: Queued 24 runs for wf_3f2a...
    """
    runs = _run(_backfill(workflow_id, start, end))
    typer.echo(f"Queued {len(runs)} runs for {workflow_id}")
    _echo_scheduled(runs)


@workflow_app.command("schedules")
def workflow_schedules(limit: int = 100, offset: int = 0) -> None:
    """List published workflows with schedule triggers and their next fire time."""
    tasks = _run(_service().list_scheduled_tasks(limit=limit, offset=offset))
    if not tasks:
        typer.echo("No scheduled workflows found")
        return
    for task in tasks:
        next_run = task.next_run_at.isoformat() if task.next_run_at else "-"
        state = "enabled" if task.enabled else "disabled"
        typer.echo(
            f"{task.workflow_id}\tv{task.workflow_version}\t{state}\tnext: {next_run}\t"
            f"runs: {task.run_count}\t{task.name}"
        )


@workflow_app.command("run-due")
def workflow_run_due() -> None:
    """Start runs for schedule triggers whose fire time has passed."""
    runs = _run(_run_due())
    if not runs:
        typer.echo("No schedules are due")
        return
    _echo_scheduled(runs)


# ----------------------------------------------------------------------
# run


@run_app.command("start")
def run_start(
    workflow_id: str,
    version: Optional[int] = None,
    input: Optional[str] = typer.Option(None, help="Run input as a JSON object"),
    correlation_id: Optional[str] = None,
) -> None:
    """
    Start a run and drive it until it completes, fails or pauses.

    Example:
        flowledger run start wf_3f2a... --input '{"ticket": 42}'
        # Output: Run run_9c1e...: completed
    """
    run = _run(
        _service().start_run(
            workflow_id,
            version=version,
            input=_parse_json_option(input, "input"),
            correlation_id=correlation_id,
        )
    )
    typer.echo(f"Run {run.id}: {run.status.value}")
    if run.error:
        typer.echo(f"Error: {run.error}")


@run_app.command("list")
def run_list(
    workflow_id: Optional[str] = None,
    status: Optional[RunStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> None:
    """List runs, newest first."""
    runs = _run(_service().list_runs(workflow_id=workflow_id, status=status, limit=limit, offset=offset))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\tv{run.workflow_version}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run with its node attempts.

    Example:
        flowledger run show run_9c1e...
        # Output: Run run_9c1e...: completed
        #         - start_1 #1: succeeded (3ms)
        #         - tool_1 #1: failed - transient failure
        #         - tool_1 #2: succeeded (812ms)
    """
    details = _run(_service().get_run(run_id))
    run = details.run
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.workflow_id} v{run.workflow_version}")
    if run.current_node_id:
        typer.echo(f"Current node: {run.current_node_id}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    for node_run in details.node_runs:
        line = f"- {node_run.node_id} #{node_run.attempt}: {node_run.status.value}"
        if node_run.error:
            line += f" - {node_run.error}"
        elif node_run.duration_ms is not None:
            line += f" ({node_run.duration_ms}ms)"
        typer.echo(line)


@run_app.command("events")
def run_events(run_id: str) -> None:
    """Print the event log of a run in order."""
    events = _run(_service().get_run_events(run_id))
    for event in events:
        typer.echo(f"{event.created_at.isoformat()}\t{event.type.value}\t{json.dumps(event.payload, default=str)}")


@run_app.command("approve")
def run_approve(run_id: str, node_id: Optional[str] = None) -> None:
    """Approve the pending approval node of a run and continue it."""
    run = _run(_service().approve(run_id, node_id=node_id))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("resume")
def run_resume(run_id: str) -> None:
    """Re-drive a run from its last checkpoint."""
    run = _run(_service().resume_run(run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Cancel a run; it stops at the next node boundary."""
    run = _run(_service().cancel_run(run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("recover")
def run_recover() -> None:
    """Re-drive queued and running runs left behind by a previous process."""
    runs = _run(_service().recover_in_flight_runs())
    if not runs:
        typer.echo("No in-flight runs to recover")
        return
    for run in runs:
        typer.echo(f"Recovered {run.id}: {run.status.value}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
