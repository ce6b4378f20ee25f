from datetime import datetime, timedelta, timezone

import pytest

from flowledger.contracts import RunStatus, WorkflowDraftInput, WorkflowTrigger
from flowledger.errors import WorkflowNotFoundError
from flowledger.schedules import EverySchedule
from flowledger.service import WorkflowService

HOUR_MS = 3_600_000


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _schedule(trigger_id: str, schedule: dict, **fields) -> WorkflowTrigger:
    return WorkflowTrigger(id=trigger_id, type="schedule", schedule=schedule, **fields)


@pytest.fixture
def service(store, prompt_executor):
    return WorkflowService(store, execute_agent_prompt=prompt_executor)


async def _published(service: WorkflowService, name: str, *triggers: WorkflowTrigger):
    draft = await service.create_draft(WorkflowDraftInput(name=name, triggers=list(triggers)))
    return await service.publish(draft.id)


@pytest.mark.asyncio
async def test_backfill_queues_one_run_per_fire_time(service):
    published = await _published(
        service,
        "Hourly digest",
        _schedule("hourly", {"type": "every", "interval_ms": HOUR_MS, "start_at": "2026-03-01T00:00:00Z"}),
        _schedule("once", {"type": "at", "timestamp": "2026-03-01T01:30:00Z"}),
        _schedule("paused", {"type": "cron", "expression": "*/5 * * * *"}, enabled=False),
        WorkflowTrigger(id="manual_1", type="manual"),
    )

    queued = await service.backfill_schedule(published.id, utc(2026, 3, 1), utc(2026, 3, 1, 3))
    await service.wait_for_background_runs()

    assert [(r.trigger_context["trigger_id"], r.trigger_context["scheduled_at"]) for r in queued] == [
        ("hourly", "2026-03-01T00:00:00+00:00"),
        ("hourly", "2026-03-01T01:00:00+00:00"),
        ("hourly", "2026-03-01T02:00:00+00:00"),
        ("hourly", "2026-03-01T03:00:00+00:00"),
        ("once", "2026-03-01T01:30:00+00:00"),
    ]
    for run in queued:
        assert run.trigger_type == "schedule"
        assert run.trigger_context["backfill"] is True
        assert run.workflow_version == published.version
        assert run.correlation_id.startswith("wf_backfill_")
        assert (await service.store.get_run_or_raise(run.id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_backfill_requires_a_published_version(service):
    draft = await service.create_draft(
        WorkflowDraftInput(name="Unpublished", triggers=[_schedule("hourly", {"type": "every", "interval_ms": HOUR_MS})])
    )

    with pytest.raises(WorkflowNotFoundError):
        await service.backfill_schedule(draft.id, utc(2026, 3, 1), utc(2026, 3, 2))
    assert await service.list_runs(workflow_id=draft.id) == []


@pytest.mark.asyncio
async def test_due_schedules_fire_once_per_fire_time(service):
    published = await _published(service, "Hourly", _schedule("hourly", {"type": "every", "interval_ms": HOUR_MS}))
    origin = published.created_at

    assert await service.run_due_schedules(now=origin + timedelta(minutes=30)) == []

    # missed fire times collapse into a run for the latest one
    [first] = await service.run_due_schedules(now=origin + timedelta(hours=3, minutes=30))
    assert first.trigger_type == "schedule"
    assert first.trigger_context == {"trigger_id": "hourly", "scheduled_at": (origin + timedelta(hours=3)).isoformat()}
    assert "backfill" not in first.trigger_context

    assert await service.run_due_schedules(now=origin + timedelta(hours=3, minutes=59)) == []
    [second] = await service.run_due_schedules(now=origin + timedelta(hours=4))
    assert second.trigger_context["scheduled_at"] == (origin + timedelta(hours=4)).isoformat()

    await service.wait_for_background_runs()
    assert {r.status for r in await service.list_runs(workflow_id=published.id)} == {RunStatus.COMPLETED}


@pytest.mark.asyncio
async def test_max_runs_caps_scheduled_runs_but_not_backfills(service):
    published = await _published(
        service,
        "Capped",
        _schedule("capped", {"type": "every", "interval_ms": HOUR_MS, "start_at": "2026-03-01T00:00:00Z"}, max_runs=1),
    )
    await service.backfill_schedule(published.id, utc(2026, 3, 1), utc(2026, 3, 1, 2))
    now = published.created_at + timedelta(hours=2)

    assert len(await service.run_due_schedules(now=now)) == 1
    assert await service.run_due_schedules(now=now + timedelta(hours=5)) == []
    await service.wait_for_background_runs()


@pytest.mark.asyncio
async def test_list_scheduled_tasks_reports_next_and_last_runs(service):
    published = await _published(
        service,
        "Digest",
        _schedule("hourly", {"type": "every", "interval_ms": HOUR_MS, "start_at": "2026-03-01T00:00:00Z"}),
        _schedule("weekly", {"type": "cron", "expression": "0 9 * * MON"}, enabled=False),
    )
    await _published(service, "Manual only", WorkflowTrigger(id="manual_1", type="manual"))
    await service.create_draft(
        WorkflowDraftInput(name="Draft", triggers=[_schedule("hourly", {"type": "every", "interval_ms": HOUR_MS})])
    )
    await service.backfill_schedule(published.id, utc(2026, 3, 1), utc(2026, 3, 1, 1))
    await service.wait_for_background_runs()

    [task] = await service.list_scheduled_tasks(now=utc(2026, 3, 1, 5, 10))

    assert task.workflow_id == published.id
    assert task.workflow_version == published.version
    assert task.name == "Digest"
    assert task.status == "published"
    assert task.enabled is True
    assert task.schedules[0] == EverySchedule(interval_ms=HOUR_MS, start_at=utc(2026, 3, 1))
    assert task.schedules[1].expression == "0 9 * * MON"
    # the disabled weekly trigger does not count
    assert task.next_run_at == utc(2026, 3, 1, 6)
    assert task.run_count == 2
    assert task.last_run_status == "completed"
    assert task.last_run_at is not None

    assert await service.list_scheduled_tasks(offset=1) == []
