"""Schedule triggers: parsing and fire-time computation.

A trigger of type ``schedule`` carries a ``schedule`` mapping in one of
three shapes::

    {"type": "at", "timestamp": "2026-03-01T09:00:00Z"}
    {"type": "every", "interval_ms": 3600000, "start_at": "2026-03-01T00:00:00Z"}
    {"type": "cron", "expression": "0 9 * * MON-FRI", "timezone": "Europe/Berlin"}

All computed times are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Annotated, List, Literal, Optional, Union

import pytz
from croniter import croniter
from pydantic import BaseModel, Field, field_validator

from .contracts import WorkflowDefinition, WorkflowTrigger

SCHEDULE_TRIGGER = "schedule"
MIN_INTERVAL_MS = 60_000


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AtSchedule(BaseModel):
    type: Literal["at"] = "at"
    timestamp: datetime


class EverySchedule(BaseModel):
    type: Literal["every"] = "every"
    interval_ms: int = Field(ge=MIN_INTERVAL_MS)
    start_at: Optional[datetime] = None


class CronSchedule(BaseModel):
    type: Literal["cron"] = "cron"
    expression: str
    timezone: Optional[str] = None

    @field_validator("expression")
    @classmethod
    def _check_expression(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value}")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                pytz.timezone(value)
            except pytz.UnknownTimeZoneError as e:
                raise ValueError(f"Invalid timezone: {value}") from e
        return value


Schedule = Annotated[Union[AtSchedule, EverySchedule, CronSchedule], Field(discriminator="type")]


class ScheduleTrigger(BaseModel):
    """Typed view of a stored ``schedule`` trigger."""

    id: str
    enabled: bool = True
    schedule: Schedule
    max_runs: Optional[int] = Field(default=None, gt=0)

    @classmethod
    def from_trigger(cls, trigger: WorkflowTrigger) -> "ScheduleTrigger":
        """Raises ``pydantic.ValidationError`` if the schedule is malformed."""
        return cls.model_validate(trigger.model_dump())


def schedule_triggers(definition: WorkflowDefinition) -> List[ScheduleTrigger]:
    """Schedule triggers declared by ``definition``, enabled or not."""
    return [ScheduleTrigger.from_trigger(t) for t in definition.triggers if t.type == SCHEDULE_TRIGGER]


def _cron(schedule: CronSchedule, base: datetime) -> croniter:
    tz = pytz.timezone(schedule.timezone or "UTC")
    return croniter(schedule.expression, base.astimezone(tz))


def next_run_at(schedule: Schedule, after: datetime) -> Optional[datetime]:
    """First fire time strictly after ``after``, or ``None`` if there is none."""
    after = as_utc(after)
    if isinstance(schedule, AtSchedule):
        timestamp = as_utc(schedule.timestamp)
        return timestamp if timestamp > after else None
    if isinstance(schedule, EverySchedule):
        start = as_utc(schedule.start_at) if schedule.start_at else after
        interval = timedelta(milliseconds=schedule.interval_ms)
        elapsed = max(timedelta(0), after - start)
        return start + (elapsed // interval + 1) * interval
    return as_utc(_cron(schedule, after).get_next(datetime))


def runs_between(schedule: Schedule, start: datetime, end: datetime) -> List[datetime]:
    """Every fire time in the closed window ``[start, end]``, in order."""
    start, end = as_utc(start), as_utc(end)
    if end < start:
        return []
    if isinstance(schedule, AtSchedule):
        timestamp = as_utc(schedule.timestamp)
        return [timestamp] if start <= timestamp <= end else []

    times: List[datetime] = []
    if isinstance(schedule, EverySchedule):
        interval = timedelta(milliseconds=schedule.interval_ms)
        current = as_utc(schedule.start_at) if schedule.start_at else start
        if current < start:
            current += -((current - start) // interval) * interval
        while current <= end:
            times.append(current)
            current += interval
        return times

    # start one second early so that a fire time equal to ``start`` is kept
    cron = _cron(schedule, start - timedelta(seconds=1))
    while True:
        current = as_utc(cron.get_next(datetime))
        if current > end:
            return times
        times.append(current)


class ScheduledTaskSummary(BaseModel):
    """A published workflow with schedule triggers, and how its runs went."""

    workflow_id: str
    workflow_version: int
    name: str
    status: str
    schedules: List[Schedule] = Field(default_factory=list)
    enabled: bool = False
    next_run_at: Optional[datetime] = None
    run_count: int = 0
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
