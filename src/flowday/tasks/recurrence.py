# src/flowday/tasks/recurrence.py

from __future__ import annotations

"""
Recurrence evaluation.

Decides whether a definition occurs on a calendar date. All timestamps are epoch
milliseconds and are converted to calendar dates in one time zone per call: the
device's local zone unless `tz` is given. The zone is never stored.

Known edge case: monthly definitions match on the anchor's day-of-month with no
clamping, so a definition anchored on the 31st does not occur in 30-day months
(nor on Feb 28/29).
"""

from datetime import date, datetime, time, tzinfo

from .task_models import Occurrence, RecurrenceKind, TaskDefinition, normalize_valid_until

DAY_MS = 24 * 60 * 60 * 1000


def local_date(ts_ms: int, tz: tzinfo | None = None) -> date:
    """Calendar date of an epoch-ms timestamp in `tz` (local zone when None)."""
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=tz).date()


def start_of_day_ms(day: date, tz: tzinfo | None = None) -> int:
    """Epoch ms of local midnight at the start of `day`."""
    dt = datetime.combine(day, time.min)
    if tz is not None:
        dt = dt.replace(tzinfo=tz)
    return int(dt.timestamp() * 1000)


def combine_date_time_ms(day: date, tod: time, tz: tzinfo | None = None) -> int:
    """Epoch ms of `day` at time-of-day `tod`."""
    dt = datetime.combine(day, tod.replace(tzinfo=None))
    if tz is not None:
        dt = dt.replace(tzinfo=tz)
    return int(dt.timestamp() * 1000)


def time_of_day(ts_ms: int, tz: tzinfo | None = None) -> time:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=tz).time().replace(tzinfo=None)


def occurs_on(definition: TaskDefinition, day: date, *, tz: tzinfo | None = None) -> bool:
    if isinstance(day, datetime):
        day = day.date()

    anchor = local_date(definition.anchor_date, tz)
    if day < anchor:
        return False

    rec = definition.recurrence
    valid_until = normalize_valid_until(rec.valid_until)
    if valid_until is not None and day > local_date(valid_until, tz):
        return False

    kind = rec.kind
    if kind is RecurrenceKind.DAILY:
        return True
    if kind is RecurrenceKind.WEEKLY:
        return day.isoweekday() in rec.weekly_days
    if kind is RecurrenceKind.MONTHLY:
        return day.day == anchor.day
    return day == anchor


def materialize(definition: TaskDefinition, day: date, *, tz: tzinfo | None = None) -> Occurrence | None:
    """Occurrence of `definition` on `day`, or None when it does not occur."""
    if not occurs_on(definition, day, tz=tz):
        return None
    tod = time_of_day(definition.execution_time, tz)
    return Occurrence(
        definition=definition,
        on_date=day,
        execution_at=combine_date_time_ms(day, tod, tz),
    )
