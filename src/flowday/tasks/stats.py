# src/flowday/tasks/stats.py

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta, tzinfo
from enum import StrEnum

from .recurrence import local_date
from .task_models import TaskDefinition, TaskStatus


class StatsView(StrEnum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True, slots=True)
class CompletionSummary:
    view: StatsView
    start: date
    end: date
    total: int
    completed: int
    failed: int
    carried_forward: int

    @property
    def completion_percent(self) -> int:
        if self.total <= 0:
            return 0
        return int(self.completed * 100 / self.total)


def period_bounds(view: StatsView, today: date) -> tuple[date, date]:
    """Inclusive bounds: ISO week (Mon..Sun) or calendar month containing `today`."""
    if view is StatsView.WEEKLY:
        start = today - timedelta(days=today.isoweekday() - 1)
        return start, start + timedelta(days=6)
    start = today.replace(day=1)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return start, next_month - timedelta(days=1)


def summarize(
    definitions: Iterable[TaskDefinition],
    view: StatsView | str,
    today: date,
    *,
    tz: tzinfo | None = None,
) -> CompletionSummary:
    """Status counts over definitions anchored inside the period."""
    view = StatsView(view)
    start, end = period_bounds(view, today)

    counts = {status: 0 for status in TaskStatus}
    total = 0
    for d in definitions:
        if start <= local_date(d.anchor_date, tz) <= end:
            total += 1
            counts[d.status] += 1

    return CompletionSummary(
        view=view,
        start=start,
        end=end,
        total=total,
        completed=counts[TaskStatus.COMPLETED],
        failed=counts[TaskStatus.FAILED],
        carried_forward=counts[TaskStatus.CARRIED_FORWARD],
    )


def today_progress(
    definitions: Iterable[TaskDefinition],
    today: date,
    *,
    tz: tzinfo | None = None,
) -> tuple[int, int]:
    """(completed, total) for definitions anchored on `today`."""
    todays = [d for d in definitions if local_date(d.anchor_date, tz) == today]
    done = sum(1 for d in todays if d.status is TaskStatus.COMPLETED)
    return done, len(todays)
