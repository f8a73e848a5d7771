# src/flowday/tasks/task_service.py

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Callable, Iterable
from datetime import date, time as dtime, tzinfo

from ..core.errors import TaskValidationError
from ..core.ports import TaskRepo
from ..sync.engine import ReconciliationEngine
from .recurrence import combine_date_time_ms, local_date, materialize, start_of_day_ms
from .rollover import Clock, RolloverScheduler
from .stats import CompletionSummary, StatsView, summarize, today_progress
from .task_models import (
    Occurrence,
    Recurrence,
    RecurrenceKind,
    TaskDefinition,
    TaskStatus,
    normalize_valid_until,
    parse_weekdays,
)

logger = logging.getLogger(__name__)

FeedListener = Callable[[list[TaskDefinition]], None]


class TaskService:
    """
    Facade consumed by the presentation layer.

    Holds the owner-scoped definition feed (reloaded from the store after every write
    and every session transition) plus the calendar-dot set derived from it. All
    commands go through the reconciliation engine.
    """

    def __init__(
        self,
        store: TaskRepo,
        engine: ReconciliationEngine,
        scheduler: RolloverScheduler,
        *,
        clock: Clock = time.time,
        tz: tzinfo | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._scheduler = scheduler
        self._clock = clock
        self._tz = tz

        self._definitions: list[TaskDefinition] = []
        self._dots: frozenset[date] = frozenset()
        self._listeners: list[FeedListener] = []
        self._selected_date: date | None = None

        self._remove_store_listener = store.add_listener(self._reload)
        self._remove_session_listener = engine.add_session_listener(lambda _owner: self._reload())
        self._reload()

    def close(self) -> None:
        self._remove_store_listener()
        self._remove_session_listener()
        self._listeners.clear()

    # ---- feed ----

    def _reload(self) -> None:
        definitions = self._store.list_definitions(self._engine.owner_id)
        self._definitions = definitions
        self._dots = frozenset(local_date(d.anchor_date, self._tz) for d in definitions)
        for listener in list(self._listeners):
            try:
                listener(list(definitions))
            except Exception:
                logger.exception("Feed listener failed")

    def subscribe(self, listener: FeedListener) -> Callable[[], None]:
        """Receive the full definition list now and after every change. Returns a remover."""
        self._listeners.append(listener)
        listener(list(self._definitions))

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    @property
    def definitions(self) -> list[TaskDefinition]:
        return list(self._definitions)

    @property
    def calendar_dots(self) -> frozenset[date]:
        return self._dots

    def has_tasks_on(self, day: date) -> bool:
        return day in self._dots

    def occurrences_on(self, day: date) -> list[Occurrence]:
        out: list[Occurrence] = []
        for d in self._definitions:
            occ = materialize(d, day, tz=self._tz)
            if occ is not None:
                out.append(occ)
        return out

    def today(self) -> date:
        return local_date(int(self._clock() * 1000), self._tz)

    @property
    def selected_date(self) -> date:
        return self._selected_date or self.today()

    def set_selected_date(self, day: date) -> None:
        self._selected_date = day

    def statistics(self, view: StatsView | str = StatsView.WEEKLY) -> CompletionSummary:
        return summarize(self._definitions, view, self.today(), tz=self._tz)

    def today_progress(self) -> tuple[int, int]:
        return today_progress(self._definitions, self.today(), tz=self._tz)

    # ---- commands ----

    def _in_scope(self, definition: TaskDefinition) -> bool:
        return (definition.owner_id or None) == self._engine.owner_id

    def _require(self, task_id: str) -> TaskDefinition:
        """Look up a definition in the current owner's scope (anonymous rows when signed out)."""
        definition = self._store.get(task_id)
        if definition is None or not self._in_scope(definition):
            raise TaskValidationError(f"unknown task id={task_id}")
        return definition

    async def add(
        self,
        name: str,
        *,
        on_date: date | None = None,
        at: dtime | None = None,
        kind: RecurrenceKind | str = RecurrenceKind.NONE,
        weekly_days: Iterable[int] | str | None = None,
        valid_until: date | int | None = None,
        validity_label: str | None = None,
    ) -> TaskDefinition:
        """
        Create an Active definition anchored at the start of `on_date` (default: the
        selected date). `at` is the time of day; execution_time is that time on the
        anchor date.
        """
        if not name or not name.strip():
            raise TaskValidationError("name is required")
        try:
            kind = RecurrenceKind(str(kind).strip().lower())
        except ValueError as exc:
            raise TaskValidationError(f"unknown recurrence kind {kind!r}") from exc

        day = on_date or self.selected_date
        days = parse_weekdays(weekly_days) if kind is RecurrenceKind.WEEKLY else frozenset()
        if isinstance(valid_until, date):
            valid_until = start_of_day_ms(valid_until, self._tz)
        valid_until = normalize_valid_until(valid_until)

        definition = TaskDefinition(
            id=TaskDefinition.new_id(),
            name=name.strip(),
            anchor_date=start_of_day_ms(day, self._tz),
            execution_time=combine_date_time_ms(day, at or dtime.min, self._tz),
            validity_label=validity_label if validity_label is not None else kind.label,
            status=TaskStatus.ACTIVE,
            owner_id=self._engine.owner_id,
            recurrence=Recurrence(kind=kind, weekly_days=days, valid_until=valid_until),
        )
        saved = await self._engine.save(definition)
        logger.info("Task added id=%s kind=%s anchor=%s", saved.id, kind.value, day)
        return saved

    async def delete(self, task_id: str) -> bool:
        """Delete a definition in the current scope. Unknown ids are not an error."""
        definition = self._store.get(task_id)
        if definition is not None and not self._in_scope(definition):
            raise TaskValidationError(f"unknown task id={task_id}")
        return await self._engine.delete(task_id)

    async def set_status(self, task_id: str, status: TaskStatus | str) -> TaskDefinition:
        """Apply a user disposition to an Active definition."""
        try:
            status = TaskStatus(status)
        except ValueError as exc:
            raise TaskValidationError(f"unknown status {status!r}") from exc

        definition = self._require(task_id)
        if status is TaskStatus.CARRIED_FORWARD:
            closed, _spawned = await self._scheduler.carry_forward(definition)
            return closed
        if status is TaskStatus.ACTIVE:
            raise TaskValidationError("status can only move away from active")
        if definition.status is not TaskStatus.ACTIVE:
            raise TaskValidationError(f"task id={task_id} is already {definition.status}")

        return await self._engine.save(definition.with_status(status))

    async def complete(self, task_id: str) -> TaskDefinition:
        return await self.set_status(task_id, TaskStatus.COMPLETED)

    async def fail(self, task_id: str) -> TaskDefinition:
        return await self.set_status(task_id, TaskStatus.FAILED)

    async def carry_forward(self, task_id: str) -> TaskDefinition:
        """Close the definition as carried forward; returns tomorrow's new definition."""
        _closed, spawned = await self._scheduler.carry_forward(self._require(task_id))
        return spawned

    async def rollover(self) -> list[str]:
        return await self._scheduler.run_once()

    async def refresh(self) -> int:
        """Pull the owner's remote documents once (no-op when anonymous)."""
        return await self._engine.pull_remote()
