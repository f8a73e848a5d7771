# src/flowday/tasks/rollover.py

from __future__ import annotations

"""
Daily rollover and carry-forward.

A rollover pass fails every Active definition whose anchor date is strictly before
the start of today (local time), scoped to the current owner or to anonymous rows.
It looks at anchor dates only: recurring definitions are not expanded here.

Run once per engine activation. Running it again in the same moment finds nothing
left to change.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, tzinfo

from ..core.errors import TaskValidationError
from ..core.ports import TaskRepo
from ..sync.engine import ReconciliationEngine
from .recurrence import DAY_MS, local_date, start_of_day_ms
from .task_models import TaskDefinition, TaskStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def build_carry_forward(
    definition: TaskDefinition,
    *,
    new_id: str | None = None,
    tz: tzinfo | None = None,
) -> tuple[TaskDefinition, TaskDefinition]:
    """
    Split an Active definition into (closed original, tomorrow's copy).

    The copy keeps name, label, owner and recurrence, gets a fresh id, is anchored one
    calendar day later (same wall-clock time) and runs exactly 24h after the original.
    """
    if definition.status is not TaskStatus.ACTIVE:
        raise TaskValidationError(
            f"only active definitions can be carried forward (id={definition.id} status={definition.status})"
        )

    anchor = datetime.fromtimestamp(definition.anchor_date / 1000.0, tz=tz)
    next_anchor = int((anchor + timedelta(days=1)).timestamp() * 1000)

    closed = definition.with_status(TaskStatus.CARRIED_FORWARD)
    spawned = replace(
        definition,
        id=new_id or TaskDefinition.new_id(),
        anchor_date=next_anchor,
        execution_time=definition.execution_time + DAY_MS,
        status=TaskStatus.ACTIVE,
    )
    return closed, spawned


class RolloverScheduler:
    def __init__(
        self,
        store: TaskRepo,
        engine: ReconciliationEngine,
        *,
        mirror_remote: bool = True,
        clock: Clock = time.time,
        tz: tzinfo | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._mirror_remote = mirror_remote
        self._clock = clock
        self._tz = tz
        self._lock = asyncio.Lock()

    def cutoff_ms(self, now_ts: float | None = None) -> int:
        """Epoch ms of local midnight today."""
        now_ts = self._clock() if now_ts is None else now_ts
        today = local_date(int(now_ts * 1000), self._tz)
        return start_of_day_ms(today, self._tz)

    async def run_once(self, *, now_ts: float | None = None) -> list[str]:
        """Fail overdue Active definitions in the current scope. Returns the ids failed."""
        async with self._lock:
            cutoff = self.cutoff_ms(now_ts)
            owner_id = self._engine.owner_id
            failed = self._store.bulk_mark_failed(cutoff, owner_id)
            logger.info("Rollover owner=%s cutoff=%s failed=%d", owner_id, cutoff, len(failed))

            if failed and owner_id and self._mirror_remote:
                changed = [d for d in (self._store.get(i) for i in failed) if d is not None]
                pushed = await self._engine.mirror(changed)
                if pushed < len(changed):
                    logger.warning("Rollover mirrored %d/%d definitions", pushed, len(changed))
            return failed

    async def carry_forward(self, definition: TaskDefinition) -> tuple[TaskDefinition, TaskDefinition]:
        """
        Close `definition` as carried forward and store tomorrow's copy.

        Both rows are committed in one local transaction. Returns (closed, spawned) as saved.
        """
        closed, spawned = build_carry_forward(definition, tz=self._tz)
        closed, spawned = await self._engine.save_many([closed, spawned])
        logger.info("Carried forward id=%s -> id=%s", definition.id, spawned.id)
        return closed, spawned
