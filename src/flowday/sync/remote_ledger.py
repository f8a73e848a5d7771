# src/flowday/sync/remote_ledger.py

from __future__ import annotations

"""
Remote ledger change model and an in-memory document store.

InMemoryRemoteLedger behaves like a snapshot-listener document store:
- documents live under users/{owner_id}/tasks/{task_id}, last write wins
- subscribe() delivers the owner's current documents as one ADDED batch
- put() delivers a cache-origin echo (pending write) first, then the
  server-confirmed ADDED/MODIFIED change
- delete() delivers REMOVED

Listeners run synchronously in the writer's context, which plays the role of
the store's delivery thread.
"""

import asyncio
import copy
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..core.errors import RemoteSubscriptionError, RemoteWriteError
from ..core.ports import ChangeListener

logger = logging.getLogger(__name__)


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class RemoteChange:
    type: ChangeType
    id: str
    record: dict[str, Any] | None
    # True for notifications raised by the store's own local cache before the
    # server acknowledged the write.
    from_cache: bool = False


@dataclass(slots=True)
class _Registration:
    owner_id: str
    listener: ChangeListener
    active: bool = True


@dataclass(slots=True)
class LedgerSubscription:
    """Handle returned by InMemoryRemoteLedger.subscribe."""

    _ledger: InMemoryRemoteLedger
    _reg: _Registration
    closed: bool = field(default=False)

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._ledger._remove(self._reg)


class InMemoryRemoteLedger:
    """
    RemoteLedger implementation kept in process memory.

    Fault injection for tests and demos:
    - fail_writes: put/delete raise RemoteWriteError
    - fail_subscribe: subscribe raises RemoteSubscriptionError
    - emit_echoes: turn cache-origin notifications on/off
    """

    def __init__(self, *, emit_echoes: bool = True, latency_seconds: float = 0.0) -> None:
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}
        self._regs: list[_Registration] = []
        self._lock = threading.RLock()
        self.emit_echoes = emit_echoes
        self.latency_seconds = max(0.0, float(latency_seconds))
        self.fail_writes = False
        self.fail_subscribe = False

    # ---- helpers ----

    def _remove(self, reg: _Registration) -> None:
        with self._lock:
            reg.active = False
            if reg in self._regs:
                self._regs.remove(reg)
        logger.debug("Ledger listener removed owner=%s", reg.owner_id)

    def _deliver(self, owner_id: str, changes: Sequence[RemoteChange]) -> None:
        with self._lock:
            regs = [r for r in self._regs if r.active and r.owner_id == owner_id]
        for reg in regs:
            try:
                reg.listener(list(changes))
            except Exception:
                logger.exception("Ledger listener failed owner=%s", owner_id)

    async def _simulate_latency(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

    # ---- RemoteLedger API ----

    async def put(self, owner_id: str, task_id: str, record: dict[str, Any]) -> None:
        if not owner_id or not task_id:
            raise RemoteWriteError("owner_id and task_id are required")

        payload = copy.deepcopy(dict(record))
        if self.emit_echoes:
            with self._lock:
                pending_type = ChangeType.MODIFIED if task_id in self._docs.get(owner_id, {}) else ChangeType.ADDED
            self._deliver(owner_id, [RemoteChange(pending_type, task_id, copy.deepcopy(payload), True)])

        await self._simulate_latency()
        if self.fail_writes:
            raise RemoteWriteError(f"put rejected owner={owner_id} id={task_id}")

        with self._lock:
            docs = self._docs.setdefault(owner_id, {})
            existed = task_id in docs
            docs[task_id] = payload
        change_type = ChangeType.MODIFIED if existed else ChangeType.ADDED
        self._deliver(owner_id, [RemoteChange(change_type, task_id, copy.deepcopy(payload))])

    async def delete(self, owner_id: str, task_id: str) -> None:
        await self._simulate_latency()
        if self.fail_writes:
            raise RemoteWriteError(f"delete rejected owner={owner_id} id={task_id}")

        with self._lock:
            removed = self._docs.get(owner_id, {}).pop(task_id, None)
        if removed is not None:
            self._deliver(owner_id, [RemoteChange(ChangeType.REMOVED, task_id, None)])

    async def query(self, owner_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._docs.get(owner_id, {}).values()]

    async def subscribe(self, owner_id: str, listener: ChangeListener) -> LedgerSubscription:
        await self._simulate_latency()
        if self.fail_subscribe:
            raise RemoteSubscriptionError(f"ledger unreachable owner={owner_id}")

        reg = _Registration(owner_id=owner_id, listener=listener)
        with self._lock:
            self._regs.append(reg)
            initial = [
                RemoteChange(ChangeType.ADDED, task_id, copy.deepcopy(doc))
                for task_id, doc in self._docs.get(owner_id, {}).items()
            ]
        logger.debug("Ledger listener added owner=%s initial=%d", owner_id, len(initial))
        if initial:
            try:
                listener(initial)
            except Exception:
                logger.exception("Ledger listener failed on initial snapshot owner=%s", owner_id)
        return LedgerSubscription(self, reg)

    # ---- inspection / server-side writes ----

    def document(self, owner_id: str, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._docs.get(owner_id, {}).get(task_id)
            return copy.deepcopy(doc) if doc is not None else None

    def listener_count(self, owner_id: str | None = None) -> int:
        with self._lock:
            return sum(1 for r in self._regs if r.active and (owner_id is None or r.owner_id == owner_id))

    def server_put(self, owner_id: str, task_id: str, record: dict[str, Any]) -> None:
        """A write made by another device: no local echo, confirmed change only."""
        with self._lock:
            docs = self._docs.setdefault(owner_id, {})
            existed = task_id in docs
            docs[task_id] = copy.deepcopy(dict(record))
        change_type = ChangeType.MODIFIED if existed else ChangeType.ADDED
        self._deliver(owner_id, [RemoteChange(change_type, task_id, copy.deepcopy(dict(record)))])

    def server_delete(self, owner_id: str, task_id: str) -> None:
        with self._lock:
            removed = self._docs.get(owner_id, {}).pop(task_id, None)
        if removed is not None:
            self._deliver(owner_id, [RemoteChange(ChangeType.REMOVED, task_id, None)])

    def server_batch(self, owner_id: str, changes: Sequence[RemoteChange]) -> None:
        """Deliver a raw batch (may contain malformed records) and apply it server-side."""
        with self._lock:
            docs = self._docs.setdefault(owner_id, {})
            for ch in changes:
                if ch.from_cache:
                    continue
                if ch.type is ChangeType.REMOVED:
                    docs.pop(ch.id, None)
                elif isinstance(ch.record, dict):
                    docs[ch.id] = copy.deepcopy(ch.record)
        self._deliver(owner_id, list(changes))
