# src/flowday/sync/engine.py

from __future__ import annotations

"""
Reconciliation engine.

Keeps the local TaskStore and the remote ledger convergent. The local store is the
only thing the rest of the app reads from:

- commands are written locally first, then mirrored remotely (best-effort, single
  attempt, no retry; a failed mirror is logged and local state stays as written)
- while authenticated, one remote change subscription per session feeds an
  asyncio.Queue; a single consumer task applies batches in arrival order
- cache-origin (pending write) notifications are ignored
- a malformed remote record is skipped and logged; the rest of its batch applies

Session transitions are serialized. Sign-in migrates anonymous definitions to the
new owner before the subscription is opened; any prior subscription is torn down
first. Sign-out tears down the subscription and drops batches not yet applied.
"""

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from ..core.errors import LocalStorageError, MalformedRemoteRecord
from ..core.ports import IdentityProvider, RemoteLedger, RemoteSubscription, TaskRepo
from ..tasks.task_models import TaskDefinition
from .remote_ledger import ChangeType, RemoteChange

logger = logging.getLogger(__name__)

SessionListener = Callable[[str | None], None]


class SessionState(StrEnum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


@dataclass(slots=True, eq=False)
class _LiveSubscription:
    owner_id: str
    queue: asyncio.Queue[list[RemoteChange]] = field(default_factory=asyncio.Queue)
    handle: RemoteSubscription | None = None
    consumer: asyncio.Task[None] | None = None
    active: bool = True


class ReconciliationEngine:
    def __init__(
        self,
        store: TaskRepo,
        ledger: RemoteLedger,
        *,
        identity: IdentityProvider | None = None,
        remote_timeout_seconds: float = 10.0,
        push_migrated_on_sign_in: bool = True,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._identity = identity
        self._timeout = max(0.1, float(remote_timeout_seconds))
        self._push_migrated = push_migrated_on_sign_in

        self._owner_id: str | None = None
        self._sub: _LiveSubscription | None = None
        self._session_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._remove_identity_listener: Callable[[], None] | None = None
        self._transitions: set[asyncio.Task[None]] = set()
        self._session_listeners: list[SessionListener] = []

        # Ids of remote records that could not be materialized (most recent last).
        self.rejected_record_ids: deque[str | None] = deque(maxlen=128)

    # ---- session state ----

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def state(self) -> SessionState:
        return SessionState.AUTHENTICATED if self._owner_id else SessionState.ANONYMOUS

    @property
    def is_subscribed(self) -> bool:
        return self._sub is not None and self._sub.active

    def add_session_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Called with the new owner id (or None) after every completed transition."""
        self._session_listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._session_listeners.remove(listener)

        return remove

    def _emit_session(self) -> None:
        for listener in list(self._session_listeners):
            try:
                listener(self._owner_id)
            except Exception:
                logger.exception("Session listener failed")

    # ---- lifecycle ----

    async def start(self) -> None:
        """Bind to the running loop, follow the identity provider, enter the current session."""
        self._loop = asyncio.get_running_loop()
        if self._identity is None:
            return
        if self._remove_identity_listener is None:
            self._remove_identity_listener = self._identity.on_identity_change(self._on_identity_change)
        current = self._identity.current_identity()
        if current:
            await self.sign_in(current)

    async def stop(self) -> None:
        if self._remove_identity_listener is not None:
            self._remove_identity_listener()
            self._remove_identity_listener = None

        for task in list(self._transitions):
            task.cancel()
        for task in list(self._transitions):
            with contextlib.suppress(asyncio.CancelledError):
                await task

        async with self._session_lock:
            await self._teardown_subscription()
        logger.info("Reconciliation engine stopped")

    async def drain(self) -> None:
        """Wait until pending identity transitions and queued remote batches are applied."""
        while self._transitions:
            await asyncio.gather(*list(self._transitions), return_exceptions=True)
        live = self._sub
        if live is not None and live.active:
            await live.queue.join()

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("reconciliation engine is not bound to an event loop")
        return self._loop

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _on_identity_change(self, owner_id: str | None) -> None:
        # May be called from any thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Identity change ignored: engine not started")
            return
        if self._on_loop_thread():
            self._schedule_transition(owner_id)
        else:
            loop.call_soon_threadsafe(self._schedule_transition, owner_id)

    def _schedule_transition(self, owner_id: str | None) -> None:
        task = self._require_loop().create_task(self._run_transition(owner_id))
        self._transitions.add(task)
        task.add_done_callback(self._transitions.discard)

    async def _run_transition(self, owner_id: str | None) -> None:
        try:
            if owner_id:
                await self.sign_in(owner_id)
            else:
                await self.sign_out()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session transition failed owner=%s", owner_id)

    # ---- transitions ----

    async def sign_in(self, owner_id: str) -> list[str]:
        """
        Enter Authenticated(owner_id).

        1. tear down any live subscription
        2. migrate anonymous definitions to owner_id (one transaction)
        3. mirror the migrated definitions remotely (best-effort)
        4. open the owner's change subscription

        Returns the migrated ids. A local storage failure during migration propagates
        and leaves the session without a subscription.
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        async with self._session_lock:
            await self._teardown_subscription()

            migrated = self._store.bulk_reassign_owner(owner_id)
            self._owner_id = owner_id
            logger.info("Signed in owner=%s migrated=%d", owner_id, len(migrated))

            if migrated and self._push_migrated:
                for task_id in migrated:
                    definition = self._store.get(task_id)
                    if definition is not None:
                        await self._mirror_put(definition)

            await self._open_subscription(owner_id)
        self._emit_session()
        return migrated

    async def sign_out(self) -> None:
        async with self._session_lock:
            await self._teardown_subscription()
            previous, self._owner_id = self._owner_id, None
        logger.info("Signed out owner=%s", previous)
        self._emit_session()

    # ---- subscription ----

    async def _open_subscription(self, owner_id: str) -> None:
        live = _LiveSubscription(owner_id=owner_id)

        def listener(changes: Sequence[RemoteChange]) -> None:
            self._enqueue(live, list(changes))

        try:
            live.handle = await asyncio.wait_for(self._ledger.subscribe(owner_id, listener), self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            live.active = False
            logger.warning("Remote subscription failed owner=%s: %s (no live updates)", owner_id, exc)
            return

        live.consumer = self._require_loop().create_task(self._consume(live))
        self._sub = live
        logger.info("Remote subscription opened owner=%s", owner_id)

    async def _teardown_subscription(self) -> None:
        live, self._sub = self._sub, None
        if live is None:
            return

        live.active = False
        if live.handle is not None:
            try:
                live.handle.unsubscribe()
            except Exception:
                logger.exception("unsubscribe failed owner=%s", live.owner_id)

        if live.consumer is not None:
            live.consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await live.consumer

        dropped = live.queue.qsize()
        logger.info("Remote subscription closed owner=%s dropped_batches=%d", live.owner_id, dropped)

    def _enqueue(self, live: _LiveSubscription, batch: list[RemoteChange]) -> None:
        # Runs on the ledger's delivery context; never applies anything itself.
        if not live.active:
            return
        if self._on_loop_thread():
            live.queue.put_nowait(batch)
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._put_if_active, live, batch)

    @staticmethod
    def _put_if_active(live: _LiveSubscription, batch: list[RemoteChange]) -> None:
        if live.active:
            live.queue.put_nowait(batch)

    async def _consume(self, live: _LiveSubscription) -> None:
        while True:
            batch = await live.queue.get()
            try:
                if live.active:
                    self.apply_changes(batch, owner_id=live.owner_id)
            except Exception:
                logger.exception("Remote batch failed owner=%s size=%d", live.owner_id, len(batch))
            finally:
                live.queue.task_done()

    def apply_changes(self, changes: Iterable[RemoteChange], *, owner_id: str | None = None) -> int:
        """
        Apply one batch of remote changes to the local store, in order.

        Returns the number of changes applied. Cache-origin changes and malformed
        records are skipped; a local storage failure skips only that change.
        """
        applied = 0
        for change in changes:
            if change.from_cache:
                logger.debug("Ignoring cache-origin change id=%s", change.id)
                continue
            try:
                if change.type is ChangeType.REMOVED:
                    self._store.delete(change.id)
                else:
                    definition = TaskDefinition.from_record(
                        change.record,  # type: ignore[arg-type]
                        record_id=change.id,
                        owner_id=owner_id,
                    )
                    self._store.upsert(definition)
            except MalformedRemoteRecord as exc:
                self.rejected_record_ids.append(exc.record_id)
                logger.warning("Skipping malformed remote record id=%s: %s", exc.record_id, exc.reason)
                continue
            except LocalStorageError:
                logger.exception("Local apply failed for remote change id=%s type=%s", change.id, change.type)
                continue
            applied += 1
            logger.debug("Applied remote change id=%s type=%s", change.id, change.type.value)
        return applied

    async def pull_remote(self) -> int:
        """
        One-shot full pull of the owner's remote documents into the local store.

        Useful when the live subscription could not be opened. Returns the count applied.
        """
        owner_id = self._owner_id
        if not owner_id:
            return 0
        try:
            records = await asyncio.wait_for(self._ledger.query(owner_id), self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Remote pull failed owner=%s: %s", owner_id, exc)
            return 0

        changes = [
            RemoteChange(ChangeType.ADDED, str(r.get("id") or "") if isinstance(r, dict) else "", r)
            for r in records
        ]
        applied = self.apply_changes(changes, owner_id=owner_id)
        logger.info("Remote pull owner=%s records=%d applied=%d", owner_id, len(records), applied)
        return applied

    # ---- commands ----

    async def save(self, definition: TaskDefinition) -> TaskDefinition:
        """
        Write a full definition locally, then mirror it when authenticated.

        Validation and local storage errors propagate; remote errors do not.
        """
        (saved,) = await self.save_many([definition])
        return saved

    async def save_many(self, definitions: Iterable[TaskDefinition]) -> list[TaskDefinition]:
        """
        Write several definitions in one local transaction, then mirror each of them.

        Nothing is mirrored unless the local commit succeeded.
        """
        stamped: list[TaskDefinition] = []
        for definition in definitions:
            definition.validate()
            if self._owner_id and definition.owner_id != self._owner_id:
                definition = definition.with_owner(self._owner_id)
            stamped.append(definition)

        self._store.upsert_many(stamped)
        for definition in stamped:
            await self._mirror_put(definition)
        return stamped

    async def delete(self, task_id: str) -> bool:
        removed = self._store.delete(task_id)
        await self._mirror_delete(task_id)
        return removed

    async def mirror(self, definitions: Iterable[TaskDefinition]) -> int:
        """Push already-stored definitions to the ledger. Returns how many succeeded."""
        ok = 0
        for definition in definitions:
            if await self._mirror_put(definition):
                ok += 1
        return ok

    async def _mirror_put(self, definition: TaskDefinition) -> bool:
        owner_id = self._owner_id
        if not owner_id:
            return False
        try:
            await asyncio.wait_for(
                self._ledger.put(owner_id, definition.id, definition.to_record()),
                self._timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Remote write failed id=%s owner=%s: %s", definition.id, owner_id, exc)
            return False
        return True

    async def _mirror_delete(self, task_id: str) -> bool:
        owner_id = self._owner_id
        if not owner_id:
            return False
        try:
            await asyncio.wait_for(self._ledger.delete(owner_id, task_id), self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Remote delete failed id=%s owner=%s: %s", task_id, owner_id, exc)
            return False
        return True
