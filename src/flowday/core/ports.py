# src/flowday/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the reconciliation core.

The engine, scheduler and service depend on Protocols instead of concrete
implementations. This keeps the local store, the remote ledger and the identity
provider swappable and makes testing easier.
"""

from collections.abc import Callable, Iterable, Sequence
from typing import Any, Awaitable, Protocol

# Called after every committed local write; listeners re-read what they need.
StoreListener = Callable[[], None]

# Receives one batch of remote changes (RemoteChange objects) from the delivery context.
ChangeListener = Callable[[Sequence[Any]], None]

IdentityListener = Callable[[str | None], None]


class TaskRepo(Protocol):
    """Local durable store. Every method is durable on return."""

    def list_definitions(self, owner_id: str | None) -> list[Any]: ...
    def get(self, task_id: str) -> Any | None: ...
    def upsert(self, definition: Any) -> None: ...
    def upsert_many(self, definitions: Iterable[Any]) -> list[str]: ...
    def delete(self, task_id: str) -> bool: ...
    def bulk_reassign_owner(self, new_owner_id: str) -> list[str]: ...
    def bulk_mark_failed(self, before_ms: int, owner_id: str | None) -> list[str]: ...
    def add_listener(self, listener: StoreListener) -> Callable[[], None]: ...


class RemoteSubscription(Protocol):
    def unsubscribe(self) -> None: ...


class RemoteLedger(Protocol):
    """
    Remote authoritative document store.

    Per-document last-write-wins, keyed by definition id under an owner.
    `subscribe` registers a listener and returns a handle; the listener receives
    batches of RemoteChange in delivery order.
    """

    def put(self, owner_id: str, task_id: str, record: dict[str, Any]) -> Awaitable[None]: ...
    def delete(self, owner_id: str, task_id: str) -> Awaitable[None]: ...
    def query(self, owner_id: str) -> Awaitable[list[dict[str, Any]]]: ...
    def subscribe(self, owner_id: str, listener: ChangeListener) -> Awaitable[RemoteSubscription]: ...


class IdentityProvider(Protocol):
    def current_identity(self) -> str | None: ...
    def on_identity_change(self, listener: IdentityListener) -> Callable[[], None]: ...
