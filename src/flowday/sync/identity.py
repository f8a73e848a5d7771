# src/flowday/sync/identity.py

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable

from ..core.ports import IdentityListener

logger = logging.getLogger(__name__)


class LocalIdentityProvider:
    """
    Holds the signed-in owner id and notifies listeners on change.

    The real sign-in flow lives outside this package; whatever drives it calls
    sign_in(owner_id) / sign_out().
    """

    def __init__(self, owner_id: str | None = None) -> None:
        self._owner_id = owner_id or None
        self._listeners: list[IdentityListener] = []
        self._lock = threading.Lock()

    def current_identity(self) -> str | None:
        with self._lock:
            return self._owner_id

    def on_identity_change(self, listener: IdentityListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock, contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def sign_in(self, owner_id: str) -> None:
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id is required")
        self._set(owner_id.strip())

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, owner_id: str | None) -> None:
        with self._lock:
            self._owner_id = owner_id
            listeners = list(self._listeners)
        logger.info("Identity changed owner=%s", owner_id)
        for listener in listeners:
            try:
                listener(owner_id)
            except Exception:
                logger.exception("Identity listener failed")
