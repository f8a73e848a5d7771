# src/flowday/bootstrap.py

"""
Composition root.

- loads settings once (or takes them injected),
- ensures local (gitignored) directories exist,
- wires store, ledger, identity, engine, scheduler and service into AppState,
- activates and shuts down the engine.
"""

from __future__ import annotations

import logging

from .config import get_settings
from .core.ports import IdentityProvider, RemoteLedger
from .core.state import AppState
from .sync.engine import ReconciliationEngine
from .sync.identity import LocalIdentityProvider
from .sync.remote_ledger import InMemoryRemoteLedger
from .tasks.rollover import RolloverScheduler
from .tasks.task_service import TaskService
from .tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_app_state(
    *,
    settings=None,
    ledger: RemoteLedger | None = None,
    identity: IdentityProvider | None = None,
) -> AppState:
    """
    Build AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    Without a ledger, an in-process InMemoryRemoteLedger is used.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = TaskStore(settings.tasks_db_path)
    ledger = ledger if ledger is not None else InMemoryRemoteLedger()
    identity = identity if identity is not None else LocalIdentityProvider()

    engine = ReconciliationEngine(
        store,
        ledger,
        identity=identity,
        remote_timeout_seconds=settings.remote_timeout_seconds,
        push_migrated_on_sign_in=settings.push_migrated_on_sign_in,
    )
    scheduler = RolloverScheduler(store, engine, mirror_remote=settings.mirror_rollover_remote)
    service = TaskService(store, engine, scheduler)

    return AppState(
        settings=settings,
        task_store=store,
        ledger=ledger,
        identity=identity,
        engine=engine,
        scheduler=scheduler,
        service=service,
    )


async def start_app(state: AppState) -> None:
    """Engine activation: enter the current identity's session, then run one rollover pass."""
    await state.engine.start()
    if state.settings.rollover_on_start:
        await state.scheduler.run_once()
    state.started = True
    logger.info("%s started owner=%s", getattr(state.settings, "app_name", "flowday"), state.engine.owner_id)


async def shutdown_app(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await state.engine.stop()
    except Exception:
        logger.exception("Engine stop failed.")

    try:
        state.service.close()
    except Exception:
        logger.debug("Service close failed.", exc_info=True)

    # TaskStore uses short-lived sqlite connections per call; close only drops listeners.
    try:
        state.task_store.close()
    except Exception:
        logger.debug("TaskStore close failed.", exc_info=True)

    state.started = False
    logger.info("Bye.")
