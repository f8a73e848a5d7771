# src/flowday/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..sync.engine import ReconciliationEngine
from ..sync.identity import LocalIdentityProvider
from ..tasks.rollover import RolloverScheduler
from ..tasks.task_service import TaskService
from ..tasks.task_store import TaskStore
from .ports import IdentityProvider, RemoteLedger


@dataclass(slots=True)
class AppState:
    # Settings object (flowday.config.Settings or a compatible namespace in tests).
    settings: Any

    task_store: TaskStore
    ledger: RemoteLedger
    identity: IdentityProvider | LocalIdentityProvider
    engine: ReconciliationEngine
    scheduler: RolloverScheduler
    service: TaskService

    started: bool = False
