# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from flowday.sync.engine import ReconciliationEngine
from flowday.sync.identity import LocalIdentityProvider
from flowday.sync.remote_ledger import InMemoryRemoteLedger
from flowday.tasks.task_store import TaskStore


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="flowday-test",
        log_level="DEBUG",
        data_dir=tmp_path / "data",
        tasks_db_path=tmp_path / "data" / "tasks.sqlite3",
        log_dir=tmp_path / "logs",
        rollover_on_start=True,
        mirror_rollover_remote=True,
        push_migrated_on_sign_in=True,
        remote_timeout_seconds=2.0,
    )


@pytest.fixture()
def store(settings: SimpleNamespace) -> TaskStore:
    """
    Real SQLite store: its correctness is part of what we want to test.
    """
    return TaskStore(settings.tasks_db_path)


@pytest.fixture()
def ledger() -> InMemoryRemoteLedger:
    return InMemoryRemoteLedger()


@pytest.fixture()
def identity() -> LocalIdentityProvider:
    return LocalIdentityProvider()


@pytest.fixture()
def engine(store: TaskStore, ledger: InMemoryRemoteLedger, identity: LocalIdentityProvider) -> ReconciliationEngine:
    return ReconciliationEngine(store, ledger, identity=identity, remote_timeout_seconds=2.0)
