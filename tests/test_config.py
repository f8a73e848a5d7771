# tests/test_config.py

from __future__ import annotations

from pathlib import Path

import pytest

from flowday.config import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FLOWDAY_APP_NAME",
        "FLOWDAY_DATA_DIR",
        "FLOWDAY_TASKS_DB_PATH",
        "FLOWDAY_LOG_DIR",
        "FLOWDAY_ROLLOVER_ON_START",
        "FLOWDAY_REMOTE_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    s = Settings.from_env(load_env_file=False)

    assert s.app_name == "flowday"
    assert s.data_dir == Path(".local/flowday")
    assert s.tasks_db_path == Path(".local/flowday/tasks.sqlite3")
    assert s.rollover_on_start is True
    assert s.remote_timeout_seconds == 10.0


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLOWDAY_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("FLOWDAY_TASKS_DB_PATH", raising=False)
    monkeypatch.setenv("FLOWDAY_LOG_LEVEL", "debug")
    monkeypatch.setenv("FLOWDAY_ROLLOVER_ON_START", "no")
    monkeypatch.setenv("FLOWDAY_MIRROR_ROLLOVER_REMOTE", "off")
    monkeypatch.setenv("FLOWDAY_REMOTE_TIMEOUT_SECONDS", "not-a-number")

    s = Settings.from_env(load_env_file=False)

    assert s.tasks_db_path == tmp_path / "tasks.sqlite3"
    assert s.log_level == "DEBUG"
    assert s.rollover_on_start is False
    assert s.mirror_rollover_remote is False
    assert s.remote_timeout_seconds == 10.0
