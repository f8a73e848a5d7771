# tests/test_main.py

from __future__ import annotations

import logging
from datetime import date, time
from types import SimpleNamespace

import pytest

import flowday.main as main_mod
from flowday.logging_setup import LOG_FILE_NAME, level_from_name
from flowday.tasks.task_store import TaskStore

from .fakes import make_definition


@pytest.fixture()
def restore_root_logging():
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in saved[0]:
        root.addHandler(h)
    root.setLevel(saved[1])
    logging.captureWarnings(False)


def test_level_from_name() -> None:
    assert level_from_name("debug") == logging.DEBUG
    assert level_from_name(" WARNING ") == logging.WARNING
    assert level_from_name("chatty") == logging.INFO
    assert level_from_name(None, logging.ERROR) == logging.ERROR


def test_main_logs_to_settings_dir_and_prints_agenda(
    settings: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    restore_root_logging,
) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    TaskStore(settings.tasks_db_path).upsert(make_definition("t1", name="water plants", on=date.today(), at=time(9, 30)))
    monkeypatch.setattr(main_mod, "get_settings", lambda: settings)

    main_mod.main()

    out = capsys.readouterr().out
    assert "0/1 done" in out
    assert "09:30  [active] water plants (One Time)" in out

    for h in logging.getLogger().handlers:
        h.flush()
    log_text = (settings.log_dir / LOG_FILE_NAME).read_text("utf-8")
    assert "Starting flowday-test" in log_text
    assert logging.getLogger().handlers[0].level == logging.DEBUG


@pytest.mark.parametrize(
    "name, level, shown",
    [
        ("flowday.sync.engine", logging.DEBUG, True),
        ("flowday.sync.remote_ledger", logging.INFO, False),
        ("flowday.sync.remote_ledger", logging.WARNING, True),
        ("asyncio", logging.WARNING, False),
        ("py.warnings", logging.ERROR, True),
    ],
)
def test_console_filter(name: str, level: int, shown: bool) -> None:
    from flowday.logging_setup import _ConsoleNoiseFilter

    record = logging.LogRecord(name, level, __file__, 1, "msg", None, None)
    assert _ConsoleNoiseFilter().filter(record) is shown
