# tests/test_engine.py

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from flowday.core.errors import LocalStorageError, TaskValidationError
from flowday.sync.engine import ReconciliationEngine, SessionState
from flowday.sync.identity import LocalIdentityProvider
from flowday.sync.remote_ledger import ChangeType, InMemoryRemoteLedger, RemoteChange
from flowday.tasks.task_models import TaskDefinition, TaskStatus
from flowday.tasks.task_store import TaskStore

from .fakes import make_definition


@pytest.mark.asyncio
async def test_anonymous_writes_stay_local(engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger) -> None:
    await engine.save(make_definition("t1"))

    assert engine.state is SessionState.ANONYMOUS
    assert store.get("t1") is not None
    assert await ledger.query("u1") == []
    assert ledger.listener_count() == 0


@pytest.mark.asyncio
async def test_sign_in_migrates_pushes_and_subscribes(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    store.upsert(make_definition("a"))
    store.upsert(make_definition("b"))

    migrated = await engine.sign_in("u1")
    await engine.drain()

    assert sorted(migrated) == ["a", "b"]
    assert engine.state is SessionState.AUTHENTICATED
    assert store.list_definitions(None) == []
    assert all(d.owner_id == "u1" for d in store.list_definitions("u1"))
    assert ledger.document("u1", "a") is not None
    assert ledger.listener_count("u1") == 1

    # Second transition with nothing anonymous: no-op migration, still one live listener.
    assert await engine.sign_in("u1") == []
    assert ledger.listener_count("u1") == 1

    await engine.stop()


@pytest.mark.asyncio
async def test_subscription_initial_snapshot_is_applied(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    ledger.server_put("u1", "remote-1", make_definition("remote-1", owner_id="u1").to_record())

    await engine.sign_in("u1")
    await engine.drain()

    got = store.get("remote-1")
    assert got is not None
    assert got.owner_id == "u1"

    await engine.stop()


@pytest.mark.asyncio
async def test_authenticated_writes_are_mirrored_by_id(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    await engine.sign_in("u1")

    saved = await engine.save(make_definition("t1"))
    await engine.drain()

    assert saved.owner_id == "u1"
    assert ledger.document("u1", "t1") == saved.to_record()
    assert store.get("t1") == saved

    assert await engine.delete("t1") is True
    await engine.drain()
    assert ledger.document("u1", "t1") is None
    assert store.get("t1") is None

    await engine.stop()


@pytest.mark.asyncio
async def test_applying_same_remote_change_twice_is_idempotent(engine: ReconciliationEngine, store: TaskStore) -> None:
    source = make_definition("r1", owner_id="u1")
    change = RemoteChange(ChangeType.ADDED, "r1", source.to_record())

    engine.apply_changes([change], owner_id="u1")
    engine.apply_changes([replace(change, type=ChangeType.MODIFIED)], owner_id="u1")

    assert store.count_definitions() == 1
    assert store.get("r1") == source


@pytest.mark.asyncio
async def test_cache_origin_changes_never_touch_the_store(engine: ReconciliationEngine, store: TaskStore) -> None:
    local = make_definition("t1", owner_id="u1")
    store.upsert(local)
    echo = replace(local, name="something else", status=TaskStatus.FAILED)

    applied = engine.apply_changes(
        [
            RemoteChange(ChangeType.MODIFIED, "t1", echo.to_record(), from_cache=True),
            RemoteChange(ChangeType.REMOVED, "t1", None, from_cache=True),
        ],
        owner_id="u1",
    )

    assert applied == 0
    assert store.get("t1") == local


@pytest.mark.asyncio
async def test_malformed_record_is_skipped_and_rest_of_batch_applies(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    await engine.sign_in("u1")
    bad = make_definition("bad").to_record()
    del bad["anchorDate"]

    ledger.server_batch(
        "u1",
        [
            RemoteChange(ChangeType.ADDED, "ok-1", make_definition("ok-1", owner_id="u1").to_record()),
            RemoteChange(ChangeType.ADDED, "bad", bad),
            RemoteChange(ChangeType.ADDED, "broken", None),
            RemoteChange(ChangeType.ADDED, "ok-2", make_definition("ok-2", owner_id="u1").to_record()),
        ],
    )
    await engine.drain()

    assert store.get("ok-1") is not None
    assert store.get("ok-2") is not None
    assert store.get("bad") is None
    assert list(engine.rejected_record_ids) == ["bad", "broken"]

    await engine.stop()


@pytest.mark.asyncio
async def test_remote_removed_deletes_and_tolerates_absence(engine: ReconciliationEngine, store: TaskStore) -> None:
    store.upsert(make_definition("t1", owner_id="u1"))

    applied = engine.apply_changes(
        [
            RemoteChange(ChangeType.REMOVED, "t1", None),
            RemoteChange(ChangeType.REMOVED, "never-existed", None),
        ],
        owner_id="u1",
    )

    assert applied == 2
    assert store.get("t1") is None


@pytest.mark.asyncio
async def test_batches_apply_in_delivery_order(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    await engine.sign_in("u1")
    base = make_definition("t1", owner_id="u1")

    for i in range(5):
        ledger.server_put("u1", "t1", replace(base, name=f"v{i}").to_record())
    await engine.drain()

    assert store.get("t1").name == "v4"  # type: ignore[union-attr]

    await engine.stop()


@pytest.mark.asyncio
async def test_delivery_from_another_thread_is_serialized_onto_the_loop(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    await engine.sign_in("u1")

    await asyncio.to_thread(ledger.server_put, "u1", "t9", make_definition("t9", owner_id="u1").to_record())
    await engine.drain()

    assert store.get("t9") is not None

    await engine.stop()


@pytest.mark.asyncio
async def test_remote_write_failure_keeps_local_state(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    await engine.sign_in("u1")
    ledger.fail_writes = True

    saved = await engine.save(make_definition("t1"))
    await engine.drain()

    assert store.get("t1") == saved
    assert ledger.document("u1", "t1") is None

    # Not retried later either.
    ledger.fail_writes = False
    await engine.drain()
    assert ledger.document("u1", "t1") is None

    await engine.stop()


@pytest.mark.asyncio
async def test_subscription_failure_leaves_session_authenticated(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    ledger.fail_subscribe = True

    await engine.sign_in("u1")

    assert engine.state is SessionState.AUTHENTICATED
    assert engine.is_subscribed is False

    ledger.server_put("u1", "elsewhere", make_definition("elsewhere", owner_id="u1").to_record())
    await engine.drain()
    assert store.get("elsewhere") is None

    # Manual pull still works without a live stream.
    assert await engine.pull_remote() == 1
    assert store.get("elsewhere") is not None

    # Next explicit transition re-subscribes.
    ledger.fail_subscribe = False
    await engine.sign_in("u1")
    assert engine.is_subscribed is True

    await engine.stop()


@pytest.mark.asyncio
async def test_sign_out_tears_down_and_keeps_local_rows(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    store.upsert(make_definition("t1"))
    await engine.sign_in("u1")
    await engine.drain()

    await engine.sign_out()

    assert engine.state is SessionState.ANONYMOUS
    assert ledger.listener_count() == 0
    assert store.get("t1").owner_id == "u1"  # type: ignore[union-attr]

    ledger.server_put("u1", "later", make_definition("later", owner_id="u1").to_record())
    await engine.drain()
    assert store.get("later") is None


@pytest.mark.asyncio
async def test_sign_out_discards_batches_not_yet_applied(
    engine: ReconciliationEngine, store: TaskStore, ledger: InMemoryRemoteLedger
) -> None:
    await engine.sign_in("u1")
    await engine.drain()

    # Delivered and queued, but the consumer has not run yet.
    ledger.server_put("u1", "in-flight", make_definition("in-flight", owner_id="u1").to_record())
    await engine.sign_out()
    await engine.drain()
    await asyncio.sleep(0)

    assert store.get("in-flight") is None
    assert ledger.document("u1", "in-flight") is not None


@pytest.mark.asyncio
async def test_new_sign_in_replaces_previous_subscription(engine: ReconciliationEngine, ledger: InMemoryRemoteLedger) -> None:
    await engine.sign_in("u1")
    await engine.sign_in("u2")

    assert ledger.listener_count("u1") == 0
    assert ledger.listener_count("u2") == 1
    assert ledger.listener_count() == 1

    await engine.stop()
    assert ledger.listener_count() == 0


@pytest.mark.asyncio
async def test_identity_changes_drive_transitions(
    store: TaskStore, ledger: InMemoryRemoteLedger, identity: LocalIdentityProvider
) -> None:
    store.upsert(make_definition("t1"))
    engine = ReconciliationEngine(store, ledger, identity=identity)
    seen: list[str | None] = []
    engine.add_session_listener(seen.append)

    await engine.start()
    assert engine.state is SessionState.ANONYMOUS

    identity.sign_in("u1")
    await engine.drain()
    assert engine.owner_id == "u1"
    assert store.get("t1").owner_id == "u1"  # type: ignore[union-attr]

    identity.sign_out()
    await engine.drain()
    assert engine.owner_id is None
    assert seen == ["u1", None]

    await engine.stop()


@pytest.mark.asyncio
async def test_start_enters_session_of_current_identity(store: TaskStore, ledger: InMemoryRemoteLedger) -> None:
    engine = ReconciliationEngine(store, ledger, identity=LocalIdentityProvider("u7"))

    await engine.start()

    assert engine.owner_id == "u7"
    assert ledger.listener_count("u7") == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_validation_failure_is_raised_before_storage(engine: ReconciliationEngine, store: TaskStore) -> None:
    with pytest.raises(TaskValidationError):
        await engine.save(make_definition("t1", name=""))
    assert store.count_definitions() == 0


@pytest.mark.asyncio
async def test_local_storage_failure_surfaces_and_skips_remote(
    engine: ReconciliationEngine,
    store: TaskStore,
    ledger: InMemoryRemoteLedger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    await engine.sign_in("u1")

    def broken_upsert_many(definitions: list[TaskDefinition]) -> list[str]:
        raise LocalStorageError("disk full")

    monkeypatch.setattr(store, "upsert_many", broken_upsert_many)

    with pytest.raises(LocalStorageError):
        await engine.save(make_definition("t1"))
    assert ledger.document("u1", "t1") is None

    await engine.stop()


def test_transition_before_start_raises_runtime_error(engine: ReconciliationEngine) -> None:
    with pytest.raises(RuntimeError):
        engine._schedule_transition("u1")
