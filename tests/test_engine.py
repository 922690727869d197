import itertools
import sqlite3
import threading
from pathlib import Path

import pytest

from tasksync.core.config import SyncConfig
from tasksync.core.errors import InvalidOperationError, StoreUnavailableError, SyncBusyError
from tasksync.store import records
from tasksync.store.db import get_conn, init_schema
from tasksync.sync import SessionStatus, SyncEngine, batches, queue
from tasksync.sync import engine as engine_module

T0 = "2026-01-01T10:00:00.000Z"
T1 = "2026-01-01T10:00:01.000Z"
T2 = "2026-01-01T10:00:02.000Z"
T3 = "2026-01-01T10:00:03.000Z"


def _conn(tmp_path: Path, name: str = "tasks.db") -> sqlite3.Connection:
    conn = get_conn(str(tmp_path / name))
    init_schema(conn)
    return conn


def _engine(**overrides) -> SyncEngine:
    return SyncEngine(SyncConfig(**overrides), log_func=lambda *_: None)


def _server_task(conn: sqlite3.Connection, task_id: str, updated_at: str, owner: str = "alice", **fields) -> dict:
    record = {
        "id": task_id,
        "user_id": owner,
        "title": "server title",
        "description": "",
        "completed": 0,
        "created_at": updated_at,
        "updated_at": updated_at,
        "is_deleted": 0,
        "sync_status": "synced",
        "server_id": task_id,
        "last_synced_at": updated_at,
    }
    record.update(fields)
    records.insert_task(conn, record)
    conn.commit()
    return record


def _task_count(conn: sqlite3.Connection, owner: str = "alice") -> int:
    return conn.execute("SELECT COUNT(1) FROM tasks WHERE user_id=?", (owner,)).fetchone()[0]


def test_empty_sync_is_idempotent(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    before = _server_task(conn, "R", T0)

    for _ in range(2):
        result = engine.submit_sync(conn, "alice", [], T3)
        assert result.processed == 0
        assert result.failed == 0
        assert result.status is SessionStatus.COMPLETED
        assert result.mappings == []
        assert result.conflicts == []

    assert records.get_task(conn, "R", "alice") == before


def test_scenario_create_returns_mapping_and_synced_record(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()

    result = engine.submit_sync(
        conn,
        "alice",
        [{"operation": "create", "local_id": "L1", "data": {"title": "Buy milk"}}],
    )

    assert result.status is SessionStatus.COMPLETED
    assert result.processed == 1
    (mapping,) = result.mappings
    assert mapping.local_id == "L1"
    assert mapping.server_id != "L1"

    task = records.get_task(conn, mapping.server_id, "alice")
    assert task["title"] == "Buy milk"
    assert task["sync_status"] == "synced"
    assert task["server_id"] == mapping.server_id
    assert queue.pending_count(conn, "alice") == 0


def test_scenario_stale_update_is_reported_as_conflict(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    before = _server_task(conn, "R", T1)

    result = engine.submit_sync(
        conn,
        "alice",
        [{"operation": "update", "local_id": "R", "data": {"title": "stale", "updated_at": T0}}],
    )

    assert result.processed == 1
    assert result.failed == 0
    (conflict,) = result.conflicts
    assert conflict.local_id == "R"
    assert conflict.server_task["title"] == "server title"
    assert records.get_task(conn, "R", "alice") == before


@pytest.mark.parametrize("delete_first", [False, True])
def test_scenario_update_then_delete_ends_deleted(tmp_path: Path, delete_first: bool):
    conn = _conn(tmp_path)
    engine = _engine()
    _server_task(conn, "R", T0)
    update = {"operation": "update", "local_id": "R", "data": {"title": "edited"}, "operation_timestamp": T1}
    delete = {"operation": "delete", "local_id": "R", "data": {}, "operation_timestamp": T2}
    changes = [delete, update] if delete_first else [update, delete]

    result = engine.submit_sync(conn, "alice", changes)

    assert result.processed == 2
    assert result.conflicts == []
    task = records.get_task(conn, "R", "alice", include_deleted=True)
    assert task["is_deleted"] == 1
    assert task["title"] == "edited"
    assert task["updated_at"] == T2
    assert records.get_task(conn, "R", "alice") is None


def test_final_state_follows_timestamp_order_regardless_of_enqueue_order(tmp_path: Path):
    edits = [(T1, "one"), (T2, "two"), (T3, "three")]
    for n, order in enumerate(itertools.permutations(edits)):
        conn = _conn(tmp_path, f"perm{n}.db")
        _server_task(conn, "R", T0)
        changes = [
            {"operation": "update", "local_id": "R", "data": {"title": title}, "operation_timestamp": at}
            for at, title in order
        ]

        result = _engine().submit_sync(conn, "alice", changes)

        task = records.get_task(conn, "R", "alice")
        assert result.conflicts == []
        assert task["title"] == "three"
        assert task["updated_at"] == T3
        conn.close()


def test_update_merges_only_payload_fields(tmp_path: Path):
    conn = _conn(tmp_path)
    _server_task(conn, "R", T0, description="keep me", completed=0)

    _engine().submit_sync(
        conn,
        "alice",
        [{"operation": "update", "local_id": "R", "data": {"completed": True}, "operation_timestamp": T1}],
    )

    task = records.get_task(conn, "R", "alice")
    assert task["completed"] == 1
    assert task["title"] == "server title"
    assert task["description"] == "keep me"
    assert task["sync_status"] == "synced"


def test_update_for_missing_record_is_an_implicit_create(tmp_path: Path):
    conn = _conn(tmp_path)

    result = _engine().submit_sync(
        conn,
        "alice",
        [{"operation": "update", "local_id": "L9", "data": {"title": "recovered"}}],
    )

    assert result.failed == 0
    (mapping,) = result.mappings
    assert records.get_task(conn, mapping.server_id, "alice")["title"] == "recovered"


def test_delete_for_missing_record_is_a_no_op(tmp_path: Path):
    conn = _conn(tmp_path)

    result = _engine().submit_sync(conn, "alice", [{"operation": "delete", "local_id": "L9", "data": {}}])

    assert result.processed == 1
    assert result.failed == 0
    assert result.status is SessionStatus.COMPLETED
    assert _task_count(conn) == 0


def test_mapping_is_reused_by_later_sessions(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    first = engine.submit_sync(
        conn,
        "alice",
        [{"operation": "create", "local_id": "L1", "data": {"title": "draft"}, "operation_timestamp": T1}],
    )
    (mapping,) = first.mappings

    second = engine.submit_sync(
        conn,
        "alice",
        [{"operation": "update", "local_id": "L1", "data": {"title": "final"}, "operation_timestamp": T2}],
    )

    assert second.mappings == []
    assert _task_count(conn) == 1
    assert records.get_task(conn, mapping.server_id, "alice")["title"] == "final"


def test_create_and_update_in_one_submission_share_the_server_record(tmp_path: Path):
    conn = _conn(tmp_path)

    result = _engine().submit_sync(
        conn,
        "alice",
        [
            {"operation": "create", "local_id": "L1", "data": {"title": "draft"}, "operation_timestamp": T1},
            {"operation": "update", "local_id": "L1", "data": {"completed": True}, "operation_timestamp": T2},
        ],
    )

    assert result.processed == 2
    (mapping,) = result.mappings
    task = records.get_task(conn, mapping.server_id, "alice")
    assert task["title"] == "draft"
    assert task["completed"] == 1
    assert _task_count(conn) == 1


def test_crud_rows_are_promoted_to_server_ids(tmp_path: Path):
    conn = _conn(tmp_path)
    local = records.create_task(conn, "alice", "Write report")
    records.update_task(conn, local["id"], "alice", {"completed": True})

    result = _engine().submit_sync(conn, "alice", [])

    assert result.processed == 2
    (mapping,) = result.mappings
    assert mapping.local_id == local["id"]
    assert records.get_task(conn, local["id"], "alice") is None
    task = records.get_task(conn, mapping.server_id, "alice")
    assert task["title"] == "Write report"
    assert task["completed"] == 1
    assert task["sync_status"] == "synced"
    assert _task_count(conn) == 1


def test_server_changes_are_records_newer_than_last_synced_at(tmp_path: Path):
    conn = _conn(tmp_path)
    _server_task(conn, "OLD", T0)
    _server_task(conn, "NEW", T2)
    _server_task(conn, "OTHER", T3, owner="bob")

    result = _engine().submit_sync(conn, "alice", [], T1)

    assert [t["id"] for t in result.server_changes] == ["NEW"]


def test_operation_failing_twice_stays_queued_with_error_status(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    _server_task(conn, "R", T0)

    def boom(*_args, **_kwargs):
        raise RuntimeError("store_io_failed")

    monkeypatch.setattr(engine_module, "apply_operation", boom)

    first = engine.submit_sync(
        conn,
        "alice",
        [{"operation": "update", "local_id": "R", "data": {"title": "x"}, "operation_timestamp": T1}],
    )
    second = engine.submit_sync(conn, "alice", [])

    for result in (first, second):
        assert result.failed == 1
        assert result.status is SessionStatus.ERROR
    (op,) = queue.drain(conn, "alice")
    assert op.retry_count == 2
    assert op.error_message == "store_io_failed"
    assert records.get_task(conn, "R", "alice")["sync_status"] == "error"
    assert engine.list_dead_letters(conn, "alice") == []


def test_operation_failing_three_times_is_dead_lettered_once(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    _server_task(conn, "R", T0)

    def boom(*_args, **_kwargs):
        raise RuntimeError("store_io_failed")

    monkeypatch.setattr(engine_module, "apply_operation", boom)

    engine.submit_sync(
        conn,
        "alice",
        [{"operation": "update", "local_id": "R", "data": {"title": "x"}, "operation_timestamp": T1}],
    )
    engine.submit_sync(conn, "alice", [])
    engine.submit_sync(conn, "alice", [])
    after = engine.submit_sync(conn, "alice", [])

    (dead,) = engine.list_dead_letters(conn, "alice")
    assert dead["task_id"] == "R"
    assert dead["operation"] == "update"
    assert dead["retry_count"] == 3
    assert dead["error_message"] == "store_io_failed"
    assert dead["operation_timestamp"] == T1
    assert queue.pending_count(conn, "alice") == 0
    assert records.get_task(conn, "R", "alice")["sync_status"] == "failed"
    assert after.processed == 0
    assert after.failed == 0
    assert after.status is SessionStatus.COMPLETED


def test_retry_ceiling_is_configurable(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine(max_retries=1)

    def boom(*_args, **_kwargs):
        raise RuntimeError("store_io_failed")

    monkeypatch.setattr(engine_module, "apply_operation", boom)

    engine.submit_sync(conn, "alice", [{"operation": "create", "local_id": "L1", "data": {"title": "x"}}])

    assert len(engine.list_dead_letters(conn, "alice")) == 1
    assert queue.pending_count(conn, "alice") == 0


def test_malformed_stored_payload_is_charged_not_raised(tmp_path: Path):
    conn = _conn(tmp_path)
    op = queue.enqueue(conn, "L1", "create", {"title": "x"}, "alice")
    conn.execute("UPDATE sync_queue SET data=? WHERE id=?", ("{not json", op.id))
    conn.commit()

    result = _engine().submit_sync(conn, "alice", [])

    assert result.failed == 1
    assert result.status is SessionStatus.ERROR
    (queued,) = queue.drain(conn, "alice")
    assert queued.retry_count == 1
    assert queued.error_message.startswith("payload_not_json")


def test_integrity_failure_fails_whole_batch_without_charging_retries(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine(batch_size=2)
    original_verify = batches.verify

    def tampering_verify(conn, owner, batch):
        if batch.index == 0:
            conn.execute('UPDATE sync_queue SET data=\'{"title": "evil"}\' WHERE id=?', (batch.items[0].id,))
            conn.commit()
        return original_verify(conn, owner, batch)

    monkeypatch.setattr(batches, "verify", tampering_verify)

    result = engine.submit_sync(
        conn,
        "alice",
        [{"operation": "create", "local_id": f"L{i}", "data": {"title": f"t{i}"}} for i in range(1, 4)],
    )

    assert result.failed == 2
    assert result.processed == 1
    assert result.status is SessionStatus.ERROR
    assert [m.local_id for m in result.mappings] == ["L3"]
    remaining = queue.drain(conn, "alice")
    assert [op.task_id for op in remaining] == ["L1", "L2"]
    assert all(op.retry_count == 0 for op in remaining)
    assert engine.list_dead_letters(conn, "alice") == []


def test_invalid_change_rejects_the_whole_submission(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()

    with pytest.raises(InvalidOperationError, match="invalid_operation"):
        engine.submit_sync(
            conn,
            "alice",
            [
                {"operation": "create", "local_id": "L1", "data": {"title": "ok"}},
                {"operation": "rename", "local_id": "L2", "data": {}},
            ],
        )

    assert queue.pending_count(conn, "alice") == 0
    assert engine.list_sessions(conn, "alice") == []


def test_cancellation_keeps_applied_work_and_marks_session_partial(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    for title in ("a", "b", "c"):
        records.create_task(conn, "alice", title)
    cancel = threading.Event()
    real_apply = engine_module.apply_operation

    def apply_then_cancel(*args, **kwargs):
        result = real_apply(*args, **kwargs)
        cancel.set()
        return result

    monkeypatch.setattr(engine_module, "apply_operation", apply_then_cancel)

    result = engine.submit_sync(conn, "alice", [], cancel_event=cancel)

    assert result.processed == 1
    assert result.failed == 0
    assert result.status is SessionStatus.PARTIAL
    assert queue.pending_count(conn, "alice") == 2
    statuses = sorted(t["sync_status"] for t in records.list_tasks(conn, "alice"))
    assert statuses == ["pending", "pending", "synced"]
    assert engine.get_status(conn, "alice")["last_session_status"] == "partial"


def test_sync_is_serialized_per_owner(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine(lock_timeout_sec=0.05)

    with engine.locks.hold("alice", 1):
        with pytest.raises(SyncBusyError):
            engine.submit_sync(conn, "alice", [])
        other = engine.submit_sync(conn, "bob", [])

    assert other.status is SessionStatus.COMPLETED


def test_unreadable_queue_fails_the_whole_call(tmp_path: Path):
    conn = _conn(tmp_path)
    conn.execute("DROP TABLE sync_queue")
    conn.commit()

    with pytest.raises(StoreUnavailableError, match="queue_unavailable"):
        _engine().submit_sync(conn, "alice", [])


def test_status_reports_queue_depth_and_last_session(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine(status_session_limit=2)

    assert engine.get_status(conn, "alice") == {
        "pending_count": 0,
        "last_session_timestamp": None,
        "last_session_status": None,
        "recent_sessions": [],
    }

    for _ in range(3):
        engine.submit_sync(conn, "alice", [])
    queue.enqueue(conn, "L1", "create", {"title": "later"}, "alice")
    conn.commit()

    status = engine.get_status(conn, "alice")
    assert status["pending_count"] == 1
    assert status["last_session_status"] == "completed"
    assert len(status["recent_sessions"]) == 2
    assert status["last_session_timestamp"] == status["recent_sessions"][0]["created_at"]
    assert len(engine.list_sessions(conn, "alice", 10)) == 3


def test_batch_members_are_in_progress_while_applied(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    for title in ("a", "b"):
        records.create_task(conn, "alice", title)
    seen = {}
    real_apply = engine_module.apply_operation

    def recording_apply(conn, op, current):
        row = conn.execute("SELECT sync_status FROM tasks WHERE id=?", (op.task_id,)).fetchone()
        seen[op.task_id] = row["sync_status"]
        return real_apply(conn, op, current)

    monkeypatch.setattr(engine_module, "apply_operation", recording_apply)

    result = engine.submit_sync(conn, "alice", [])

    assert result.processed == 2
    assert sorted(seen.values()) == ["in-progress", "in-progress"]
    assert {t["sync_status"] for t in records.list_tasks(conn, "alice")} == {"synced"}


def test_cancellation_returns_unprocessed_batch_members_to_pending(monkeypatch, tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()
    for title in ("a", "b", "c"):
        records.create_task(conn, "alice", title)
    cancel = threading.Event()
    during = []
    real_apply = engine_module.apply_operation

    def apply_then_cancel(conn, op, current):
        during.extend(r["sync_status"] for r in conn.execute("SELECT sync_status FROM tasks WHERE user_id='alice'"))
        cancel.set()
        return real_apply(conn, op, current)

    monkeypatch.setattr(engine_module, "apply_operation", apply_then_cancel)

    engine.submit_sync(conn, "alice", [], cancel_event=cancel)

    assert during == ["in-progress", "in-progress", "in-progress"]
    pending = [op.task_id for op in queue.drain(conn, "alice")]
    assert len(pending) == 2
    for task_id in pending:
        assert records.get_task(conn, task_id, "alice")["sync_status"] == "pending"


def test_create_without_title_is_refused_before_enqueue(tmp_path: Path):
    conn = _conn(tmp_path)
    engine = _engine()

    for data in ({}, {"title": "   "}, {"title": 42}, {"title": "ok", "description": 7}):
        with pytest.raises(InvalidOperationError):
            engine.submit_sync(conn, "alice", [{"operation": "create", "local_id": "L1", "data": data}])

    assert queue.pending_count(conn, "alice") == 0
    assert engine.list_sessions(conn, "alice") == []
    assert engine.list_dead_letters(conn, "alice") == []


def test_conflict_reports_client_local_id_when_server_id_given(tmp_path: Path):
    conn = _conn(tmp_path)
    _server_task(conn, "R", T1)

    result = _engine().submit_sync(
        conn,
        "alice",
        [
            {
                "operation": "update",
                "local_id": "phone-7",
                "server_id": "R",
                "data": {"title": "stale"},
                "operation_timestamp": T0,
            }
        ],
    )

    (conflict,) = result.conflicts
    assert conflict.local_id == "phone-7"
    assert conflict.server_task["id"] == "R"


def test_promoted_crud_task_is_still_reachable_by_its_first_id(tmp_path: Path):
    conn = _conn(tmp_path)
    local = records.create_task(conn, "alice", "Write report")
    _engine().submit_sync(conn, "alice", [])

    found = records.find_task(conn, local["id"], "alice")
    assert found is not None
    assert found["id"] != local["id"]

    updated = records.update_task(conn, local["id"], "alice", {"title": "Write final report"})
    assert updated["id"] == found["id"]
    assert updated["title"] == "Write final report"
    assert records.delete_task(conn, local["id"], "alice") is True
    assert records.find_task(conn, local["id"], "alice") is None
