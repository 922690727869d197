"""Record Store for tasks.

Low-level helpers (``insert_task``, ``write_task``, ``rekey_task``,
``set_sync_status``) never commit; the caller owns the transaction. The CRUD
functions at the bottom are complete units of work: each one writes the row
with ``sync_status = pending``, enqueues the matching sync operation and
commits both together.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Any, Iterable, Optional

from tasksync.core.errors import InvalidOperationError
from tasksync.core.timeutil import now_iso, to_iso
from tasksync.sync.models import DESCRIPTION_MAX_LEN, TITLE_MAX_LEN, OperationKind, SyncStatus
from tasksync.sync.queue import enqueue, resolve_target

TASK_COLUMNS = (
    "id",
    "user_id",
    "title",
    "description",
    "completed",
    "created_at",
    "updated_at",
    "is_deleted",
    "sync_status",
    "server_id",
    "last_synced_at",
)
WRITABLE_COLUMNS = frozenset(TASK_COLUMNS) - {"id", "user_id"}


def get_task(conn: sqlite3.Connection, task_id: str, user_id: str, include_deleted: bool = False) -> Optional[dict]:
    sql = "SELECT * FROM tasks WHERE id=? AND user_id=?"
    if not include_deleted:
        sql += " AND is_deleted=0"
    row = conn.execute(sql, (task_id, user_id)).fetchone()
    return dict(row) if row else None


def find_task(conn: sqlite3.Connection, task_id: str, user_id: str) -> Optional[dict]:
    """Like ``get_task`` but also accepts the id a task had before sync promoted it."""
    return get_task(conn, resolve_target(conn, user_id, task_id), user_id)


def list_tasks(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM tasks WHERE user_id=? AND is_deleted=0 ORDER BY updated_at DESC",
        (user_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def list_tasks_needing_sync(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM tasks WHERE user_id=? AND sync_status!=? ORDER BY updated_at",
        (user_id, SyncStatus.SYNCED.value),
    ).fetchall()
    return [dict(r) for r in rows]


def list_changed_since(conn: sqlite3.Connection, user_id: str, since: str) -> list[dict]:
    """Tasks (deleted ones included) written after ``since``."""
    rows = conn.execute(
        "SELECT * FROM tasks WHERE user_id=? AND updated_at>? ORDER BY updated_at, id",
        (user_id, to_iso(since)),
    ).fetchall()
    return [dict(r) for r in rows]


def insert_task(conn: sqlite3.Connection, record: dict[str, Any]):
    values = [record.get(col) for col in TASK_COLUMNS]
    placeholders = ",".join("?" for _ in TASK_COLUMNS)
    conn.execute(f"INSERT INTO tasks({','.join(TASK_COLUMNS)}) VALUES ({placeholders})", values)


def write_task(conn: sqlite3.Connection, task_id: str, user_id: str, fields: dict[str, Any]) -> int:
    unknown = set(fields) - WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"unknown_task_columns: {sorted(unknown)}")
    if not fields:
        return 0
    assignments = ", ".join(f"{col}=?" for col in fields)
    cur = conn.execute(
        f"UPDATE tasks SET {assignments} WHERE id=? AND user_id=?",
        (*fields.values(), task_id, user_id),
    )
    return cur.rowcount


def rekey_task(conn: sqlite3.Connection, old_id: str, new_id: str, user_id: str) -> int:
    cur = conn.execute(
        "UPDATE tasks SET id=?, server_id=? WHERE id=? AND user_id=?",
        (new_id, new_id, old_id, user_id),
    )
    return cur.rowcount


def set_sync_status(conn: sqlite3.Connection, task_ids: Iterable[str], user_id: str, status: SyncStatus):
    ids = list(dict.fromkeys(task_ids))
    if not ids:
        return
    placeholders = ",".join("?" for _ in ids)
    conn.execute(
        f"UPDATE tasks SET sync_status=? WHERE user_id=? AND id IN ({placeholders})",
        (status.value, user_id, *ids),
    )


def _check_title(title) -> str:
    if not isinstance(title, str) or not title.strip():
        raise InvalidOperationError("title_required")
    if len(title) > TITLE_MAX_LEN:
        raise InvalidOperationError(f"title_too_long: max={TITLE_MAX_LEN}")
    return title


def _check_description(description) -> str:
    if description is None:
        return ""
    if not isinstance(description, str):
        raise InvalidOperationError("description_not_string")
    if len(description) > DESCRIPTION_MAX_LEN:
        raise InvalidOperationError(f"description_too_long: max={DESCRIPTION_MAX_LEN}")
    return description


def create_task(
    conn: sqlite3.Connection,
    user_id: str,
    title: str,
    description: str = "",
    completed: bool = False,
) -> dict:
    if not user_id:
        raise InvalidOperationError("user_id_required")
    title = _check_title(title)
    description = _check_description(description)

    now = now_iso()
    task = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "title": title,
        "description": description,
        "completed": 1 if completed else 0,
        "created_at": now,
        "updated_at": now,
        "is_deleted": 0,
        "sync_status": SyncStatus.PENDING.value,
        "server_id": None,
        "last_synced_at": None,
    }
    try:
        insert_task(conn, task)
        enqueue(
            conn,
            task["id"],
            OperationKind.CREATE,
            {
                "title": title,
                "description": description,
                "completed": bool(completed),
                "created_at": now,
                "updated_at": now,
            },
            user_id,
            operation_timestamp=now,
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return task


def update_task(conn: sqlite3.Connection, task_id: str, user_id: str, updates: dict[str, Any]) -> Optional[dict]:
    if not isinstance(updates, dict):
        raise InvalidOperationError("updates_required")
    task_id = resolve_target(conn, user_id, task_id)
    existing = get_task(conn, task_id, user_id)
    if not existing:
        return None

    title = _check_title(updates["title"]) if "title" in updates else existing["title"]
    description = (
        _check_description(updates["description"]) if "description" in updates else existing["description"]
    )
    completed = bool(updates["completed"]) if "completed" in updates else bool(existing["completed"])

    now = now_iso()
    try:
        write_task(
            conn,
            task_id,
            user_id,
            {
                "title": title,
                "description": description,
                "completed": 1 if completed else 0,
                "updated_at": now,
                "sync_status": SyncStatus.PENDING.value,
            },
        )
        enqueue(
            conn,
            task_id,
            OperationKind.UPDATE,
            {"title": title, "description": description, "completed": completed, "updated_at": now},
            user_id,
            operation_timestamp=now,
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return get_task(conn, task_id, user_id)


def delete_task(conn: sqlite3.Connection, task_id: str, user_id: str) -> bool:
    """Soft delete; the row stays with ``is_deleted = 1``."""
    task_id = resolve_target(conn, user_id, task_id)
    existing = get_task(conn, task_id, user_id)
    if not existing:
        return False

    now = now_iso()
    try:
        write_task(
            conn,
            task_id,
            user_id,
            {"is_deleted": 1, "updated_at": now, "sync_status": SyncStatus.PENDING.value},
        )
        enqueue(conn, task_id, OperationKind.DELETE, {"updated_at": now}, user_id, operation_timestamp=now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return True
