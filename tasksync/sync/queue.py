"""Operation Queue: the append-only log of pending mutations per owner.

Nothing here commits. ``enqueue`` is called inside the caller's transaction
(a CRUD write or a sync submission) so the mutation and its queue entry land
together.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any, Iterable, Optional

from tasksync.core.errors import InvalidOperationError
from tasksync.core.timeutil import now_iso, to_iso
from tasksync.sync.models import DESCRIPTION_MAX_LEN, PAYLOAD_FIELDS, TITLE_MAX_LEN, OperationKind, QueuedOperation

# Chronological per record: target, logical time, enqueue time, enqueue order, id.
DRAIN_ORDER = "task_id, operation_timestamp, created_at, seq, id"


def _check_text_fields(op_kind: OperationKind, payload: dict[str, Any]):
    title = payload.get("title")
    if title is not None:
        if not isinstance(title, str) or not title.strip():
            raise InvalidOperationError("title_invalid")
        if len(title) > TITLE_MAX_LEN:
            raise InvalidOperationError(f"title_too_long: max={TITLE_MAX_LEN}")
    elif op_kind is OperationKind.CREATE:
        raise InvalidOperationError("title_required")

    description = payload.get("description")
    if description is not None:
        if not isinstance(description, str):
            raise InvalidOperationError("description_invalid")
        if len(description) > DESCRIPTION_MAX_LEN:
            raise InvalidOperationError(f"description_too_long: max={DESCRIPTION_MAX_LEN}")


def validate_operation(target_id, kind, payload, owner) -> tuple[OperationKind, dict[str, Any]]:
    if not owner or not isinstance(owner, str):
        raise InvalidOperationError("owner_required")
    if not target_id or not isinstance(target_id, str):
        raise InvalidOperationError("target_id_required")
    try:
        op_kind = OperationKind(kind)
    except ValueError:
        raise InvalidOperationError(f"invalid_operation: {kind}") from None

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidOperationError("payload_not_object")
    unknown = set(payload) - PAYLOAD_FIELDS
    if unknown:
        raise InvalidOperationError(f"payload_unknown_fields: {sorted(unknown)}")
    _check_text_fields(op_kind, payload)
    return op_kind, payload


def enqueue(
    conn: sqlite3.Connection,
    target_id: str,
    kind,
    payload: Optional[dict[str, Any]],
    owner: str,
    operation_timestamp=None,
    local_id: Optional[str] = None,
) -> QueuedOperation:
    """Append one operation. ``operation_timestamp`` defaults to the enqueue time.

    ``local_id`` is the client's own id when the target is already a server id;
    it is echoed back in mappings and conflicts.
    """
    op_kind, payload = validate_operation(target_id, kind, payload, owner)
    created_at = now_iso()
    if operation_timestamp is None:
        op_ts = created_at
    else:
        try:
            op_ts = to_iso(operation_timestamp)
        except ValueError as e:
            raise InvalidOperationError(str(e)) from None

    op_id = str(uuid.uuid4())
    data = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    cur = conn.execute(
        """
        INSERT INTO sync_queue(id,user_id,task_id,local_id,operation,data,retry_count,created_at,operation_timestamp)
        VALUES (?,?,?,?,?,?,0,?,?)
        """,
        (op_id, owner, target_id, local_id or target_id, op_kind.value, data, created_at, op_ts),
    )
    return QueuedOperation(
        id=op_id,
        user_id=owner,
        task_id=target_id,
        operation=op_kind.value,
        data=data,
        retry_count=0,
        error_message=None,
        created_at=created_at,
        operation_timestamp=op_ts,
        seq=int(cur.lastrowid or 0),
        local_id=local_id or target_id,
    )


def drain(conn: sqlite3.Connection, owner: str) -> list[QueuedOperation]:
    """All pending operations for ``owner`` in processing order. Read-only."""
    rows = conn.execute(
        f"SELECT * FROM sync_queue WHERE user_id=? ORDER BY {DRAIN_ORDER}",
        (owner,),
    ).fetchall()
    return [QueuedOperation.from_row(r) for r in rows]


def fetch(conn: sqlite3.Connection, owner: str, operation_ids: Iterable[str]) -> list[QueuedOperation]:
    ids = list(operation_ids)
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    rows = conn.execute(
        f"SELECT * FROM sync_queue WHERE user_id=? AND id IN ({placeholders}) ORDER BY {DRAIN_ORDER}",
        (owner, *ids),
    ).fetchall()
    return [QueuedOperation.from_row(r) for r in rows]


def remove(conn: sqlite3.Connection, operation_id: str, owner: str) -> int:
    cur = conn.execute("DELETE FROM sync_queue WHERE id=? AND user_id=?", (operation_id, owner))
    return cur.rowcount


def record_failure(conn: sqlite3.Connection, operation_id: str, owner: str, retry_count: int, error: str):
    conn.execute(
        "UPDATE sync_queue SET retry_count=?, error_message=? WHERE id=? AND user_id=?",
        (retry_count, error, operation_id, owner),
    )


def pending_count(conn: sqlite3.Connection, owner: str) -> int:
    row = conn.execute("SELECT COUNT(1) FROM sync_queue WHERE user_id=?", (owner,)).fetchone()
    return int(row[0])


# ---------------------------------------------------------------------------
# Id mappings: local id -> server id, recorded on every successful create.
# ---------------------------------------------------------------------------


def record_mapping(conn: sqlite3.Connection, owner: str, local_id: str, server_id: str):
    conn.execute(
        "INSERT OR REPLACE INTO id_mappings(user_id,local_id,server_id,created_at) VALUES (?,?,?,?)",
        (owner, local_id, server_id, now_iso()),
    )


def resolve_target(conn: sqlite3.Connection, owner: str, target_id: str) -> str:
    row = conn.execute(
        "SELECT server_id FROM id_mappings WHERE user_id=? AND local_id=?",
        (owner, target_id),
    ).fetchone()
    return row["server_id"] if row else target_id
