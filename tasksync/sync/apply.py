"""Apply Engine: executes one queued operation against the Record Store.

Only the Record Store and the id-mapping table are written here; the queue
itself is left to the caller, which removes the operation once this returns.
Any exception raised is a per-operation failure for the retry manager.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Any, Optional

from tasksync.core.errors import MalformedPayloadError
from tasksync.core.timeutil import now_iso, to_iso
from tasksync.store import records
from tasksync.sync import queue
from tasksync.sync.models import (
    ApplyResult,
    Conflict,
    Mapping,
    OperationKind,
    QueuedOperation,
    SyncStatus,
)
from tasksync.sync.resolver import Side, resolve


def load_current(conn: sqlite3.Connection, op: QueuedOperation) -> Optional[dict]:
    """Server-side record the operation addresses, following recorded id mappings."""
    target = queue.resolve_target(conn, op.user_id, op.task_id)
    return records.get_task(conn, target, op.user_id, include_deleted=True)


def _title(payload: dict[str, Any], fallback=None):
    title = payload.get("title")
    if title is None:
        return fallback
    if not isinstance(title, str) or not title.strip():
        raise MalformedPayloadError("title_invalid")
    return title


def _description(payload: dict[str, Any], fallback=""):
    if "description" not in payload:
        return fallback
    description = payload["description"]
    if description is None:
        return ""
    if not isinstance(description, str):
        raise MalformedPayloadError("description_invalid")
    return description


def _flag(payload: dict[str, Any], key: str, fallback: int) -> int:
    if key not in payload or payload[key] is None:
        return fallback
    return 1 if payload[key] else 0


def _apply_create(conn: sqlite3.Connection, op: QueuedOperation, payload: dict, current: Optional[dict]) -> ApplyResult:
    if current is not None and current.get("server_id"):
        # Replayed create for a record that already has a server identity.
        return ApplyResult(record=current, mapping=Mapping(local_id=op.client_id, server_id=current["id"]))

    title = _title(payload)
    if title is None:
        raise MalformedPayloadError("title_required")

    now = now_iso()
    op_at = to_iso(op.operation_timestamp)
    server_id = str(uuid.uuid4())
    record = {
        "id": server_id,
        "user_id": op.user_id,
        "title": title,
        "description": _description(payload),
        "completed": _flag(payload, "completed", 0),
        "created_at": to_iso(payload["created_at"]) if payload.get("created_at") else op_at,
        "updated_at": op_at,
        "is_deleted": 0,
        "sync_status": SyncStatus.SYNCED.value,
        "server_id": server_id,
        "last_synced_at": now,
    }

    if current is not None:
        # Local row written before its first sync: promote it to the server id.
        records.rekey_task(conn, current["id"], server_id, op.user_id)
        fields = {k: v for k, v in record.items() if k not in ("id", "user_id", "server_id")}
        records.write_task(conn, server_id, op.user_id, fields)
    else:
        records.insert_task(conn, record)

    queue.record_mapping(conn, op.user_id, op.task_id, server_id)
    return ApplyResult(record=record, mapping=Mapping(local_id=op.client_id, server_id=server_id))


def _apply_change(conn: sqlite3.Connection, op: QueuedOperation, payload: dict, current: dict) -> ApplyResult:
    winner = resolve(op.operation_timestamp, op.kind, current["updated_at"])
    if winner is Side.SERVER:
        return ApplyResult(record=current, conflict=Conflict(local_id=op.client_id, server_task=current))

    is_deleted = 1 if op.kind is OperationKind.DELETE else _flag(payload, "is_deleted", current["is_deleted"])
    merged = {
        "title": _title(payload, current["title"]),
        "description": _description(payload, current["description"]),
        "completed": _flag(payload, "completed", current["completed"]),
        "is_deleted": is_deleted,
        "updated_at": to_iso(op.operation_timestamp),
        "sync_status": SyncStatus.SYNCED.value,
        "server_id": current["id"],
        "last_synced_at": now_iso(),
    }
    records.write_task(conn, current["id"], op.user_id, merged)
    return ApplyResult(record={**current, **merged})


def apply_operation(conn: sqlite3.Connection, op: QueuedOperation, current: Optional[dict]) -> ApplyResult:
    payload = op.payload()
    kind = op.kind

    if kind is OperationKind.CREATE:
        return _apply_create(conn, op, payload, current)

    if current is None:
        if kind is OperationKind.DELETE:
            # Nothing to delete server-side; succeeds as a no-op.
            return ApplyResult(record=None)
        # Update for a record the server never saw: recover the dropped create.
        return _apply_create(conn, op, payload, None)

    return _apply_change(conn, op, payload, current)
