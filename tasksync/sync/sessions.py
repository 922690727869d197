from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Optional

from tasksync.core.timeutil import now_iso
from tasksync.sync import queue
from tasksync.sync.models import SessionStatus

logger = logging.getLogger("sync")


def session_status(failed: int, stopped_early: bool = False) -> SessionStatus:
    if failed > 0:
        return SessionStatus.ERROR
    if stopped_early:
        return SessionStatus.PARTIAL
    return SessionStatus.COMPLETED


def record_session(
    conn: sqlite3.Connection,
    owner: str,
    total_considered: int,
    processed: int,
    failed: int,
    stopped_early: bool = False,
    session_id: Optional[str] = None,
) -> tuple[str, SessionStatus]:
    """Append one summary row for a sync invocation and commit it.

    Rows are never updated afterwards.
    """
    status = session_status(failed, stopped_early)
    session_id = session_id or str(uuid.uuid4())
    created_at = now_iso()
    conn.execute(
        "INSERT INTO sync_logs(id,user_id,change_count,processed,failed,status,created_at) VALUES (?,?,?,?,?,?,?)",
        (session_id, owner, total_considered, processed, failed, status.value, created_at),
    )
    conn.commit()
    logger.info(
        "session_recorded %s",
        json.dumps(
            {
                "id": session_id,
                "owner": owner,
                "considered": total_considered,
                "processed": processed,
                "failed": failed,
                "status": status.value,
            },
            ensure_ascii=False,
        ),
    )
    return session_id, status


def list_sessions(conn: sqlite3.Connection, owner: str, limit: int = 5) -> list[dict]:
    # rowid breaks ties between sessions logged within the same millisecond.
    rows = conn.execute(
        "SELECT * FROM sync_logs WHERE user_id=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (owner, limit),
    ).fetchall()
    return [dict(r) for r in rows]


def status(conn: sqlite3.Connection, owner: str, limit: int = 5) -> dict:
    """Recent sessions plus current queue depth. Read-only, triggers no processing."""
    recent = list_sessions(conn, owner, limit)
    last = recent[0] if recent else None
    return {
        "pending_count": queue.pending_count(conn, owner),
        "last_session_timestamp": last["created_at"] if last else None,
        "last_session_status": last["status"] if last else None,
        "recent_sessions": recent,
    }
