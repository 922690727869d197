"""Retry / Dead-Letter Manager.

Per operation::

    pending --apply ok--> removed from queue
    pending --apply fails--> error (retry_count + 1, stays queued)
                                 \\--retry_count reaches ceiling--> dead_letter_queue

Retries happen across separate sync invocations only. Dead-lettered
operations are inert: listed for diagnostics, never re-enqueued here.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Optional

from tasksync.core.timeutil import now_iso
from tasksync.store import records
from tasksync.sync import queue
from tasksync.sync.models import QueuedOperation, SyncStatus

MAX_RETRIES = 3
ERROR_MESSAGE_MAX_LEN = 1000

logger = logging.getLogger("retry")


def handle_failure(
    conn: sqlite3.Connection,
    op: QueuedOperation,
    error: BaseException,
    record_id: Optional[str] = None,
    max_retries: int = MAX_RETRIES,
) -> bool:
    """Charge one failed attempt to ``op``. Returns True when it was dead-lettered.

    Does not commit.
    """
    retry_count = op.retry_count + 1
    message = (str(error) or type(error).__name__)[:ERROR_MESSAGE_MAX_LEN]
    record_id = record_id or op.task_id

    if retry_count >= max_retries:
        conn.execute(
            """
            INSERT OR IGNORE INTO dead_letter_queue(
                id,queue_id,user_id,task_id,operation,data,retry_count,error_message,
                operation_timestamp,original_created_at,failed_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                str(uuid.uuid4()),
                op.id,
                op.user_id,
                op.task_id,
                op.operation,
                op.data,
                retry_count,
                message,
                op.operation_timestamp,
                op.created_at,
                now_iso(),
            ),
        )
        queue.remove(conn, op.id, op.user_id)
        records.set_sync_status(conn, [record_id], op.user_id, SyncStatus.FAILED)
        logger.error(
            "operation_dead_lettered %s",
            json.dumps(
                {"id": op.id, "task_id": op.task_id, "operation": op.operation, "attempts": retry_count, "error": message},
                ensure_ascii=False,
            ),
        )
        return True

    queue.record_failure(conn, op.id, op.user_id, retry_count, message)
    records.set_sync_status(conn, [record_id], op.user_id, SyncStatus.ERROR)
    logger.warning(
        "operation_failed %s",
        json.dumps(
            {"id": op.id, "task_id": op.task_id, "operation": op.operation, "attempts": retry_count, "error": message},
            ensure_ascii=False,
        ),
    )
    return False


def list_dead_letters(conn: sqlite3.Connection, owner: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM dead_letter_queue WHERE user_id=? ORDER BY failed_at DESC, id",
        (owner,),
    ).fetchall()
    return [dict(r) for r in rows]
