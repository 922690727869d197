"""Sync Engine: SubmitSync and GetStatus for one owner at a time.

A submission appends the client's changes to the queue, drains the whole
queue in chronological-per-record order, and processes it batch by batch,
item by item. Each operation is its own transaction: once applied and
removed from the queue it stays applied even if the session stops early.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Optional

from tasksync.core.config import SyncConfig
from tasksync.core.errors import BatchIntegrityError, InvalidOperationError, StoreUnavailableError, SyncBusyError
from tasksync.core.timeutil import to_iso
from tasksync.store import records
from tasksync.sync import batches, queue, retry, sessions
from tasksync.sync.apply import apply_operation, load_current
from tasksync.sync.models import ApplyResult, QueuedOperation, SyncResult, SyncStatus

EPOCH = "1970-01-01T00:00:00.000Z"

LogFunc = Callable[[str, str, str, Optional[str]], None]


def default_log_func(level: str, module: str, message: str, detail: str | None = None):
    logging.getLogger(module).log(
        getattr(logging, level.upper(), logging.INFO),
        f"{message} {detail or ''}".strip(),
    )


class OwnerLocks:
    """One mutual-exclusion token per owner; different owners never block each other."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, owner: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(owner)
            if lock is None:
                lock = self._locks[owner] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, owner: str, timeout: float):
        lock = self._lock_for(owner)
        if not lock.acquire(timeout=timeout):
            raise SyncBusyError(f"sync_busy: owner={owner}")
        try:
            yield
        finally:
            lock.release()


class SyncEngine:
    def __init__(self, cfg: SyncConfig | None = None, log_func: LogFunc | None = None):
        self.cfg = cfg or SyncConfig()
        self.log_func = log_func or default_log_func
        self.locks = OwnerLocks()

    def _log(self, level: str, module: str, message: str, detail: Optional[dict] = None):
        self.log_func(level, module, message, json.dumps(detail, ensure_ascii=False) if detail else None)

    # ------------------------------------------------------------------
    # SubmitSync
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare_change(change: dict[str, Any], owner: str) -> tuple[str, str, dict, Any, Optional[str]]:
        if not isinstance(change, dict):
            raise InvalidOperationError("change_not_object")
        local_id = change.get("local_id")
        if local_id is not None and not isinstance(local_id, str):
            raise InvalidOperationError("local_id_invalid")
        target = change.get("server_id") or local_id
        data = change.get("data")
        op_kind, payload = queue.validate_operation(target, change.get("operation"), data, owner)

        op_ts = change.get("operation_timestamp") or payload.get("updated_at")
        if op_ts is not None:
            try:
                op_ts = to_iso(op_ts)
            except ValueError as e:
                raise InvalidOperationError(str(e)) from None
        return target, op_kind.value, payload, op_ts, local_id

    def submit_sync(
        self,
        conn: sqlite3.Connection,
        owner: str,
        changes: Iterable[dict[str, Any]],
        last_synced_at=None,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Enqueue ``changes``, drain and apply the owner's queue, log one session.

        Invalid changes reject the whole call before anything is enqueued.
        Per-operation and per-batch failures are absorbed into the result;
        only an unreadable store raises (``StoreUnavailableError``).
        """
        try:
            since = to_iso(last_synced_at) if last_synced_at else EPOCH
        except ValueError as e:
            raise InvalidOperationError(str(e)) from None
        prepared = [self._prepare_change(change, owner) for change in changes]

        with self.locks.hold(owner, self.cfg.lock_timeout_sec):
            try:
                for target, kind, payload, op_ts, local_id in prepared:
                    queue.enqueue(conn, target, kind, payload, owner, operation_timestamp=op_ts, local_id=local_id)
                conn.commit()
                operations = queue.drain(conn, owner)
            except sqlite3.Error as e:
                conn.rollback()
                self._log("ERROR", "sync", "queue_unavailable", {"owner": owner, "error": str(e)})
                raise StoreUnavailableError(f"queue_unavailable: {e}") from e

            result = self._process_queue(conn, owner, operations, cancel_event)

            try:
                result.server_changes = records.list_changed_since(conn, owner, since)
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"record_store_unavailable: {e}") from e

        self._log(
            "INFO",
            "sync",
            "sync_finished",
            {
                "owner": owner,
                "session_id": result.session_id,
                "status": result.status.value,
                "submitted": len(prepared),
                "considered": len(operations),
                "processed": result.processed,
                "failed": result.failed,
                "mappings": len(result.mappings),
                "conflicts": len(result.conflicts),
            },
        )
        return result

    def _process_queue(
        self,
        conn: sqlite3.Connection,
        owner: str,
        operations: list[QueuedOperation],
        cancel_event: threading.Event | None,
    ) -> SyncResult:
        processed = 0
        failed = 0
        stopped_early = False
        mappings = []
        conflicts = []

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        for batch in batches.assemble(operations, self.cfg.batch_size):
            if cancelled():
                stopped_early = True
                break

            try:
                batches.verify(conn, owner, batch)
            except (BatchIntegrityError, sqlite3.Error) as e:
                # Whole batch fails; nothing is charged to its items, which stay queued.
                failed += len(batch.items)
                self._log(
                    "ERROR",
                    "integrity",
                    "batch_rejected",
                    {"owner": owner, "batch": batch.index, "size": len(batch.items), "error": str(e)},
                )
                continue

            self._mark(conn, owner, batch.items, SyncStatus.IN_PROGRESS)

            for position, op in enumerate(batch.items):
                if cancelled():
                    stopped_early = True
                    self._mark(conn, owner, batch.items[position:], SyncStatus.PENDING)
                    break

                result = self._process_one(conn, op)
                if result is None:
                    failed += 1
                    continue
                processed += 1
                if result.mapping:
                    mappings.append(result.mapping)
                if result.conflict:
                    conflicts.append(result.conflict)

            if stopped_early:
                break

        session_id, status = self._record_session(conn, owner, len(operations), processed, failed, stopped_early)
        return SyncResult(
            session_id=session_id,
            status=status,
            processed=processed,
            failed=failed,
            mappings=mappings,
            conflicts=conflicts,
        )

    def _mark(self, conn: sqlite3.Connection, owner: str, items: Iterable[QueuedOperation], status: SyncStatus):
        try:
            targets = [queue.resolve_target(conn, owner, op.task_id) for op in items]
            records.set_sync_status(conn, targets, owner, status)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            self._log("WARN", "sync", "mark_status_failed", {"owner": owner, "status": status.value, "error": str(e)})

    def _process_one(self, conn: sqlite3.Connection, op: QueuedOperation) -> Optional[ApplyResult]:
        """Apply one operation in its own transaction. None means it failed."""
        record_id = None
        try:
            current = load_current(conn, op)
            record_id = current["id"] if current else None
            result = apply_operation(conn, op, current)
            queue.remove(conn, op.id, op.user_id)
            if result.record is not None:
                records.set_sync_status(conn, [result.record["id"]], op.user_id, SyncStatus.SYNCED)
            conn.commit()
        except Exception as e:
            conn.rollback()
            self._charge_failure(conn, op, e, record_id)
            return None

        if result.conflict:
            self._log(
                "INFO",
                "sync",
                "conflict_server_wins",
                {"id": op.id, "task_id": op.task_id, "operation": op.operation, "at": op.operation_timestamp},
            )
        return result

    def _charge_failure(self, conn: sqlite3.Connection, op: QueuedOperation, error: Exception, record_id):
        try:
            retry.handle_failure(conn, op, error, record_id=record_id, max_retries=self.cfg.max_retries)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            self._log(
                "ERROR",
                "retry",
                "failure_not_recorded",
                {"id": op.id, "task_id": op.task_id, "error": str(error), "store_error": str(e)},
            )

    def _record_session(self, conn, owner, considered, processed, failed, stopped_early):
        session_id = str(uuid.uuid4())
        try:
            return sessions.record_session(
                conn, owner, considered, processed, failed, stopped_early, session_id=session_id
            )
        except sqlite3.Error as e:
            # The summary row is bookkeeping; the applied work already stands.
            conn.rollback()
            self._log("ERROR", "sync", "session_log_failed", {"owner": owner, "id": session_id, "error": str(e)})
            return session_id, sessions.session_status(failed, stopped_early)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_status(self, conn: sqlite3.Connection, owner: str) -> dict:
        return sessions.status(conn, owner, self.cfg.status_session_limit)

    def list_sessions(self, conn: sqlite3.Connection, owner: str, limit: int | None = None) -> list[dict]:
        return sessions.list_sessions(conn, owner, limit or self.cfg.status_session_limit)

    def list_dead_letters(self, conn: sqlite3.Connection, owner: str) -> list[dict]:
        return retry.list_dead_letters(conn, owner)
