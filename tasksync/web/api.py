from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from tasksync.core.config import AppConfig
from tasksync.core.errors import InvalidOperationError, StoreUnavailableError, SyncBusyError
from tasksync.store import records
from tasksync.store.db import get_conn
from tasksync.sync import SyncEngine
from tasksync.web.schemas import SyncRequest, TaskCreate, TaskUpdate

router = APIRouter(prefix="/api")
logger = logging.getLogger("api")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_config(request: Request) -> AppConfig:
    return request.app.state.cfg


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def get_db(cfg: AppConfig = Depends(get_config)) -> Iterator[sqlite3.Connection]:
    """One store handle per request, closed when the response is done."""
    try:
        conn = get_conn(cfg.database.path, timeout=cfg.database.busy_timeout_sec)
    except sqlite3.Error as e:
        raise HTTPException(status_code=503, detail=f"store_unavailable: {e}")
    try:
        yield conn
    finally:
        conn.close()


def require_owner(x_owner_id: str = Header(default="")) -> str:
    owner = x_owner_id.strip()
    if not owner:
        raise HTTPException(status_code=401, detail="owner_missing")
    return owner


def _build_readiness_payload(cfg: AppConfig) -> dict:
    checks: dict[str, bool] = {
        "database_ready": False,
        "log_parent_ready": False,
    }
    errors: list[str] = []

    try:
        conn = get_conn(cfg.database.path, timeout=cfg.database.busy_timeout_sec)
        try:
            conn.execute("SELECT COUNT(1) FROM sync_queue").fetchone()
            checks["database_ready"] = True
        finally:
            conn.close()
    except sqlite3.Error as e:
        errors.append(f"database_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        checks["log_parent_ready"] = True
    except OSError as e:
        errors.append(f"log_parent_unavailable: {e}")

    return {
        "ok": all(checks.values()),
        "checked_at": _now_iso(),
        "checks": checks,
        "errors": errors,
    }


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz(cfg: AppConfig = Depends(get_config)):
    payload = _build_readiness_payload(cfg)
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post("/sync")
def submit_sync(
    body: SyncRequest,
    owner: str = Depends(require_owner),
    conn: sqlite3.Connection = Depends(get_db),
    engine: SyncEngine = Depends(get_engine),
):
    try:
        result = engine.submit_sync(conn, owner, body.engine_changes(), body.last_synced_at)
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncBusyError:
        raise HTTPException(status_code=409, detail="sync_busy")
    except StoreUnavailableError as e:
        logger.error("sync_store_unavailable owner=%s error=%s", owner, e)
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.get("/sync/status")
def sync_status(
    owner: str = Depends(require_owner),
    conn: sqlite3.Connection = Depends(get_db),
    engine: SyncEngine = Depends(get_engine),
):
    status = engine.get_status(conn, owner)
    return {
        "pending_sync_count": status["pending_count"],
        "sync_queue_size": status["pending_count"],
        "last_sync_timestamp": status["last_session_timestamp"],
        "last_sync_status": status["last_session_status"],
        "recent_sessions": status["recent_sessions"],
    }


@router.get("/sync/sessions")
def sync_sessions(
    limit: int = 20,
    owner: str = Depends(require_owner),
    conn: sqlite3.Connection = Depends(get_db),
    engine: SyncEngine = Depends(get_engine),
):
    limit_sanitized = min(max(int(limit), 1), 500)
    items = engine.list_sessions(conn, owner, limit_sanitized)
    return {"limit": limit_sanitized, "count": len(items), "items": items}


@router.get("/sync/dead-letters")
def sync_dead_letters(
    owner: str = Depends(require_owner),
    conn: sqlite3.Connection = Depends(get_db),
    engine: SyncEngine = Depends(get_engine),
):
    items = engine.list_dead_letters(conn, owner)
    return {"count": len(items), "items": items}


@router.get("/sync/health")
def sync_health():
    return {"status": "ok", "timestamp": _now_iso()}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.get("/tasks")
def list_tasks(owner: str = Depends(require_owner), conn: sqlite3.Connection = Depends(get_db)):
    return records.list_tasks(conn, owner)


@router.get("/tasks/{task_id}")
def get_task(task_id: str, owner: str = Depends(require_owner), conn: sqlite3.Connection = Depends(get_db)):
    task = records.find_task(conn, task_id, owner)
    if not task:
        raise HTTPException(status_code=404, detail="task_not_found")
    return task


@router.post("/tasks", status_code=201)
def create_task(body: TaskCreate, owner: str = Depends(require_owner), conn: sqlite3.Connection = Depends(get_db)):
    try:
        return records.create_task(conn, owner, body.title, body.description, body.completed)
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/tasks/{task_id}")
def update_task(
    task_id: str,
    body: TaskUpdate,
    owner: str = Depends(require_owner),
    conn: sqlite3.Connection = Depends(get_db),
):
    try:
        task = records.update_task(conn, task_id, owner, body.model_dump(exclude_none=True))
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if task is None:
        raise HTTPException(status_code=404, detail="task_not_found")
    return task


@router.delete("/tasks/{task_id}", status_code=204)
def delete_task(task_id: str, owner: str = Depends(require_owner), conn: sqlite3.Connection = Depends(get_db)):
    if not records.delete_task(conn, task_id, owner):
        raise HTTPException(status_code=404, detail="task_not_found")
