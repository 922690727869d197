from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from tasksync.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from tasksync.core.errors import ConfigError, StoreUnavailableError, SyncBusyError
from tasksync.store.db import get_conn, init_db
from tasksync.sync import SyncEngine

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(payload: Any):
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _open(cfg: AppConfig):
    init_db(cfg.database.path)
    return get_conn(cfg.database.path, timeout=cfg.database.busy_timeout_sec)


def _build_sync_engine(cfg: AppConfig) -> SyncEngine:
    return SyncEngine(cfg.sync)


@app.command()
def serve():
    """Run the HTTP service."""
    from tasksync.web.main import main as web_main

    web_main()


@app.command("init-db")
def init_db_cmd(path: Path = DEFAULT_CONFIG_PATH):
    """Create the database schema if it does not exist."""
    cfg = load_config(path)
    init_db(cfg.database.path)
    print(f"OK: database={cfg.database.path}")


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _print_json(cfg.model_dump())


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "web_bind_host_configured": False,
            "database_ready": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    if not out["checks"]["config_exists"]:
        out["warnings"].append(f"config_missing_defaults_written: {path}")

    try:
        cfg = load_config(path)
    except ConfigError as e:
        out["ok"] = False
        out["errors"].append(str(e))
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    out["checks"]["web_bind_host_configured"] = bool(str(cfg.web_bind_host or "").strip())
    if not out["checks"]["web_bind_host_configured"]:
        out["errors"].append("web_bind_host_missing")

    try:
        init_db(cfg.database.path)
        out["checks"]["database_ready"] = True
    except Exception as e:
        out["errors"].append(f"database_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["log_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"log_parent_unavailable: {e}")

    if cfg.sync.max_retries == 1:
        out["warnings"].append("max_retries_is_1: first failure dead-letters the operation")

    out["ok"] = len(out["errors"]) == 0
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command()
def sync(
    owner: str = typer.Option(..., "--owner", help="Owner whose queue is processed."),
    since: str | None = typer.Option(None, "--since", help="Return records changed after this timestamp."),
):
    """Process the owner's pending queue without submitting new changes."""
    cfg = load_config()
    engine = _build_sync_engine(cfg)
    conn = _open(cfg)
    try:
        result = engine.submit_sync(conn, owner, [], since)
    except (SyncBusyError, StoreUnavailableError) as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    finally:
        conn.close()

    summary = result.to_dict()
    summary["server_changes"] = len(summary["server_changes"])
    _print_json(summary)
    if result.failed > 0:
        raise typer.Exit(2)


@app.command()
def status(owner: str = typer.Option(..., "--owner")):
    """Show queue depth and the last sync session for an owner."""
    cfg = load_config()
    engine = _build_sync_engine(cfg)
    conn = _open(cfg)
    try:
        st = engine.get_status(conn, owner)
        dead = len(engine.list_dead_letters(conn, owner))
    finally:
        conn.close()

    table = Table(title=f"tasksync status ({owner})")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("pending", str(st["pending_count"]))
    table.add_row("dead_letters", str(dead))
    table.add_row("last_sync", st["last_session_timestamp"] or "-")
    table.add_row("last_status", st["last_session_status"] or "-")
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command()
def sessions(
    owner: str = typer.Option(..., "--owner"),
    limit: int = typer.Option(20, "--limit", min=1),
):
    """List recent sync sessions, newest first."""
    cfg = load_config()
    engine = _build_sync_engine(cfg)
    conn = _open(cfg)
    try:
        items = engine.list_sessions(conn, owner, limit)
    finally:
        conn.close()

    table = Table(title=f"sync sessions ({owner})")
    for col in ("created_at", "status", "considered", "processed", "failed", "id"):
        table.add_column(col)
    for s in items:
        table.add_row(
            s["created_at"],
            s["status"],
            str(s["change_count"]),
            str(s["processed"]),
            str(s["failed"]),
            s["id"],
        )
    console.print(table)


@app.command("dead-letters")
def dead_letters(
    owner: str = typer.Option(..., "--owner"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """List operations that exhausted their retries."""
    cfg = load_config()
    engine = _build_sync_engine(cfg)
    conn = _open(cfg)
    try:
        items = engine.list_dead_letters(conn, owner)
    finally:
        conn.close()

    if json_output:
        _print_json(items)
        return

    table = Table(title=f"dead letters ({owner})")
    for col in ("failed_at", "task_id", "operation", "attempts", "error"):
        table.add_column(col)
    for d in items:
        table.add_row(d["failed_at"], d["task_id"], d["operation"], str(d["retry_count"]), d["error_message"] or "")
    console.print(table)


def main():
    app()


if __name__ == "__main__":
    main()
