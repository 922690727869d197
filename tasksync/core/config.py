from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from tasksync.core.errors import ConfigError

PROJECT_ROOT = Path(os.environ.get("TASKSYNC_HOME") or Path.cwd())
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


class SyncConfig(BaseModel):
    # Operations per integrity-checked batch.
    batch_size: int = Field(default=50, ge=1, le=10000)
    # Failed attempts before an operation is dead-lettered.
    max_retries: int = Field(default=3, ge=1, le=100)
    # Seconds a sync call waits for the owner's lock before giving up with sync_busy.
    lock_timeout_sec: float = Field(default=30.0, gt=0, le=3600)
    status_session_limit: int = Field(default=5, ge=1, le=500)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")
    max_bytes: int = Field(default=10 * 1024 * 1024, ge=0)
    backup_count: int = Field(default=5, ge=0, le=100)
    # Per-logger overrides, e.g. {"retry": "WARNING"} to keep only dead-letter and failure lines.
    component_levels: dict[str, str] = Field(default_factory=dict)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "tasks.db")
    # Bounded wait on a locked database; surfaces as an operation failure instead of hanging.
    busy_timeout_sec: float = Field(default=5.0, gt=0, le=300)


class AppConfig(BaseModel):
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = Field(default=3000, ge=1, le=65535)


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    if cfg.database.path != ":memory:":
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    """Load and validate ``config.yaml``.

    A missing file is created with defaults. A present but broken file is an
    error: the service refuses to start rather than run on guessed values.
    """
    import yaml

    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        ensure_runtime_dirs(cfg)
        return cfg

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"config_parse_failed: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config_not_mapping: {path}")

    try:
        cfg = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"config_invalid: {path}: {e}") from e
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
