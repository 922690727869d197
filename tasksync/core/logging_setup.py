"""Process-wide logging for the service and the CLI.

Components log through short named loggers with a snake_case event code and
a JSON detail, e.g. ``sync  sync_finished {"owner": "alice", ...}``.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from tasksync.core.config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Loggers the sync core writes to; reset on every call so a dropped override does not linger.
COMPONENT_LOGGERS = ("sync", "retry", "integrity", "api")


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ValueError(f"log_level_invalid: {name}")
    return level


def setup_logging(cfg: LoggingConfig) -> logging.Logger:
    log_level = _level(cfg.level)
    overrides = {name: _level(value) for name, value in cfg.component_levels.items()}

    logfile = Path(cfg.file)
    logfile.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(log_level)
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    fmt = logging.Formatter(LOG_FORMAT)

    # max_bytes == 0 disables rotation.
    fh = RotatingFileHandler(logfile, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding="utf-8")
    fh.setFormatter(fmt)
    root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    for name in COMPONENT_LOGGERS:
        logging.getLogger(name).setLevel(overrides.get(name, logging.NOTSET))
    for name, level in overrides.items():
        logging.getLogger(name).setLevel(level)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    root.info(
        "logging_initialized level=%s file=%s overrides=%s",
        logging.getLevelName(log_level),
        logfile,
        {name: logging.getLevelName(level) for name, level in overrides.items()},
    )
    return root
