from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _level_from_env(name: str, default: str = "INFO") -> str:
    val = os.getenv(name, default).upper().strip()
    return val if val in _LEVELS else default


def setup_logging(level: str | None = None) -> None:
    """
    Configure the `shop_queue` logger hierarchy.

    Always logs to stderr. If SHOPQUEUE_LOG_FILE is set, also appends to that
    file. Level comes from `level`, else SHOPQUEUE_LOG_LEVEL, else INFO.
    """
    resolved = (level or "").upper().strip()
    if resolved not in _LEVELS:
        resolved = _level_from_env("SHOPQUEUE_LOG_LEVEL", "INFO")

    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "stream": "ext://sys.stderr",
        },
    }

    log_file = os.getenv("SHOPQUEUE_LOG_FILE")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "standard",
            "filename": log_file,
            "mode": "a",
        }

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": {
            "shop_queue": {
                "handlers": list(handlers),
                "level": resolved,
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(config)
