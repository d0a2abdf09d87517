"""
Logging setup shared by the API process, task workers and the import CLI.

Modules log through ``logging.getLogger(__name__)``. Stage handlers include
the job id in their messages, so a single stdout stream is enough to follow
one import across stages.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s"

_configured_level: Optional[str] = None


def configure_logging(level: Optional[str] = None, *, sql_echo: bool = False) -> None:
    """
    Install the stdout handler once per process.

    Args:
        level: Log level name for the root and ``app`` loggers. Defaults to INFO.
        sql_echo: Emit SQLAlchemy statements at the same level as the app.

    A later call with a different level only adjusts levels; handlers are not
    installed twice.
    """
    global _configured_level

    log_level = (level or "INFO").upper()

    if _configured_level is not None:
        if log_level != _configured_level:
            logging.getLogger().setLevel(log_level)
            logging.getLogger("app").setLevel(log_level)
            _configured_level = log_level
        return

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "pipeline": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "pipeline",
                },
            },
            "root": {"handlers": ["stdout"], "level": log_level},
            "loggers": {
                "app": {"level": log_level},
                "sqlalchemy.engine": {"level": log_level if sql_echo else "WARNING"},
            },
        }
    )
    _configured_level = log_level
