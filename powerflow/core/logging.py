"""Structured JSON logging with a per-calculation grid id."""

from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from typing import Any

from powerflow.config import settings

grid_id_var: ContextVar[str] = ContextVar("grid_id", default="")

_EXTRA_FIELDS = ("solver", "iteration", "max_residual", "node_id")


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter with grid id injection."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        gid = grid_id_var.get("")
        if gid:
            log_entry["grid_id"] = gid

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry)


class GridIdFilter(logging.Filter):
    """Prefix plain-text messages with the active grid id."""

    def filter(self, record: logging.LogRecord) -> bool:
        gid = grid_id_var.get("")
        record.grid_tag = f"[{gid}] " if gid else ""
        return True


def setup_logging(json_format: bool | None = None, level: str | int | None = None) -> None:
    """Configure root logger. Use json_format=True for machine-read logs.

    Arguments left as None come from ``settings.log_json`` and
    ``settings.log_level``.
    """
    if json_format is None:
        json_format = settings.log_json
    if level is None:
        level = settings.log_level.upper()

    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(GridIdFilter())
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(grid_tag)s%(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)
