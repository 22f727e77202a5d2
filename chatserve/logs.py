"""JSON line logging configured from a level name."""

from __future__ import annotations

import json
import logging
import sys
from enum import Enum
from typing import Any

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
LOGGER_NAME = "chatserve"


class Level(str, Enum):
    PANIC = "panic"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"

    def __str__(self) -> str:
        return self.value


_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def _level_name(levelno: int) -> str:
    if levelno >= logging.CRITICAL:
        return "fatal"
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warning"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


class JsonFormatter(logging.Formatter):
    """Formats each record as a JSON object with level, msg and time keys."""

    def __init__(self, timestamp_format: str = TIMESTAMP_FORMAT) -> None:
        super().__init__(datefmt=timestamp_format)

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "level": _level_name(record.levelno),
            "msg": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, sort_keys=True, default=str)


def new_logger(level: Level | str) -> logging.Logger:
    """Create a logger writing JSON lines to stderr at the given level.

    Raises ValueError for an unknown level name.
    """
    key = str(level).lower()
    try:
        numeric = _LEVELS[key]
    except KeyError:
        raise ValueError(f"not a valid log level: {str(level)!r}") from None

    logger = logging.Logger(LOGGER_NAME, numeric)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger