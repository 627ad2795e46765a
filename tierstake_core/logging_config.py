"""
Root logger setup for a TierStake node.

The console gets either a readable line per record (``fmt="human"``,
coloured when stderr is a terminal) or one JSON object per line
(``fmt="json"``).  An optional log file always receives JSON, since
forfeited rewards and replaced stakes are what operators grep for later.

    from tierstake_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="logs/tierstake.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tierstake_core.config import LoggingConfig

# ANSI colour per level name
_LEVEL_COLOURS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}

# One request per line at INFO would drown the ledger's own messages
_NOISY_LOGGERS = ("aiohttp.access",)


def _exception_text(formatter: logging.Formatter, record: logging.LogRecord) -> Optional[str]:
    if record.exc_info and record.exc_info[1]:
        return formatter.formatException(record.exc_info)
    return None


class JSONFormatter(logging.Formatter):
    """Machine-readable records: ts (UTC ISO-8601), level, logger, msg[, exception]."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        exc = _exception_text(self, record)
        if exc:
            entry["exception"] = exc
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL  ] logger: message``, tinted by level when *colour*."""

    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        text = f"{clock} [{record.levelname:<7}] {record.name}: {record.getMessage()}"
        exc = _exception_text(self, record)
        if exc:
            text = f"{text}\n{exc}"
        tint = _LEVEL_COLOURS.get(record.levelname, "") if self.colour else ""
        return f"{tint}{text}{self.RESET}" if tint else text


def _console_handler(fmt: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(HumanFormatter(colour=sys.stderr.isatty()))
    return handler


def _file_handler(log_file: str) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(path))
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Replace the root logger's handlers with TierStake's.

    *level* is a standard level name (case-insensitive; anything unknown
    means INFO).  *fmt* picks the console format, ``"human"`` or
    ``"json"``.  *log_file*, if set, adds a JSON file handler and creates
    the file's parent directories.  Safe to call more than once.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    root.addHandler(_console_handler(fmt))
    if log_file:
        root.addHandler(_file_handler(log_file))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


def setup_logging_from_config(cfg: LoggingConfig) -> None:
    setup_logging(level=cfg.level, fmt=cfg.format, log_file=cfg.file)
