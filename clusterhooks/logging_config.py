from __future__ import annotations

import logging
import os
import sys

_DEFAULT_LOG_LEVEL = "INFO"
_LEVEL_ENV_VAR = "CLUSTERHOOKS_LOG_LEVEL"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_RESET = "\x1b[0m"
_LEVEL_COLORS = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}


class _LevelColorFormatter(logging.Formatter):
    def __init__(self, *, use_color: bool) -> None:
        super().__init__(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        color = _LEVEL_COLORS.get(levelname) if self._use_color else None
        if color:
            record.levelname = f"{color}{levelname}{_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _should_use_color(stream) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def resolve_level(level: str | int | None) -> int:
    """Map a level name or number to a logging level, falling back to INFO."""
    if isinstance(level, int):
        return level
    name = (level or os.getenv(_LEVEL_ENV_VAR) or _DEFAULT_LOG_LEVEL).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(*, level: str | int | None = None, force: bool = False) -> None:
    root = logging.getLogger()
    resolved = resolve_level(level)
    root.setLevel(resolved)

    # keep handlers installed by a host process (pytest, uvicorn) unless forced
    if root.handlers and not force:
        for handler in root.handlers:
            handler.setLevel(resolved)
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(_LevelColorFormatter(use_color=_should_use_color(sys.stderr)))
    root.handlers.clear()
    root.addHandler(handler)
