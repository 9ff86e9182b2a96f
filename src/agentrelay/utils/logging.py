"""Process logging for agentrelay entry points.

An MCP server owns stdout for JSON-RPC frames, so the handlers installed here
write to stderr and, when a log directory is configured, to a rotating file.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, TextIO

__all__ = ["LoggingConfig", "setup_logging", "log_file_path", "LOG_DIR_ENV", "LOG_LEVEL_ENV"]

LOG_DIR_ENV = "AGENTRELAY_LOG_DIR"
LOG_LEVEL_ENV = "AGENTRELAY_LOG_LEVEL"
LOG_FILE_NAME = "agentrelay.log"

_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
# Transport libraries log every request at INFO/DEBUG.
_LIBRARY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai", "asyncio")

_installed: list[logging.Handler] = []
_log_file: Path | None = None


@dataclass(slots=True)
class LoggingConfig:
    """Handler configuration for :func:`setup_logging`.

    ``log_dir=None`` disables file logging; stderr logging is always on unless
    ``console`` is False.
    """

    level: int = logging.INFO
    log_dir: Path | None = None
    console: bool = True
    max_bytes: int = 1_000_000
    backup_count: int = 3

    @classmethod
    def from_env(cls, *, debug: bool = False, environ: Mapping[str, str] | None = None) -> LoggingConfig:
        env = os.environ if environ is None else environ
        level = logging.DEBUG if debug else parse_level(env.get(LOG_LEVEL_ENV) or "INFO")
        raw_dir = env.get(LOG_DIR_ENV)
        return cls(level=level, log_dir=Path(raw_dir).expanduser() if raw_dir else None)


def parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(config: LoggingConfig | None = None, *, stream: TextIO | None = None) -> Path | None:
    """Install agentrelay's handlers on the root logger and return the log file, if any.

    Calling it again replaces the handlers from the previous call and leaves
    handlers installed by anyone else untouched.
    """

    global _log_file
    config = config or LoggingConfig()
    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()
    _log_file = None

    formatter = logging.Formatter(_LOG_FORMAT)
    if config.console:
        console = logging.StreamHandler(stream or sys.stderr)
        console.setFormatter(formatter)
        _installed.append(console)
    if config.log_dir is not None:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        _log_file = config.log_dir / LOG_FILE_NAME
        file_handler = logging.handlers.RotatingFileHandler(
            _log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        _installed.append(file_handler)

    for handler in _installed:
        handler.setLevel(config.level)
        root.addHandler(handler)
    root.setLevel(config.level)
    library_level = max(config.level, logging.WARNING)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    return _log_file


def log_file_path() -> Path | None:
    """Return the file written by the most recent :func:`setup_logging` call."""

    return _log_file
