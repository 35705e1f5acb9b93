"""Logging setup for the butler CLI.

Stdout carries assistant output, so the console handler writes to stderr and
only shows warnings unless debug logging is on. Everything at ``level`` goes
to a rotating file under ``~/.butler/logs`` (or ``BUTLER_LOG_DIR``). When that
directory cannot be created the file handler is skipped and a warning is
logged instead of failing start-up.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import TextIO

__all__ = ["setup_logging", "get_log_path", "LOG_FILE_NAME"]

LOG_FILE_NAME = "butler.log"
_DEFAULT_LOG_DIR = Path.home() / ".butler" / "logs"
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
# SDK and subprocess chatter; the MCP SDK logs every JSON-RPC frame at DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "anthropic", "mcp")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    console_stream: TextIO | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path | None:
    """Configure root logging and return the log file path, if one is written.

    Repeated calls are no-ops unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force:
        return _LOG_PATH

    handlers: list[logging.Handler] = []
    log_path: Path | None = None
    file_error: OSError | None = None
    try:
        file_handler, log_path = _file_handler(_resolve_log_dir(log_dir), level, max_bytes, backup_count)
        handlers.append(file_handler)
    except OSError as exc:
        file_error = exc

    if console:
        handlers.append(_console_handler(console_stream or sys.stderr, level))

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_sdk_loggers(level)

    if file_error is not None:
        logging.getLogger(__name__).warning("File logging disabled: %s", file_error)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("BUTLER_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _file_handler(
    directory: Path, level: int, max_bytes: int, backup_count: int
) -> tuple[logging.Handler, Path]:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler, path


def _console_handler(stream: TextIO, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level if level <= logging.DEBUG else max(level, logging.WARNING))
    handler.setFormatter(logging.Formatter(fmt=_CONSOLE_FORMAT))
    return handler


def _quiet_sdk_loggers(root_level: int) -> None:
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
