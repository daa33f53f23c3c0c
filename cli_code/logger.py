"""Logging for cli-code: terse console lines plus a rotating log file."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

__all__ = ["setup_logger", "get_logger", "LOG_DIR"]

ROOT_LOGGER = "cli_code"
LOG_DIR = Path("~/.cli-code/logs").expanduser()
LOG_FILE_NAME = "cli-code.log"

CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 5

QUIET_LOGGERS = ("urllib3", "requests", "prompt_toolkit")

LogTarget = Union[str, Path, bool, None]


def setup_logger(
    name: str = ROOT_LOGGER,
    verbose: bool = False,
    log_file: LogTarget = None,
) -> logging.Logger:
    """Configure the package logger and return it.

    Module loggers (``get_logger(__name__)``) are children of ``cli_code``
    and pick up these handlers. Calling this again replaces the handlers.

    Args:
        name: Logger to configure.
        verbose: Show INFO on the console. The file always gets INFO+.
        log_file: ``None``/``True`` for ``~/.cli-code/logs/cli-code.log``,
            ``False`` for no file, or an explicit path.
    """
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.INFO)
    logger.propagate = False
    logger.addHandler(_console_handler(logging.INFO if verbose else logging.WARNING))

    path = _resolve_log_path(log_file)
    if path is not None:
        logger.addHandler(_file_handler(path))

    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _console_handler(level: int) -> logging.Handler:
    # stdout is reserved for rich output
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def _resolve_log_path(log_file: LogTarget) -> Path | None:
    if log_file is False:
        return None
    if log_file is None or log_file is True:
        return LOG_DIR / LOG_FILE_NAME
    return Path(log_file).expanduser()
