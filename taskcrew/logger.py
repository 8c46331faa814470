"""Logging for taskcrew.

Modules ask for a logger with :func:`get_logger`; only the CLI wires handlers,
through a single :func:`setup_logger` call on the ``taskcrew`` package logger.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional, Union

__all__ = ["setup_logger", "get_logger", "PACKAGE_LOGGER"]

PACKAGE_LOGGER = "taskcrew"
DEFAULT_LOG_FILE = Path.home() / ".taskcrew" / "logs" / "taskcrew.log"

# Third-party loggers that flood the console at INFO.
NOISY_LOGGERS = ("litellm", "LiteLLM", "httpx", "asyncio")

_CONSOLE_FMT = "[%(levelname).1s] %(message)s"
_FILE_FMT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"
_ROTATE_AT = 5 * 1024 * 1024
_KEEP_FILES = 3

LogTarget = Union[str, Path, bool, None]


def _stderr_handler(level: int) -> logging.Handler:
    # stderr so that `taskcrew plan --json` output on stdout stays parseable
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_CONSOLE_FMT))
    return handler


def _rotating_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=_ROTATE_AT, backupCount=_KEEP_FILES,
                                  encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(_FILE_FMT))
    return handler


def setup_logger(
    name: str = PACKAGE_LOGGER,
    verbose: bool = False,
    log_file: LogTarget = None,
    console: bool = True,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """(Re)configure the named logger and return it.

    ``log_file`` selects the file target: ``None``/``True`` means
    :data:`DEFAULT_LOG_FILE`, ``False`` turns file logging off, anything else
    is used as a path. The file always records INFO; the console shows INFO
    only when ``verbose``.
    """
    logger = logging.getLogger(name)
    while logger.handlers:
        old = logger.handlers[0]
        logger.removeHandler(old)
        old.close()
    logger.propagate = False

    console_level = logging.INFO if verbose else logging.WARNING
    if console:
        logger.addHandler(_stderr_handler(console_level))

    path = _resolve_log_path(log_file)
    if path is not None:
        logger.addHandler(_rotating_handler(path))
    logger.setLevel(logging.INFO if path is not None else console_level)

    for other in quiet:
        logging.getLogger(other).setLevel(logging.WARNING)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _resolve_log_path(log_file: LogTarget) -> Optional[Path]:
    if log_file is False:
        return None
    if log_file in (None, True):
        return DEFAULT_LOG_FILE
    return Path(log_file).expanduser()
