"""
Logging setup for the ``deken`` command.

Library code only ever does ``logger = logging.getLogger(__name__)``.
Handlers are attached here, once, by the CLI; an editor embedding the
package manager configures logging its own way and never calls this.

Level resolution:
    explicit argument  >  DEKEN_LOG_LEVEL  >  WARNING

File output is opt-in through ``log_file`` or DEKEN_LOG_FILE, with its
own level (``log_file_level`` / DEKEN_LOG_FILE_LEVEL, default: same as
the console).

Handlers installed here are named ``deken.*``.  Calling
``setup_logging`` again swaps those and leaves any other handler on
the root logger alone.
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LEVEL = "DEKEN_LOG_LEVEL"
ENV_FILE = "DEKEN_LOG_FILE"
ENV_FILE_LEVEL = "DEKEN_LOG_FILE_LEVEL"

CONSOLE_HANDLER = "deken.console"
FILE_HANDLER = "deken.file"

# (most verbose level covered, format, datefmt), checked in order
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(threadName)s] %(name)s: %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d  %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Attach deken's console (and optional file) handler to the root logger.

    Args:
        level: Console level name; falls back to DEKEN_LOG_LEVEL.
        log_file: Log file path; falls back to DEKEN_LOG_FILE.
        log_file_level: File level name; falls back to
            DEKEN_LOG_FILE_LEVEL, then to the console level.
    """
    console_level = _parse_level(level or os.environ.get(ENV_LEVEL))
    log_file = log_file or os.environ.get(ENV_FILE)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() in (CONSOLE_HANDLER, FILE_HANDLER):
            root.removeHandler(handler)
            handler.close()

    root.addHandler(_console_handler(console_level))
    lowest = console_level

    if log_file:
        file_level_name = log_file_level or os.environ.get(ENV_FILE_LEVEL)
        file_level = _parse_level(file_level_name) if file_level_name else console_level
        root.addHandler(_file_handler(log_file, file_level))
        lowest = min(lowest, file_level)

    root.setLevel(lowest)
    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = _CONSOLE_FORMATS[-1][1:]
    for ceiling, candidate, candidate_datefmt in _CONSOLE_FORMATS:
        if level <= ceiling:
            fmt, datefmt = candidate, candidate_datefmt
            break

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(CONSOLE_HANDLER)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.set_name(FILE_HANDLER)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    return handler


def _parse_level(level: str | None) -> int:
    """Level name to number; unknown or empty names mean WARNING."""
    if not level:
        return logging.WARNING
    numeric = logging.getLevelName(level.upper())
    return numeric if isinstance(numeric, int) else logging.WARNING
