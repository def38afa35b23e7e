"""
Logging configuration for the devspin CLI.

``configure`` is called once by main.py. Library modules only ever do
``logger = logging.getLogger(__name__)``.

Console verbosity follows the CLI flags, then ``DEVSPIN_LOG_LEVEL``, then
WARNING. ``DEVSPIN_LOG_FILE`` adds a file handler, at
``DEVSPIN_LOG_FILE_LEVEL`` if set, with full detail. Stage workers run in
named threads, so detailed formats include the thread name.
"""

from __future__ import annotations

import logging
import os
import sys

_DETAILED = "%(asctime)s %(levelname)-5s %(threadName)s %(name)s:%(lineno)d %(message)s"

# console format per level; anything quieter than INFO prints bare messages
_CONSOLE = {
    logging.DEBUG: (_DETAILED, "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
}


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console level from CLI flags, falling back to the env var."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get("DEVSPIN_LOG_LEVEL", "WARNING")


def configure(debug: bool = False, verbose: bool = False, quiet: bool = False) -> None:
    """Set up logging from CLI flags and ``DEVSPIN_LOG_*`` env vars."""
    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get("DEVSPIN_LOG_FILE"),
        log_file_level=os.environ.get("DEVSPIN_LOG_FILE_LEVEL"),
    )


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Replace the root logger's handlers.

    Unknown level names fall back to WARNING. The root level is the lower
    of the console and file levels.
    """
    console_level = _parse_level(level)
    fmt, datefmt = next(
        (formats for threshold, formats in _CONSOLE.items() if console_level <= threshold),
        ("%(message)s", None),
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handlers: list[logging.Handler] = [console]

    root_level = console_level
    if log_file:
        file_level = _parse_level(log_file_level or level)
        root_level = min(root_level, file_level)
        to_file = logging.FileHandler(log_file, encoding="utf-8")
        to_file.setLevel(file_level)
        to_file.setFormatter(logging.Formatter(_DETAILED, datefmt="%Y-%m-%d %H:%M:%S"))
        handlers.append(to_file)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(root_level)
    logging.raiseExceptions = False


def _parse_level(name: str | None) -> int:
    return logging.getLevelNamesMapping().get((name or "").upper(), logging.WARNING)
