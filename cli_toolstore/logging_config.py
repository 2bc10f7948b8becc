"""
Diagnostics logging for toolstore commands.

Every module logs through ``logging.getLogger(__name__)``, which places its
records under the ``cli_toolstore`` logger configured here. User-facing
progress (downloads, activation, prune reports) is printed to stdout by the
commands themselves; this logger carries failures, hints and the debug
trail on stderr. ``--log-file`` adds a timestamped DEBUG transcript of a
run.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


LOGGER_NAME = "cli_toolstore"

CONSOLE_FORMAT = "%(levelname_colored)s %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_logger: Optional[logging.Logger] = None


def _resolve_level(level: str, verbose: bool, quiet: bool) -> int:
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return getattr(logging, level.upper())


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, use_colors=sys.stderr.isatty()))
    return handler


def _file_handler(log_file: str) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    propagate: bool = False,
) -> logging.Logger:
    """
    (Re)configure the ``cli_toolstore`` logger for one toolstore run.

    Called once by ``toolstore.main`` with the ``--verbose`` and
    ``--log-file`` flags. Calling it again replaces the handlers rather
    than stacking them.

    Args:
        level: Console level name when neither verbose nor quiet is set
        log_file: Path of a DEBUG transcript; parent directories are created
        verbose: Show debug records (lock handling, fallbacks) on stderr
        quiet: Drop the stderr handler; only the transcript is written
        propagate: Pass records up to the root logger (pytest's caplog)

    Returns:
        The configured ``cli_toolstore`` logger
    """
    global _logger

    effective_level = _resolve_level(level, verbose, quiet)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(effective_level)
    logger.handlers.clear()

    if not quiet:
        logger.addHandler(_console_handler(effective_level))
    if log_file:
        logger.addHandler(_file_handler(log_file))

    logger.propagate = propagate
    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """Return the ``cli_toolstore`` logger, applying INFO defaults if no run configured it."""
    global _logger
    if _logger is None:
        _logger = setup_logging()
    return _logger


class ColoredFormatter(logging.Formatter):
    """
    Level-tagged stderr lines: a colored symbol on a terminal, or a plain
    lowercase prefix such as ``error:`` when piped.
    """

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[1;31m',
    }
    RESET = '\033[0m'

    SYMBOLS = {
        'DEBUG': '🔍',
        'INFO': '✓',
        'WARNING': '⚠️',
        'ERROR': '✗',
        'CRITICAL': '🚨',
    }

    def __init__(self, fmt: str, use_colors: bool = True):
        super().__init__(fmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if self.use_colors:
            color = self.COLORS.get(levelname, '')
            symbol = self.SYMBOLS.get(levelname, '')
            record.levelname_colored = f"{color}{symbol} {levelname}{self.RESET}"
        else:
            record.levelname_colored = levelname.lower() + ":"
        return super().format(record)
