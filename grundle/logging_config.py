"""
Logging setup for grundle.

Everything goes through the "grundle" logger. The console handler writes
to stderr, since stdout carries `grundle list --json`. An optional log
file records DEBUG and up whatever the console level is.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional, TextIO


LOGGER_NAME = "grundle"

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger: Optional[logging.Logger] = None


def wants_color(stream: TextIO) -> bool:
    """Colour only on a terminal, and never with NO_COLOR or GRUNDLE_COLOR=0."""
    if os.environ.get("NO_COLOR") or os.environ.get("GRUNDLE_COLOR", "1") != "1":
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def console_level(level: str = "INFO", verbose: bool = False, quiet: bool = False) -> int:
    """
    Resolve the console threshold.

    Args:
        level: Level name used when neither flag is set
        verbose: -v, show DEBUG
        quiet: -q, warnings and errors only

    Raises:
        ValueError: If level is not a logging level name
    """
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


class ConsoleFormatter(logging.Formatter):
    """
    Terse console lines.

    Progress reads as "✓ message"; warnings and errors carry their level
    ("error: ...") so they stand out in a scrolling install log; debug
    lines name the emitting module.
    """

    COLORS = {
        'DEBUG': '\033[2m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[1;31m',
    }
    RESET = '\033[0m'

    INFO_SYMBOL = '✓'
    DEBUG_SYMBOL = '·'

    def __init__(self, use_colors: bool = False):
        super().__init__("%(message)s")
        self.use_colors = use_colors

    def prefix(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            return f"{record.levelname.lower()}:"
        if record.levelno <= logging.DEBUG:
            return f"{self.DEBUG_SYMBOL} [{record.name}]"
        return self.INFO_SYMBOL

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        prefix = self.prefix(record)
        if self.use_colors:
            prefix = f"{self.COLORS.get(record.levelname, '')}{prefix}{self.RESET}"
        return f"{prefix} {message}"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    propagate: bool = False,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Configure the grundle logger. Safe to call repeatedly.

    Args:
        level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Also write DEBUG and up to this file
        verbose: Console at DEBUG
        quiet: Console at WARNING
        propagate: Pass records on to the root logger (pytest's caplog)
        stream: Console stream (default sys.stderr)

    Returns:
        The configured logger
    """
    global _logger

    threshold = console_level(level, verbose, quiet)
    stream = stream or sys.stderr

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    console = logging.StreamHandler(stream)
    console.setLevel(threshold)
    console.setFormatter(ConsoleFormatter(use_colors=wants_color(stream)))
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    # The logger passes what the most verbose handler wants
    logger.setLevel(logging.DEBUG if log_file else threshold)
    logger.propagate = propagate

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """The grundle logger, configured with defaults on first use."""
    global _logger
    if _logger is None:
        _logger = setup_logging()
    return _logger
