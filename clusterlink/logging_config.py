"""Logging configuration for clusterlink.

Timestamps are written in UTC, like every time the manager records.
"""

import logging
import sys
import time
from pathlib import Path

from clusterlink.exceptions import ConfigurationError

LOG_FORMAT = "%(asctime)sZ %(levelname)s %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
CONSOLE_HANDLER_NAME = "clusterlink-console"

# Kubernetes client chatter (every request of every watch) at INFO
QUIET_LOGGERS = ("urllib3", "kubernetes")


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ConfigurationError(
            f"Unknown log level '{name}'",
            details="Use DEBUG, INFO, WARNING, ERROR or CRITICAL",
        )
    return level


def _formatter() -> logging.Formatter:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    formatter.converter = time.gmtime
    return formatter


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    The console only shows warnings unless ``verbose`` is set; the log file,
    when given, receives every record at or above ``level``.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG

    Raises:
        ConfigurationError: Unknown level name
    """
    root_level = logging.DEBUG if verbose else _level(level)
    formatter = _formatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def show_progress() -> None:
    """Let INFO records reach the console, for long-running commands.

    Leaves a more verbose console untouched.
    """
    root_logger = logging.getLogger()
    if root_logger.level > logging.INFO:
        root_logger.setLevel(logging.INFO)
    for handler in root_logger.handlers:
        if handler.get_name() == CONSOLE_HANDLER_NAME and handler.level > logging.INFO:
            handler.setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
