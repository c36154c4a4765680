"""Logging configuration for crunchplane.

Logging for the ``crunchplane`` logger hierarchy is silent until
``setup_logging`` is called, normally by the manager on start.

Example:
    from crunchplane.observability import LogConfig, setup_logging

    handlers = setup_logging(LogConfig(level="DEBUG", file="crunchplane.log"))
    ...
    teardown_logging(handlers)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from .logger import TRACE, logger, make_console_handler, make_file_handler

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

_LEVELS: dict[str, int] = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration for the controller manager.

    Attributes:
        level: Minimum console log level.
        file: Path to a log file. None disables file output.
        console: Whether to log to stderr through rich. Defaults to True.
        max_bytes: Rotate the log file after this many bytes.
        retention: Number of rotated log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    max_bytes: int = 50 * 1024 * 1024
    retention: int = 10


def level_number(level: str) -> int:
    try:
        return _LEVELS[level.upper()]
    except KeyError:
        raise ValueError(f"Unknown log level {level!r}. Valid: {', '.join(_LEVELS)}") from None


def setup_logging(config: LogConfig) -> list[logging.Handler]:
    """Configure logging and return the handlers that were added."""
    logger.enable()
    handlers: list[logging.Handler] = []

    if config.console:
        handlers.append(logger.add(make_console_handler(level_number(config.level))))

    if config.file:
        # File always captures everything
        handlers.append(logger.add(make_file_handler(
            config.file,
            level=logging.DEBUG,
            max_bytes=config.max_bytes,
            backup_count=config.retention,
        )))

    return handlers


def teardown_logging(handlers: list[logging.Handler]) -> None:
    for handler in handlers:
        logger.remove(handler)
        handler.close()
