"""Observability for crunchplane: the structured logger and its configuration."""

from .logger import BoundLogger, logger
from .logging import LogConfig, LogLevel, setup_logging, teardown_logging

__all__ = [
    "BoundLogger",
    "LogConfig",
    "LogLevel",
    "logger",
    "setup_logging",
    "teardown_logging",
]
