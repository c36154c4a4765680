"""Loguru-style logger backed by stdlib logging + rich.

Usage::

    from crunchplane.observability.logger import logger

    log = logger.bind(controller="datacrunchmachine", namespace="default", name="m-0")
    log.info("Created instance {instance_id}", instance_id="i-123")

Bound fields travel on the LogRecord (``record.extras``) and are rendered
as a ``[key=value ...]`` suffix by the formatters in this module.
"""

from __future__ import annotations

import inspect
import logging
import logging.handlers
import os
import sys
from typing import TextIO

from rich.logging import RichHandler

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ROOT_LOGGER_NAME = "crunchplane"
_root = logging.getLogger(ROOT_LOGGER_NAME)
# library default: silent until setup_logging adds handlers
_root.addHandler(logging.NullHandler())

CONTEXT_KEYS = (
    "controller", "namespace", "name", "machine", "cluster",
    "instance_id", "operation", "component",
)


def _caller_logger() -> tuple[logging.Logger, inspect.Traceback]:
    frame = inspect.currentframe()
    while frame is not None and frame.f_globals.get("__name__") == __name__:
        frame = frame.f_back
    if frame is None:
        return _root, inspect.Traceback("", 0, "", None, None)
    module = frame.f_globals.get("__name__", ROOT_LOGGER_NAME)
    # every record lands under the crunchplane hierarchy, like a single loguru sink
    if module != ROOT_LOGGER_NAME and not module.startswith(ROOT_LOGGER_NAME + "."):
        return _root, inspect.getframeinfo(frame, context=0)
    return logging.getLogger(module), inspect.getframeinfo(frame, context=0)


def _format_message(msg: str, args: tuple[object, ...], kwargs: dict[str, object]) -> str:
    if kwargs:
        return msg.format(**kwargs)
    if args:
        return msg.format(*args)
    return msg


def format_context(extras: dict[str, object]) -> str:
    parts = [f"{k}={extras[k]}" for k in CONTEXT_KEYS if k in extras]
    return f" [{' '.join(parts)}]" if parts else ""


class BoundLogger:
    __slots__ = ("_extras",)

    def __init__(self, extras: dict[str, object] | None = None) -> None:
        self._extras = extras or {}

    @property
    def extras(self) -> dict[str, object]:
        return dict(self._extras)

    def bind(self, **kwargs: object) -> BoundLogger:
        return BoundLogger({**self._extras, **kwargs})

    def _log(self, level: int, message: str, /, *args: object, **kwargs: object) -> None:
        exc_info = kwargs.pop("exc_info", False)
        lib_logger, frame = _caller_logger()
        if not lib_logger.isEnabledFor(level):
            return
        record = lib_logger.makeRecord(
            name=lib_logger.name,
            level=level,
            fn=frame.filename,
            lno=frame.lineno,
            msg=_format_message(message, args, kwargs),
            args=(),
            exc_info=sys.exc_info() if exc_info else None,
            func=frame.function,
        )
        record.filename = os.path.basename(frame.filename)
        for k, v in self._extras.items():
            # never clobber LogRecord attributes such as ``name``
            if not hasattr(record, k):
                setattr(record, k, v)
        record.extras = self._extras  # type: ignore[attr-defined]
        lib_logger.handle(record)

    def trace(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(TRACE, message, *args, **kwargs)

    def debug(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.DEBUG, message, *args, **kwargs)

    def info(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.INFO, message, *args, **kwargs)

    def warning(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.WARNING, message, *args, **kwargs)

    def error(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.ERROR, message, *args, **kwargs)

    def exception(self, message: str, /, *args: object, **kwargs: object) -> None:
        kwargs["exc_info"] = True
        self._log(logging.ERROR, message, *args, **kwargs)


class _ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.context = format_context(getattr(record, "extras", {}))
        return super().format(record)


FILE_FORMAT = (
    "%(asctime)s.%(msecs)03d | %(levelname)-8s | "
    "%(name)s:%(funcName)s:%(lineno)d%(context)s - %(message)s"
)


def make_file_handler(path: str, *, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
    )
    handler.setLevel(level)
    handler.setFormatter(_ContextFormatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def make_console_handler(level: int, stream: TextIO | None = None) -> logging.Handler:
    from rich.console import Console

    handler = RichHandler(
        level=level,
        console=Console(file=stream) if stream is not None else None,
        show_time=True,
        show_level=True,
        show_path=True,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(_ContextFormatter("%(message)s%(context)s"))
    handler.setLevel(level)
    return handler


class LoguruCompat:
    """Module-level entry point mirroring loguru's ``logger`` object."""

    def __init__(self) -> None:
        self._bound = BoundLogger()

    def bind(self, **kwargs: object) -> BoundLogger:
        return self._bound.bind(**kwargs)

    def trace(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.trace(message, *args, **kwargs)

    def debug(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.debug(message, *args, **kwargs)

    def info(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.info(message, *args, **kwargs)

    def warning(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.warning(message, *args, **kwargs)

    def error(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.error(message, *args, **kwargs)

    def exception(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.exception(message, *args, **kwargs)

    def add(self, handler: logging.Handler) -> logging.Handler:
        _root.addHandler(handler)
        return handler

    def remove(self, handler: logging.Handler | None = None) -> None:
        if handler is None:
            for h in list(_root.handlers):
                _root.removeHandler(h)
            return
        _root.removeHandler(handler)

    def enable(self, level: int = TRACE) -> None:
        _root.disabled = False
        _root.setLevel(level)

    def disable(self) -> None:
        _root.disabled = True


logger = LoguruCompat()

__all__ = [
    "BoundLogger",
    "CONTEXT_KEYS",
    "LoguruCompat",
    "ROOT_LOGGER_NAME",
    "TRACE",
    "format_context",
    "logger",
    "make_console_handler",
    "make_file_handler",
]
