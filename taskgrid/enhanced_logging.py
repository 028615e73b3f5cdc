"""TaskGrid logging helpers.

Provides get_logger, configure_logging and track_performance.  Everything
delegates to Python's standard logging library; modules keep their own
``logging.getLogger(__name__)``.
"""

import functools
import inspect
import json
import logging
import sys
import time
from typing import Any, Callable, Optional

ROOT_LOGGER = "taskgrid"

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": self.formatTime(record, _DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event is not None:
            data["event"] = event
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def configure_logging(settings: Any = None) -> logging.Logger:
    """Install a text or JSON handler on the ``taskgrid`` logger.

    Safe to call repeatedly: the handler installed by a previous call is
    reconfigured instead of duplicated.
    """
    if settings is None:
        from taskgrid.config.settings import get_settings
        settings = get_settings()

    level = settings.get_log_level()
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    handler = next((h for h in logger.handlers if getattr(h, "_taskgrid", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler._taskgrid = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    handler.setLevel(level)
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT))
    return logger


def track_performance(func: Optional[Callable] = None, *, operation: str = ""):
    """Decorator that logs execution time of a function."""
    def decorator(fn: Callable) -> Callable:
        op = operation or fn.__qualname__

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, elapsed
                )

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, elapsed
                )

        if inspect.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
