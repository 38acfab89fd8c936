"""Structured logging helpers shared by the report pipeline."""

from __future__ import annotations

import functools
import json
import logging
import os
import sys
import time
from typing import Any, Callable, Dict, Optional, TypeVar

__all__ = [
    "Metrics",
    "StructuredLogger",
    "get_logger",
    "setup_integrations_logger",
    "log_execution_time",
    "log_data_operation",
]

Metrics = Dict[str, Any]

_LOGGER_CONFIGURED = False


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept an optional ``metrics`` mapping."""

    @staticmethod
    def _with_metrics(message: str, metrics: Optional[Metrics]) -> str:
        if not metrics:
            return message
        try:
            serialized = json.dumps(metrics, ensure_ascii=False, default=str, sort_keys=True)
        except (TypeError, ValueError):
            serialized = repr(metrics)
        return f"{message} | metrics={serialized}"

    def debug(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        kwargs.setdefault("stacklevel", 2)
        super().debug(self._with_metrics(msg, metrics), *args, **kwargs)

    def info(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        kwargs.setdefault("stacklevel", 2)
        super().info(self._with_metrics(msg, metrics), *args, **kwargs)

    def warning(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        kwargs.setdefault("stacklevel", 2)
        super().warning(self._with_metrics(msg, metrics), *args, **kwargs)

    def error(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        kwargs.setdefault("stacklevel", 2)
        super().error(self._with_metrics(msg, metrics), *args, **kwargs)

    def exception(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        kwargs.setdefault("exc_info", True)
        self.error(msg, *args, metrics=metrics, **kwargs)


def _configure_root_logger() -> None:
    """Send every record to stdout with UTC ISO timestamps (idempotent)."""
    global _LOGGER_CONFIGURED  # pylint: disable=global-statement

    if _LOGGER_CONFIGURED:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)sZ %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    formatter.converter = time.gmtime  # type: ignore[attr-defined]
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    _LOGGER_CONFIGURED = True


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger, configuring the root handler on first use."""
    _configure_root_logger()
    logger = logging.getLogger(name)
    if not isinstance(logger, StructuredLogger):
        # Created before the logger class was installed; replace it.
        logging.Logger.manager.loggerDict.pop(name, None)
        logger = logging.getLogger(name)
    return logger  # type: ignore[return-value]


def setup_integrations_logger(name: str) -> StructuredLogger:
    """Logger used by the pipeline modules; honours ``LOG_LEVEL`` on each call."""
    logger = get_logger(name)
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "").upper())
    if isinstance(level, int):
        logger.setLevel(level)
    return logger


F = TypeVar("F", bound=Callable[..., Any])


def log_execution_time(logger: StructuredLogger) -> Callable[[F], F]:
    """Decorator logging wall time of the wrapped call."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            started = time.monotonic()
            try:
                return func(*args, **kwargs)
            finally:
                logger.info(
                    "Execution finished",
                    metrics={
                        "function": func.__name__,
                        "duration_seconds": round(time.monotonic() - started, 4),
                    },
                )

        return wrapper  # type: ignore[return-value]

    return decorator


def _count_rows(result: Any) -> Optional[int]:
    if isinstance(result, (list, tuple, set)):
        return len(result)
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    return None


def log_data_operation(
    logger: StructuredLogger,
    operation: str,
    source: str,
    target: str,
) -> Callable[[F], F]:
    """Decorator logging start, finish and failure of a data movement step."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            base = {
                "operation": operation,
                "source": source,
                "target": target,
                "function": func.__name__,
            }
            started = time.monotonic()
            logger.debug("Starting data operation", metrics=base)
            try:
                result = func(*args, **kwargs)
            except Exception:
                logger.error(
                    "Data operation failed",
                    metrics={**base, "duration_seconds": round(time.monotonic() - started, 4)},
                )
                raise
            logger.info(
                "Finished data operation",
                metrics={
                    **base,
                    "duration_seconds": round(time.monotonic() - started, 4),
                    "rows": _count_rows(result),
                },
            )
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
