"""Structured logging configuration.

Log Level Guidelines:
   - ERROR: storage failures; the subsystem is degraded
   - WARNING: fallbacks (passthrough compression, swallowed metric writes)
   - INFO: compress/import/cleanup/migration results
   - DEBUG: cache hits/misses, routine queries

Always pass contextual data through ``extra`` rather than string interpolation:

    logger.info(
        "Context compressed",
        extra={"context_id": context_id, "ratio": 0.42},
    )

``project_key`` and ``session_id`` bound with :func:`bind_log_context` are
added to every event automatically.
"""

import functools
import inspect
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import structlog
from pythonjsonlogger import jsonlogger

from ..config.models import LoggingConfig, parse_size

F = TypeVar("F", bound=Callable[..., Any])

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
PACKAGE_LOGGER = "ctxmem"


class ContextInfoProcessor:
    """Structlog processor that adds module and bound context information."""

    def __call__(self, logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("project_key", None)
        event_dict.setdefault("session_id", None)
        event_dict["module"] = event_dict.get("logger", "unknown")
        return event_dict


def _base_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S.%f", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        ContextInfoProcessor(),
    ]


def configure_library_logging() -> None:
    """Route events through stdlib logging and stay silent until configured.

    The package logger gets a ``NullHandler``; events reach output only once
    the host application (or :func:`setup_logging`) attaches handlers.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not any(isinstance(h, logging.NullHandler) for h in package_logger.handlers):
        package_logger.addHandler(logging.NullHandler())
    structlog.configure(
        processors=[*_base_processors(), structlog.dev.ConsoleRenderer(colors=False)],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(config: LoggingConfig) -> None:
    """Setup structured logging with JSON or text format.

    Args:
        config: Logging configuration
    """
    handlers: list[logging.Handler] = []

    if config.format == "json":
        formatter: logging.Formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "module"},
        )
    else:
        formatter = logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=parse_size(config.max_size, default=10 * 1024 * 1024),
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if config.console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        handlers=handlers or [logging.NullHandler()],
        force=True,
    )

    processors = _base_processors()
    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
        **kwargs: Additional context to bind to the logger

    Returns:
        Structured logger instance
    """
    logger = structlog.get_logger(name)
    if kwargs:
        logger = logger.bind(**kwargs)
    return logger


def bind_log_context(**kwargs: Any) -> None:
    """Bind values (e.g. project_key, session_id) to all subsequent log events."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_log_context() -> None:
    """Drop all values bound with :func:`bind_log_context`."""
    structlog.contextvars.clear_contextvars()


def log_execution(func: F) -> F:
    """Log entry, exit and duration of a sync or async callable.

    Slow calls (> 100ms) are logged at INFO, everything else at DEBUG.
    Exceptions are logged at ERROR and re-raised.
    """
    logger = get_logger(func.__module__)
    func_name = func.__qualname__

    def _exit(started: float) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        log_method = logger.info if elapsed_ms > 100 else logger.debug
        log_method(
            f"Exiting {func_name}",
            extra={"function": func_name, "duration_ms": round(elapsed_ms, 2)},
        )

    def _failed(started: float, exc: Exception) -> None:
        logger.error(
            f"Exception in {func_name}",
            extra={
                "function": func_name,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )

    @functools.wraps(func)
    async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
        logger.debug(f"Entering {func_name}", extra={"args_count": len(args)})
        started = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            _failed(started, e)
            raise
        _exit(started)
        return result

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        logger.debug(f"Entering {func_name}", extra={"args_count": len(args)})
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _failed(started, e)
            raise
        _exit(started)
        return result

    if inspect.iscoroutinefunction(func):
        return async_wrapper  # type: ignore
    return sync_wrapper  # type: ignore


if not structlog.is_configured():
    configure_library_logging()
