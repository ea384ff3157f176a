"""Utility modules for ctxmem."""

from .logger import (
    bind_log_context,
    clear_log_context,
    configure_library_logging,
    get_logger,
    log_execution,
    setup_logging,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "configure_library_logging",
    "bind_log_context",
    "clear_log_context",
    "log_execution",
]
