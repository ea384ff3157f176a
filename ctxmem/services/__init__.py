"""Services for context memory."""

from .context_store import ContextStore
from .decision_log import DecisionLog
from .metrics import CompressionMetricsService, OperationTimer
from .storage import MEMORY_URL, StorageService, init_storage

__all__ = [
    "StorageService",
    "init_storage",
    "MEMORY_URL",
    "ContextStore",
    "CompressionMetricsService",
    "OperationTimer",
    "DecisionLog",
]
