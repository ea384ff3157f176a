"""ctxmem - compressed, tiered context memory for coding assistants."""

from .config import Config, load_config, resolve_config
from .context import (
    CompressionStrategy,
    CompressionSummary,
    ContextManager,
    ContextRecord,
    ContextTier,
    MigrationResult,
)
from .services.storage import StorageService
from .utils.errors import (
    CompressionError,
    ContextMemoryError,
    ImportValidationError,
    StorageError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "ContextManager",
    "StorageService",
    "Config",
    "load_config",
    "resolve_config",
    "CompressionStrategy",
    "CompressionSummary",
    "ContextRecord",
    "ContextTier",
    "MigrationResult",
    "ContextMemoryError",
    "CompressionError",
    "StorageError",
    "ImportValidationError",
    "ValidationError",
]
