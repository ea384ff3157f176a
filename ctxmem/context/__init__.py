"""Context memory: tiered access to compressed conversational context."""

from .models import (
    EXPORT_SCHEMA_VERSION,
    CompressionStrategy,
    CompressionSummary,
    ContextRecord,
    ContextTier,
    DecisionRecord,
    ExportDocument,
    ImportSummary,
    MigrationResult,
    ProjectRecord,
)
from .tier_loader import HierarchicalTierLoader, L0Cache
from .manager import ContextManager

__all__ = [
    "ContextManager",
    "HierarchicalTierLoader",
    "L0Cache",
    "CompressionStrategy",
    "CompressionSummary",
    "ContextRecord",
    "ContextTier",
    "DecisionRecord",
    "ExportDocument",
    "ImportSummary",
    "MigrationResult",
    "ProjectRecord",
    "EXPORT_SCHEMA_VERSION",
]
