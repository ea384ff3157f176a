"""SQLAlchemy models for ctxmem."""

from .base import Base
from .context import ContextEntry
from .decision import DecisionEntry
from .metric import CompressionMetric
from .project import ProjectEntry

__all__ = ["Base", "ContextEntry", "ProjectEntry", "CompressionMetric", "DecisionEntry"]
