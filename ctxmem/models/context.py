"""Compressed context model."""

import json
from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ContextEntry(Base):
    """One compressed unit of conversational context.

    The raw text is never stored, only the compressed payload and its
    accounting. Tier membership is derived from ``last_accessed_at`` and
    ``access_count`` at read time and has no column of its own.
    """

    __tablename__ = "contexts"
    __table_args__ = (
        Index("idx_contexts_project_last_accessed", "project_key", "last_accessed_at"),
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    project_key: Mapped[str] = mapped_column(String(255), index=True)

    compressed_payload: Mapped[str] = mapped_column(Text, default="")
    algorithm: Mapped[str] = mapped_column(String(50))
    strategy: Mapped[str] = mapped_column(String(20))

    original_tokens: Mapped[int] = mapped_column(Integer, default=0)
    compressed_tokens: Mapped[int] = mapped_column(Integer, default=0)
    compression_ratio: Mapped[float] = mapped_column(Float, default=0.0)

    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[str] = mapped_column("metadata", Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0, index=True)

    def __repr__(self) -> str:
        return (
            f"<ContextEntry(id={self.id}, project={self.project_key}, "
            f"ratio={self.compression_ratio:.2f}, accesses={self.access_count})>"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "project_key": self.project_key,
            "compressed_payload": self.compressed_payload,
            "algorithm": self.algorithm,
            "strategy": self.strategy,
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "compression_ratio": self.compression_ratio,
            "metadata": json.loads(self.metadata_json or "{}"),
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "access_count": self.access_count,
        }
