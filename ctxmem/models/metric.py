"""Compression metric model."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class CompressionMetric(Base):
    """One row per compress operation.

    Write-once; rows are only removed by retention cleanup.
    """

    __tablename__ = "compression_metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    context_id: Mapped[str] = mapped_column(String(255), index=True)
    session_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    project_key: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)

    original_tokens: Mapped[int] = mapped_column(Integer, default=0)
    compressed_tokens: Mapped[int] = mapped_column(Integer, default=0)
    ratio: Mapped[float] = mapped_column(Float, default=0.0)
    elapsed_ms: Mapped[float] = mapped_column(Float, default=0.0)

    algorithm: Mapped[str] = mapped_column(String(50))
    strategy: Mapped[str] = mapped_column(String(20), index=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)

    def __repr__(self) -> str:
        return f"<CompressionMetric(context={self.context_id}, ratio={self.ratio:.2f})>"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "context_id": self.context_id,
            "session_id": self.session_id,
            "project_key": self.project_key,
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "ratio": self.ratio,
            "elapsed_ms": self.elapsed_ms,
            "algorithm": self.algorithm,
            "strategy": self.strategy,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
