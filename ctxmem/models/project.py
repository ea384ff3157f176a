"""Project aggregate model."""

import json
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ProjectEntry(Base):
    """Bookkeeping per project key.

    ``context_count`` and ``total_tokens`` are recomputed from the contexts
    table inside the same transaction as every write that touches the project.
    """

    __tablename__ = "projects"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    path: Mapped[str] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context_count: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[str] = mapped_column("metadata", Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)

    def __repr__(self) -> str:
        return f"<ProjectEntry(key={self.key}, contexts={self.context_count})>"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "path": self.path,
            "name": self.name,
            "context_count": self.context_count,
            "total_tokens": self.total_tokens,
            "metadata": json.loads(self.metadata_json or "{}"),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
