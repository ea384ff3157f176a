"""Context memory data models.

- ContextRecord: one compressed unit of context plus accounting
- ProjectRecord: per-project aggregate
- DecisionRecord: decision audit entry
- CompressionSummary: what ``compress`` reports back to callers
- ExportDocument / ImportSummary: backup and transfer format
- MigrationResult: outcome of a tier migration sweep
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

EXPORT_SCHEMA_VERSION = 1


def to_local_naive(value: datetime) -> datetime:
    """Convert an offset-aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class CompressionStrategy(str, Enum):
    """Aggressiveness levels exposed to callers."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class ContextTier(str, Enum):
    """Access tiers. Computed from timestamps, never stored."""
    HOT = "L0"
    WARM = "L1"
    COLD = "L2"


class ContextRecord(BaseModel):
    """A persisted, compressed context."""
    id: str = Field(min_length=1, description="Unique identifier across the whole store")
    project_key: str = Field(min_length=1, description="Logical project/workspace scope")
    compressed_payload: str = Field(default="", description="Compression artifact")
    algorithm: str = Field(description="Algorithm that produced the payload")
    strategy: str = Field(description="Strategy the caller selected")
    original_tokens: int = Field(default=0, ge=0, description="Tokens before compression")
    compressed_tokens: int = Field(default=0, ge=0, description="Tokens after compression")
    compression_ratio: float = Field(default=0.0, description="1 - compressed/original")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Caller annotations")
    created_at: datetime = Field(default_factory=datetime.now, description="Write time")
    last_accessed_at: datetime = Field(default_factory=datetime.now, description="Last read time")
    access_count: int = Field(default=0, ge=0, description="Number of reads")

    model_config = {
        "extra": "ignore",
    }

    @field_validator("created_at", "last_accessed_at", mode="after")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_local_naive(v)

    @model_validator(mode="after")
    def validate_access_time(self) -> "ContextRecord":
        if self.last_accessed_at < self.created_at:
            raise ValueError("last_accessed_at must not be earlier than created_at")
        return self

    @property
    def tokens_saved(self) -> int:
        return self.original_tokens - self.compressed_tokens


class ProjectRecord(BaseModel):
    """Aggregate bookkeeping for one project key."""
    key: str = Field(min_length=1, description="Project key")
    path: str = Field(default="", description="Project path")
    name: str | None = Field(default=None, description="Display name")
    context_count: int = Field(default=0, ge=0, description="Number of contexts")
    total_tokens: int = Field(default=0, ge=0, description="Original tokens represented")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Extension metadata")
    created_at: datetime = Field(default_factory=datetime.now, description="First seen")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last updated")

    model_config = {
        "extra": "ignore",
    }

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_local_naive(v)


class DecisionRecord(BaseModel):
    """Decision audit entry."""
    id: str
    session_id: str
    task_id: str | None = None
    decision: str
    reasoning: str = ""
    context: str = ""
    outcome: str | None = None
    timestamp: datetime


class CompressionSummary(BaseModel):
    """Result of ``ContextManager.compress``."""
    id: str
    project_key: str
    algorithm: str
    strategy: str
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    tokens_saved: int
    elapsed_ms: float = 0.0
    passthrough: bool = False


class MigrationResult(BaseModel):
    """Outcome of a tier migration sweep."""
    promoted: int = 0
    demoted: int = 0


class ExportDocument(BaseModel):
    """Versioned backup document.

    Single-project exports carry ``project``; whole-store exports carry
    ``projects``. Unknown fields are ignored so newer exports still import.
    """
    schema_version: int = Field(ge=1)
    exported_at: datetime = Field(default_factory=datetime.now)
    project: ProjectRecord | None = None
    projects: list[ProjectRecord] = Field(default_factory=list)
    contexts: list[dict[str, Any]] = Field(default_factory=list)

    model_config = {
        "extra": "ignore",
    }

    def all_projects(self) -> list[ProjectRecord]:
        projects = list(self.projects)
        if self.project is not None:
            projects.append(self.project)
        return projects


class ImportSummary(BaseModel):
    """Result of an import call."""
    schema_version: int
    projects: list[str] = Field(default_factory=list)
    imported: int = 0
    replaced: int = 0
