"""Pydantic models for configuration."""

from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

_SIZE_UNITS = {
    "GB": 1024 * 1024 * 1024,
    "MB": 1024 * 1024,
    "KB": 1024,
}


def parse_size(value: str | int, default: int = 0) -> int:
    """Parse a size string such as ``"5MB"`` into bytes.

    Args:
        value: Size string (``B``/``KB``/``MB``/``GB`` suffix) or int
        default: Returned when the value cannot be parsed

    Returns:
        Size in bytes
    """
    if isinstance(value, int):
        return value
    size_str = value.strip().upper()
    for suffix, factor in _SIZE_UNITS.items():
        if size_str.endswith(suffix):
            try:
                return int(float(size_str[: -len(suffix)]) * factor)
            except ValueError:
                return default
    try:
        return int(size_str.removesuffix("B"))
    except ValueError:
        return default


class StorageConfig(BaseModel):
    """Embedded datastore configuration."""

    path: str | None = Field(
        default=None,
        description="Database file path (defaults to $CTXMEM_HOME/context/contexts.db)",
    )
    wal: bool = Field(default=True, description="Use write-ahead journal mode")
    echo: bool = Field(default=False, description="Echo SQL statements (debug)")
    busy_timeout_ms: int = Field(
        default=5000, ge=0, le=600000, description="SQLite busy timeout in milliseconds"
    )


class CompressionConfig(BaseModel):
    """Compression engine configuration."""

    default_strategy: Literal["conservative", "balanced", "aggressive"] = Field(
        default="balanced", description="Strategy used when the caller does not pick one"
    )
    slack_factor: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Allowed token growth before falling back to passthrough",
    )
    encoding: str = Field(default="cl100k_base", description="tiktoken encoding name")
    min_dedup_line_length: int = Field(
        default=32,
        ge=8,
        le=10000,
        description="Shortest line the balanced strategy replaces with a back-reference",
    )


class TierConfig(BaseModel):
    """Hot/warm/cold tier configuration."""

    hot_threshold_hours: float = Field(
        default=24.0, gt=0, description="Records accessed within this window are hot (L0)"
    )
    warm_threshold_days: float = Field(
        default=7.0, gt=0, description="Records accessed within this window are warm (L1)"
    )
    l0_max_entries: int = Field(default=100, ge=1, le=100000, description="L0 cache capacity")
    l0_max_size: str = Field(default="5MB", description="L0 cache byte budget")
    promotion_threshold: int = Field(
        default=10, ge=0, description="Access count above which records are promoted to L0"
    )

    @field_validator("l0_max_size")
    @classmethod
    def validate_size(cls, v: str) -> str:
        if parse_size(v, default=-1) <= 0:
            raise ValueError(f"Invalid size: {v}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "TierConfig":
        """Warm window must extend past the hot window."""
        if self.warm_threshold <= self.hot_threshold:
            raise ValueError("warm_threshold_days must be longer than hot_threshold_hours")
        return self

    @property
    def hot_threshold(self) -> timedelta:
        return timedelta(hours=self.hot_threshold_hours)

    @property
    def warm_threshold(self) -> timedelta:
        return timedelta(days=self.warm_threshold_days)

    @property
    def l0_max_bytes(self) -> int:
        return parse_size(self.l0_max_size)


class MetricsConfig(BaseModel):
    """Compression metrics and cost accounting configuration."""

    enabled: bool = Field(default=True, description="Record one metric row per compress")
    cost_per_1k_tokens: float = Field(
        default=0.003, ge=0.0, description="Price used to estimate cost saved"
    )
    session_hours: float | None = Field(
        default=None,
        gt=0,
        description="Session window length; None means since process start",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field(default="json", description="Log format")
    file: str | None = Field(default=None, description="Log file path (None disables file output)")
    max_size: str = Field(default="10MB", description="Max log file size")
    backup_count: int = Field(default=5, ge=0, description="Number of backup files")
    console: bool = Field(default=True, description="Output to console")


class Config(BaseModel):
    """Root configuration model."""

    storage: StorageConfig = Field(default_factory=StorageConfig, description="Storage config")
    compression: CompressionConfig = Field(
        default_factory=CompressionConfig, description="Compression config"
    )
    tiers: TierConfig = Field(default_factory=TierConfig, description="Tier loader config")
    metrics: MetricsConfig = Field(default_factory=MetricsConfig, description="Metrics config")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging config")
