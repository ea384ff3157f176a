"""Configuration management for ctxmem.

- YAML-based configuration
- Type validation via Pydantic
- Per-user application directory resolution
"""

from .loader import (
    ConfigLoadError,
    app_home,
    default_config_path,
    default_database_path,
    load_config,
    load_config_from_string,
    resolve_config,
)
from .models import (
    CompressionConfig,
    Config,
    LoggingConfig,
    MetricsConfig,
    StorageConfig,
    TierConfig,
)

__all__ = [
    "Config",
    "CompressionConfig",
    "LoggingConfig",
    "MetricsConfig",
    "StorageConfig",
    "TierConfig",
    "ConfigLoadError",
    "app_home",
    "default_config_path",
    "default_database_path",
    "load_config",
    "load_config_from_string",
    "resolve_config",
]
