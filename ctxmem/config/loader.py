"""YAML configuration loader with validation."""

import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..utils.errors import ConfigError
from .models import Config

HOME_ENV_VAR = "CTXMEM_HOME"


class ConfigLoadError(ConfigError):
    """Raised when configuration loading fails."""
    pass


def app_home() -> Path:
    """Per-user application directory (``$CTXMEM_HOME`` or ``~/.ctxmem``)."""
    override = os.getenv(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".ctxmem"


def default_config_path() -> Path:
    return app_home() / "config.yaml"


def default_database_path() -> Path:
    return app_home() / "context" / "contexts.db"


def _validate(data: object, source: str) -> Config:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigLoadError("Configuration must be a YAML object", path=source)

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise ConfigLoadError(
            "Configuration validation failed:\n" + "\n".join(errors), path=source
        ) from e


def load_config(config_path: Path) -> Config:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated Config instance

    Raises:
        ConfigLoadError: If the file is missing, unreadable or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigLoadError(f"Configuration file not found: {config_path}", path=str(config_path))

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML format: {e}", path=str(config_path)) from e
    except OSError as e:
        raise ConfigLoadError(f"Failed to read configuration file: {e}", path=str(config_path)) from e

    return _validate(data, str(config_path))


def load_config_from_string(yaml_content: str) -> Config:
    """Load configuration from YAML string.

    Args:
        yaml_content: YAML configuration as string

    Returns:
        Validated Config instance
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML format: {e}") from e

    return _validate(data, "<string>")


def resolve_config(config_path: Path | None = None) -> Config:
    """Load an explicit config file, the default file if present, or defaults.

    An explicitly given path must exist; the default path is optional.
    """
    if config_path is not None:
        return load_config(config_path)

    default_path = default_config_path()
    if default_path.exists():
        return load_config(default_path)
    return Config()
