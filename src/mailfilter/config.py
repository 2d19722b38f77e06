"""Configuration loading.

The YAML file is validated against the Pydantic schema in config_schema.
The path comes from MAILFILTER_CONFIG_PATH or defaults to
config/config.yaml. POLL_INTERVAL_MS, when set, overrides
watcher.poll_interval_ms.

Usage:
    from mailfilter.config import get_config

    config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailfilter.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailfilter.core.errors import ConfigLoadError, ConfigValidationError
from mailfilter.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
POLL_INTERVAL_ENV = "POLL_INTERVAL_MS"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None


def _get_config_path() -> Path:
    return Path(os.environ.get("MAILFILTER_CONFIG_PATH") or DEFAULT_CONFIG_PATH)


def _format_validation_errors(error: ValidationError) -> str:
    """Render pydantic errors as bullet lines naming the dotted field path."""
    lines = []
    for err in error.errors():
        where = ".".join(map(str, err["loc"]))
        if err["type"] == "missing":
            lines.append(f"  - Missing required field '{where}'")
        else:
            lines.append(f"  - {where}: {err['msg']}")
    return "\n".join(lines)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Read ``path`` as a YAML mapping; an empty file is an empty mapping.

    Raises:
        ConfigLoadError: If the file is missing, unparsable, or not a mapping
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigLoadError(
            f"Configuration file not found: {path} "
            "(start from config/config.yaml.example)"
        ) from None
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Could not parse YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"{path} must hold a YAML mapping at the top level, got {type(data).__name__}"
        )
    return data


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    interval = os.environ.get(POLL_INTERVAL_ENV)
    if interval:
        watcher = dict(data.get("watcher") or {})
        watcher["poll_interval_ms"] = interval
        data = {**data, "watcher": watcher}
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate parsed data.

    Raises:
        ConfigValidationError: If validation fails or the schema version is too new
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. Upgrade mailfilter."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from disk (uncached).

    Raises:
        ConfigLoadError: If the file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or _get_config_path()
    data = _apply_env_overrides(_load_yaml(config_path))
    config = _validate_config(data, config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        poll_interval_ms=config.watcher.poll_interval_ms,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _current_config
    with _config_lock:
        if _current_config is None:
            _current_config = load_config()
        return _current_config


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without touching the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or _get_config_path()
    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - poll interval: {config.watcher.poll_interval_ms} ms\n"
        f"  - labels: {', '.join(config.labels.all())}\n"
        f"  - classifier model: {config.classifier.model}\n"
        f"  - state database: {config.state.db_path}",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config
    with _config_lock:
        _current_config = None
