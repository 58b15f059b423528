"""
Configuration management and loading.

Handles storage locations, log directories and alert settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ai_usage_guard.core.alerts import AlertSettings, DailyAlertDefinition

DEFAULT_DATA_DIR = "~/.ai-usage-guard"
DEFAULT_LOG_DIRECTORIES = ("~/.claude/projects",)


@dataclass(frozen=True)
class StorageConfig:
    """Database file locations."""
    token_db: str = f"{DEFAULT_DATA_DIR}/tokens.db"
    usage_db: str = f"{DEFAULT_DATA_DIR}/usage.db"
    state_db: str = f"{DEFAULT_DATA_DIR}/state.db"

    def __post_init__(self):
        """Validate paths are non-empty."""
        for name in ("token_db", "usage_db", "state_db"):
            if not getattr(self, name).strip():
                raise ValueError(f"storage.{name} cannot be empty")


@dataclass(frozen=True)
class LogsConfig:
    """Directories scanned for JSONL usage logs."""
    directories: Tuple[str, ...] = DEFAULT_LOG_DIRECTORIES


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)
    alerts: AlertSettings = field(default_factory=AlertSettings)


def default_config() -> AppConfig:
    """Configuration used when no file is given."""
    return AppConfig()


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional; missing values fall back to defaults.
    Unknown keys and wrong types are rejected so a typo never silently
    disables an alert.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return default_config()

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _reject_unknown(raw_config, {'storage', 'logs', 'alerts'}, "configuration")

    return AppConfig(
        storage=_parse_storage(_section(raw_config, 'storage', "storage")),
        logs=_parse_logs(_section(raw_config, 'logs', "logs")),
        alerts=_parse_alerts(_section(raw_config, 'alerts', "alerts")),
    )


def _parse_storage(data: Dict[str, Any]) -> StorageConfig:
    _reject_unknown(data, {'token_db', 'usage_db', 'state_db'}, "storage")
    defaults = StorageConfig()
    values = {}
    for key in ('token_db', 'usage_db', 'state_db'):
        value = data.get(key, getattr(defaults, key))
        if not isinstance(value, str):
            raise ValueError(f"'storage.{key}' must be a string")
        values[key] = value
    return StorageConfig(**values)


def _parse_logs(data: Dict[str, Any]) -> LogsConfig:
    _reject_unknown(data, {'directories'}, "logs")
    directories = data.get('directories', list(DEFAULT_LOG_DIRECTORIES))
    if isinstance(directories, str):
        directories = [directories]
    if not isinstance(directories, list) or not all(isinstance(d, str) for d in directories):
        raise ValueError("'logs.directories' must be a list of strings")
    return LogsConfig(directories=tuple(directories))


def _parse_alerts(data: Dict[str, Any]) -> AlertSettings:
    """Parse and validate alert settings.

    Raises:
        ValueError: If configuration is invalid
    """
    _reject_unknown(data, {'weekly', 'hourly', 'daily'}, "alerts")
    defaults = AlertSettings()

    weekly = _section(data, 'weekly', "alerts.weekly")
    hourly = _section(data, 'hourly', "alerts.hourly")
    daily = _section(data, 'daily', "alerts.daily")
    _reject_unknown(weekly, {'enabled', 'threshold'}, "alerts.weekly")
    _reject_unknown(hourly, {'enabled', 'threshold'}, "alerts.hourly")
    _reject_unknown(daily, {'enabled', 'threshold', 'definition'}, "alerts.daily")

    definition_str = daily.get('definition', defaults.daily_definition.value)
    if not isinstance(definition_str, str):
        raise ValueError("'alerts.daily.definition' must be a string")
    try:
        definition = DailyAlertDefinition(definition_str.lower())
    except ValueError:
        valid = [d.value for d in DailyAlertDefinition]
        raise ValueError(f"'alerts.daily.definition' must be one of: {valid}")

    return AlertSettings(
        weekly_enabled=_bool(weekly, 'enabled', defaults.weekly_enabled, "alerts.weekly"),
        weekly_threshold=_threshold(weekly, defaults.weekly_threshold, "alerts.weekly"),
        hourly_enabled=_bool(hourly, 'enabled', defaults.hourly_enabled, "alerts.hourly"),
        hourly_threshold=_threshold(hourly, defaults.hourly_threshold, "alerts.hourly"),
        daily_enabled=_bool(daily, 'enabled', defaults.daily_enabled, "alerts.daily"),
        daily_threshold=_threshold(daily, defaults.daily_threshold, "alerts.daily"),
        daily_definition=definition,
    )


def _section(data: Dict[str, Any], key: str, path: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _bool(data: Dict[str, Any], key: str, default: bool, path: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _threshold(data: Dict[str, Any], default: int, path: str) -> int:
    value = data.get('threshold', default)
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 100:
        raise ValueError(f"'threshold' in {path} must be an integer between 1 and 100")
    return value
