"""
Configuration management and loading.

Handles database, ingestion, report and logging settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Set

import yaml

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the stores live and how long to wait on them."""
    path: str = "usage_analytics.db"
    timeout_seconds: float = 5.0

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class IngestionConfig:
    """Batching and parallelism for CSV imports."""
    batch_size: int = 100
    max_workers: int = 1

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")


@dataclass(frozen=True)
class ReportsConfig:
    top_users_limit: int = 10

    def __post_init__(self):
        if self.top_users_limit <= 0:
            raise ValueError("top_users_limit must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(LOG_LEVELS)}")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    reports: ReportsConfig = field(default_factory=ReportsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Every section and key is optional, but unknown keys and bad values are
    rejected so a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'ingestion', 'reports', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _section(raw_config, 'database', {'path', 'timeout_seconds'})
    ingestion = _section(raw_config, 'ingestion', {'batch_size', 'max_workers'})
    reports = _section(raw_config, 'reports', {'top_users_limit'})
    logging_data = _section(raw_config, 'logging', {'level', 'json'})

    kwargs: Dict[str, Any] = {}
    if 'path' in database:
        kwargs['path'] = _require_str(database['path'], 'database.path')
    if 'timeout_seconds' in database:
        kwargs['timeout_seconds'] = _require_number(database['timeout_seconds'], 'database.timeout_seconds')
    database_config = DatabaseConfig(**kwargs)

    ingestion_config = IngestionConfig(**{
        key: _require_int(value, f"ingestion.{key}") for key, value in ingestion.items()
    })
    reports_config = ReportsConfig(**{
        key: _require_int(value, f"reports.{key}") for key, value in reports.items()
    })

    kwargs = {}
    if 'level' in logging_data:
        kwargs['level'] = _require_str(logging_data['level'], 'logging.level').upper()
    if 'json' in logging_data:
        if not isinstance(logging_data['json'], bool):
            raise ValueError("'logging.json' must be a boolean")
        kwargs['json'] = logging_data['json']
    logging_config = LoggingConfig(**kwargs)

    return Settings(
        database=database_config,
        ingestion=ingestion_config,
        reports=reports_config,
        logging=logging_config,
    )


def _section(raw_config: Dict, name: str, allowed_keys: Set[str]) -> Dict:
    """Fetch an optional section and reject unknown keys in it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _require_str(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    return value


def _require_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _require_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value
