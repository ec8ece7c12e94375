"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/probehub/probehub.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "probehub" / "probehub.db")


# Default database path (XDG-compliant user data directory)
DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite store and its retention sweep."""

    path: str = DEFAULT_DB_PATH
    retention_days: int = 7
    sweep_interval_seconds: int = 3600

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")
        if self.sweep_interval_seconds < 1:
            raise ConfigError("Database sweep_interval_seconds must be at least 1")


@dataclass(frozen=True)
class StatusConfig:
    """Thresholds used when deriving client status."""

    online_threshold_seconds: int = 60  # clients silent for this long are offline
    success_rate_window_hours: int = 24

    def __post_init__(self) -> None:
        if self.online_threshold_seconds < 1:
            raise ConfigError(
                f"Status online_threshold_seconds must be at least 1 (got {self.online_threshold_seconds})"
            )
        if self.success_rate_window_hours < 1:
            raise ConfigError(
                f"Status success_rate_window_hours must be at least 1 (got {self.success_rate_window_hours})"
            )


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for the HTTP API server."""

    enabled: bool = True
    port: int = 8080
    request_timeout_seconds: int = 30  # read queries are cancelled after this
    anomaly_threshold_ms: float = 1000.0

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")
        if self.request_timeout_seconds < 1:
            raise ConfigError(f"API request_timeout_seconds must be at least 1, got {self.request_timeout_seconds}")
        if self.anomaly_threshold_ms < 0:
            raise ConfigError(f"API anomaly_threshold_ms must be non-negative, got {self.anomaly_threshold_ms}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    status: StatusConfig = field(default_factory=StatusConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(
        path=str(data.get("path", DEFAULT_DB_PATH)),
        retention_days=int(data.get("retention_days", 7)),
        sweep_interval_seconds=int(data.get("sweep_interval_seconds", 3600)),
    )


def _parse_status_config(data: dict | None) -> StatusConfig:
    """Parse status configuration section."""
    if data is None:
        return StatusConfig()
    if not isinstance(data, dict):
        raise ConfigError("'status' section must be a dictionary")

    return StatusConfig(
        online_threshold_seconds=int(data.get("online_threshold_seconds", 60)),
        success_rate_window_hours=int(data.get("success_rate_window_hours", 24)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
        request_timeout_seconds=int(data.get("request_timeout_seconds", 30)),
        anomaly_threshold_ms=float(data.get("anomaly_threshold_ms", 1000.0)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - PROBEHUB_DB_PATH: Override database.path
    - PROBEHUB_DB_RETENTION_DAYS: Override database.retention_days
    - PROBEHUB_DB_SWEEP_INTERVAL: Override database.sweep_interval_seconds
    - PROBEHUB_ONLINE_THRESHOLD: Override status.online_threshold_seconds
    - PROBEHUB_API_PORT: Override api.port
    - PROBEHUB_API_ENABLED: Override api.enabled (true/false)
    """
    for section in ("database", "status", "api"):
        if config_data.get(section) is None:
            config_data[section] = {}
        elif not isinstance(config_data[section], dict):
            raise ConfigError(f"'{section}' section must be a dictionary")

    try:
        db_path = os.environ.get("PROBEHUB_DB_PATH")
        if db_path is not None:
            config_data["database"]["path"] = db_path

        db_retention = os.environ.get("PROBEHUB_DB_RETENTION_DAYS")
        if db_retention is not None:
            config_data["database"]["retention_days"] = int(db_retention)

        sweep_interval = os.environ.get("PROBEHUB_DB_SWEEP_INTERVAL")
        if sweep_interval is not None:
            config_data["database"]["sweep_interval_seconds"] = int(sweep_interval)

        online_threshold = os.environ.get("PROBEHUB_ONLINE_THRESHOLD")
        if online_threshold is not None:
            config_data["status"]["online_threshold_seconds"] = int(online_threshold)

        api_port = os.environ.get("PROBEHUB_API_PORT")
        if api_port is not None:
            config_data["api"]["port"] = int(api_port)
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment override: {e}")

    api_enabled = os.environ.get("PROBEHUB_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Every section is optional; an empty file yields the defaults.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    try:
        return Config(
            database=_parse_database_config(data.get("database")),
            status=_parse_status_config(data.get("status")),
            api=_parse_api_config(data.get("api")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
