"""
Configuration settings management for SiteVault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.sitevault/config.yaml by default, with the
path overridable via the SITEVAULT_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".sitevault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
VALID_DUMP_STRATEGIES = {"auto", "in_process", "external"}
VALID_ARCHIVE_FORMATS = {"auto", "tar.gz", "zip"}
VALID_SCHEDULES = {"hourly", "daily", "weekly"}


@dataclass
class DatabaseConfig:
    """Live database and dump settings."""

    path: str = str(DEFAULT_CONFIG_DIR / "data" / "app.db")
    dump_strategy: str = "auto"
    compress: bool = True
    compression_level: int = 9
    chunk_size: int = 1024 * 1024
    # Error substrings that a replay may skip without counting a failure
    ignorable_errors: list[str] = field(
        default_factory=lambda: ["already exists", "duplicate", "UNIQUE constraint failed"]
    )


@dataclass
class StorageConfig:
    """Application file tree settings."""

    source_dir: str = str(DEFAULT_CONFIG_DIR / "storage")
    archive_format: str = "auto"


@dataclass
class ConfigBundleConfig:
    """Configuration bundle settings."""

    project_root: str = "."
    files: list[str] = field(
        default_factory=lambda: [".env", "pyproject.toml", "poetry.lock"]
    )


@dataclass
class AuditConfig:
    """Activity log settings."""

    enabled: bool = True
    table: str = "activity_logs"
    key_column: str = "id"
    timestamp_column: str = "created_at"


@dataclass
class ServerConfig:
    """Local API server settings."""

    host: str = "127.0.0.1"
    port: int = 8085
    api_token: str = ""
    request_timeout: int = 30
    admin_timeout: int = 3600


@dataclass
class ScheduleConfig:
    """Scheduled backup settings."""

    interval: str = "daily"
    backup_type: str = "all"


@dataclass
class Settings:
    """
    Complete SiteVault configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with SITEVAULT_.

    Attributes:
        backup_dir: Flat directory holding every backup artifact.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        database: Live database location and dump options.
        storage: File tree to archive and archive format.
        config_bundle: Project root and allow-listed config files.
        audit: Activity log table preserved across restores.
        server: Local API server binding, token and timeouts.
        schedule: Scheduled backup interval.
    """

    backup_dir: str = str(DEFAULT_CONFIG_DIR / "backups")
    log_level: str = "INFO"

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    config_bundle: ConfigBundleConfig = field(default_factory=ConfigBundleConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or a configured path is unusable."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from SITEVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.sitevault/config.yaml).
    """
    env_path = os.environ.get("SITEVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses SITEVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("sitevault", {}) or {}

    if "backup_dir" in general:
        settings.backup_dir = str(general["backup_dir"])
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()

    database = data.get("database", {}) or {}
    if "path" in database:
        settings.database.path = str(database["path"])
    if "dump_strategy" in database:
        settings.database.dump_strategy = str(database["dump_strategy"])
    if "compress" in database:
        settings.database.compress = bool(database["compress"])
    if "compression_level" in database:
        settings.database.compression_level = int(database["compression_level"])
    if "chunk_size" in database:
        settings.database.chunk_size = int(database["chunk_size"])
    if "ignorable_errors" in database:
        settings.database.ignorable_errors = [str(p) for p in database["ignorable_errors"] or []]

    storage = data.get("storage", {}) or {}
    if "source_dir" in storage:
        settings.storage.source_dir = str(storage["source_dir"])
    if "archive_format" in storage:
        settings.storage.archive_format = str(storage["archive_format"])

    bundle = data.get("config_bundle", {}) or {}
    if "project_root" in bundle:
        settings.config_bundle.project_root = str(bundle["project_root"])
    if "files" in bundle:
        settings.config_bundle.files = [str(f) for f in bundle["files"] or []]

    audit = data.get("audit", {}) or {}
    if "enabled" in audit:
        settings.audit.enabled = bool(audit["enabled"])
    if "table" in audit:
        settings.audit.table = str(audit["table"])
    if "key_column" in audit:
        settings.audit.key_column = str(audit["key_column"])
    if "timestamp_column" in audit:
        settings.audit.timestamp_column = str(audit["timestamp_column"])

    server = data.get("server", {}) or {}
    if "host" in server:
        settings.server.host = str(server["host"])
    if "port" in server:
        settings.server.port = int(server["port"])
    if "api_token" in server:
        settings.server.api_token = str(server["api_token"] or "")
    if "request_timeout" in server:
        settings.server.request_timeout = int(server["request_timeout"])
    if "admin_timeout" in server:
        settings.server.admin_timeout = int(server["admin_timeout"])

    schedule = data.get("schedule", {}) or {}
    if "interval" in schedule:
        settings.schedule.interval = str(schedule["interval"])
    if "backup_type" in schedule:
        settings.schedule.backup_type = str(schedule["backup_type"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "SITEVAULT_BACKUP_DIR": ("backup_dir", str),
        "SITEVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "SITEVAULT_DATABASE_PATH": ("database.path", str),
        "SITEVAULT_DUMP_STRATEGY": ("database.dump_strategy", str),
        "SITEVAULT_STORAGE_DIR": ("storage.source_dir", str),
        "SITEVAULT_ARCHIVE_FORMAT": ("storage.archive_format", str),
        "SITEVAULT_PROJECT_ROOT": ("config_bundle.project_root", str),
        "SITEVAULT_API_TOKEN": ("server.api_token", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if settings.log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )

    if settings.database.dump_strategy not in VALID_DUMP_STRATEGIES:
        raise ConfigurationError(
            f"Invalid dump_strategy: {settings.database.dump_strategy}. "
            f"Must be one of: {', '.join(sorted(VALID_DUMP_STRATEGIES))}"
        )

    if not 1 <= settings.database.compression_level <= 9:
        raise ConfigurationError("compression_level must be between 1 and 9")

    if settings.database.chunk_size < 1:
        raise ConfigurationError("chunk_size must be positive")

    if settings.storage.archive_format not in VALID_ARCHIVE_FORMATS:
        raise ConfigurationError(
            f"Invalid archive_format: {settings.storage.archive_format}. "
            f"Must be one of: {', '.join(sorted(VALID_ARCHIVE_FORMATS))}"
        )

    if settings.server.request_timeout < 1 or settings.server.admin_timeout < 1:
        raise ConfigurationError("Server timeouts must be positive")

    if settings.schedule.interval not in VALID_SCHEDULES:
        raise ConfigurationError(
            f"Invalid schedule: {settings.schedule.interval}. "
            f"Must be one of: {', '.join(sorted(VALID_SCHEDULES))}"
        )

    if settings.schedule.backup_type not in {"all", "database", "storage", "config"}:
        raise ConfigurationError(f"Invalid schedule backup_type: {settings.schedule.backup_type}")

    backup_dir = Path(settings.backup_dir).expanduser().resolve()
    source_dir = Path(settings.storage.source_dir).expanduser().resolve()
    if backup_dir.is_relative_to(source_dir):
        raise ConfigurationError(
            f"backup_dir ({backup_dir}) must not be inside storage.source_dir ({source_dir}); "
            "storage archives would include earlier backups"
        )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "sitevault": {
            "backup_dir": settings.backup_dir,
            "log_level": settings.log_level,
        },
        "database": {
            "path": settings.database.path,
            "dump_strategy": settings.database.dump_strategy,
            "compress": settings.database.compress,
            "compression_level": settings.database.compression_level,
            "chunk_size": settings.database.chunk_size,
            "ignorable_errors": list(settings.database.ignorable_errors),
        },
        "storage": {
            "source_dir": settings.storage.source_dir,
            "archive_format": settings.storage.archive_format,
        },
        "config_bundle": {
            "project_root": settings.config_bundle.project_root,
            "files": list(settings.config_bundle.files),
        },
        "audit": {
            "enabled": settings.audit.enabled,
            "table": settings.audit.table,
            "key_column": settings.audit.key_column,
            "timestamp_column": settings.audit.timestamp_column,
        },
        "server": {
            "host": settings.server.host,
            "port": settings.server.port,
            "api_token": settings.server.api_token,
            "request_timeout": settings.server.request_timeout,
            "admin_timeout": settings.server.admin_timeout,
        },
        "schedule": {
            "interval": settings.schedule.interval,
            "backup_type": settings.schedule.backup_type,
        },
    }
