"""
Configuration management for SiteVault.

Loads, validates, and saves settings from YAML with environment overrides.
"""

from sitevault.config.settings import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFIG_FILE",
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
]
