"""Configuration system for hana-disk-backup.

This module provides TOML-based configuration loading, validation,
and schema definitions for the backup command.
"""

from .loader import ConfigError, find_config_file, generate_example_config, load_config
from .schema import (
    Config,
    FreezeConfig,
    GceConfig,
    GlobalConfig,
    HanaConfig,
    MonitoringConfig,
    PollingConfig,
    PollingSettings,
)

__all__ = [
    "GlobalConfig",
    "HanaConfig",
    "GceConfig",
    "FreezeConfig",
    "MonitoringConfig",
    "PollingConfig",
    "PollingSettings",
    "Config",
    "load_config",
    "find_config_file",
    "generate_example_config",
    "ConfigError",
]
