"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import tomllib
from dataclasses import fields
from pathlib import Path
from typing import Any

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


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "hana-disk-backup" / "config.toml",
    Path("/etc/hana-disk-backup/config.toml"),
]

KNOWN_SECTIONS = {"global", "hana", "gce", "freeze", "polling", "monitoring"}


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _parse_table(cls, data: dict[str, Any], section: str, warnings: list[str]):
    """Build dataclass cls from data, checking value types against the defaults."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        default = getattr(defaults, f.name)
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{section}.{f.name} must be true or false")
        elif isinstance(default, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{section}.{f.name} must be a number")
            value = float(value)
        elif isinstance(default, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{section}.{f.name} must be an integer")
        elif isinstance(value, int) and not isinstance(value, bool):
            # port = 30013 is commonly written unquoted
            value = str(value)
        elif not isinstance(value, str):
            raise ConfigError(f"{section}.{f.name} must be a string")
        values[f.name] = value

    known = {f.name for f in fields(cls)}
    for key in sorted(set(data) - known):
        warnings.append(f"Unknown option '{key}' in [{section}]")
    return cls(**values)


def _parse_polling(data: dict[str, Any], warnings: list[str]) -> PollingSettings:
    """Parse the [polling.*] tables."""
    settings = PollingSettings()
    for name in ("creation", "upload", "api"):
        table = _section(data, name)
        if not table:
            continue
        base = getattr(settings, name)
        parsed = _parse_table(PollingConfig, table, f"polling.{name}", warnings)
        values = {
            f.name: getattr(parsed if f.name in table else base, f.name)
            for f in fields(PollingConfig)
        }
        merged = PollingConfig(**values)
        try:
            merged.policy()
        except ValueError as e:
            raise ConfigError(f"[polling.{name}]: {e}") from e
        setattr(settings, name, merged)
    for key in sorted(set(data) - {"creation", "upload", "api"}):
        warnings.append(f"Unknown option '{key}' in [polling]")
    return settings


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    hana = config.hana
    if hana.password_secret and hana.hdbuserstore_key:
        warnings.append(
            "Both hana.password_secret and hana.hdbuserstore_key are set, "
            "pass the one to use on the command line"
        )
    if hana.instance_id and not (len(hana.instance_id) == 2 and hana.instance_id.isdigit()):
        warnings.append(f"hana.instance_id '{hana.instance_id}' is not a two digit number")
    if hana.port and not hana.port.isdigit():
        warnings.append(f"hana.port '{hana.port}' is not a number")

    if config.global_config.lock_timeout < 0:
        raise ConfigError("global.lock_timeout must not be negative")

    if config.gce.zone and config.gce.zone.count("-") < 2:
        warnings.append(f"gce.zone '{config.gce.zone}' does not look like a zone name")

    return warnings


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    warnings: list[str] = []
    for key in sorted(set(data) - KNOWN_SECTIONS):
        warnings.append(f"Unknown section [{key}]")

    config = Config(
        global_config=_parse_table(GlobalConfig, _section(data, "global"), "global", warnings),
        hana=_parse_table(HanaConfig, _section(data, "hana"), "hana", warnings),
        gce=_parse_table(GceConfig, _section(data, "gce"), "gce", warnings),
        freeze=_parse_table(FreezeConfig, _section(data, "freeze"), "freeze", warnings),
        polling=_parse_polling(_section(data, "polling"), warnings),
        monitoring=_parse_table(
            MonitoringConfig, _section(data, "monitoring"), "monitoring", warnings
        ),
    )

    # Validate and collect warnings
    warnings.extend(_validate_config(config))

    return config, warnings


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# hana-disk-backup configuration
# Command line options override the values in this file.

[global]
# log_file = "/var/log/hana-disk-backup.log"
lock_dir = "/run/lock/hana-disk-backup"
lock_timeout = 10.0

[hana]
host = "localhost"
# user = "SYSTEM"
# Password read from Secret Manager, or an hdbuserstore key instead of both
# password_secret = "hana-system-password"
# hdbuserstore_key = "BACKUP"
instance_id = "00"
# port = "30013"
# Leave empty to read basepath_datavolumes from global.ini
# data_path = "/hana/data/ABC"

[gce]
# Defaults to the project and zone of this instance
# project = "my-project"
# zone = "us-central1-a"
compute_api_version = "v1"

[freeze]
command = "/usr/sbin/xfs_freeze"

# Waiting for the snapshot to exist
[polling.creation]
initial_interval = 5.0
multiplier = 2.0
max_interval = 60.0
max_attempts = 20

# Waiting for the snapshot to be uploaded (READY)
[polling.upload]
initial_interval = 30.0
multiplier = 1.5
max_interval = 600.0
max_attempts = 60

# Transient errors of single API calls
[polling.api]
initial_interval = 1.0
multiplier = 2.0
max_interval = 10.0
max_attempts = 4

[monitoring]
enabled = true
metric_prefix = "workload.googleapis.com/sap/agent/"
"""
