"""Config command: Configuration management."""

import argparse
import logging

from ..__logger__ import create_logger
from ..config import ConfigError, find_config_file, generate_example_config, load_config
from ..config.loader import CONFIG_PATHS
from ..errors import EXIT_FAILURE, EXIT_SUCCESS, EXIT_USAGE
from .common import get_log_level

logger = logging.getLogger(__name__)


def execute_config(args: argparse.Namespace) -> int:
    """Execute the config command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    log_level = get_log_level(args)
    create_logger(level=log_level)

    action = getattr(args, "config_action", None)

    if action == "validate":
        return _validate_config(args)
    elif action == "init":
        return _init_config(args)
    else:
        print("Usage: hana-disk-backup config <validate|init>")
        return EXIT_USAGE


def _validate_config(args: argparse.Namespace) -> int:
    """Validate configuration file."""
    try:
        config_path = find_config_file(getattr(args, "config", None))
        if config_path is None:
            print("No configuration file found.")
            print("Searched locations:")
            for path in CONFIG_PATHS:
                print(f"  {path}")
            return EXIT_FAILURE

        print(f"Validating: {config_path}")
        config, warnings = load_config(config_path)

        if warnings:
            print("")
            print("Warnings:")
            for warning in warnings:
                print(f"  - {warning}")

        print("")
        print("Configuration is valid.")
        print(f"  HANA host: {config.hana.host}")
        credential = (
            "hdbuserstore key"
            if config.hana.hdbuserstore_key
            else "password secret"
            if config.hana.password_secret
            else "command line"
        )
        print(f"  Credentials: {credential}")
        print(f"  Filesystem freeze: {config.freeze.command}")
        print(f"  Monitoring: {'enabled' if config.monitoring.enabled else 'disabled'}")

        return EXIT_SUCCESS

    except ConfigError as e:
        print(f"Configuration error: {e}")
        return EXIT_FAILURE


def _init_config(args: argparse.Namespace) -> int:
    """Generate example configuration."""
    content = generate_example_config()

    output = getattr(args, "output", None)
    if output:
        try:
            with open(output, "w") as f:
                f.write(content)
            print(f"Example configuration written to: {output}")
        except OSError as e:
            print(f"Error writing file: {e}")
            return EXIT_FAILURE
    else:
        print(content)

    return EXIT_SUCCESS
