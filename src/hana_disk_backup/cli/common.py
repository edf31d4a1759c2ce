"""Shared CLI utilities and argument parsers."""

import argparse
import re

LABEL_KEY = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add verbosity-related arguments to a parser."""
    group = parser.add_argument_group("Output options")
    group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )
    group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )


def get_log_level(args: argparse.Namespace) -> str:
    """Determine log level from parsed arguments.

    Args:
        args: Parsed command line arguments

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR)
    """
    if getattr(args, "debug", False):
        return "DEBUG"
    elif getattr(args, "quiet", False):
        return "WARNING"
    elif getattr(args, "verbose", False):
        return "DEBUG"
    else:
        return "INFO"


def parse_label(value: str) -> tuple[str, str]:
    """Parse a KEY=VALUE snapshot label.

    Raises:
        argparse.ArgumentTypeError: If the label is malformed
    """
    key, sep, label_value = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"label '{value}' is not in KEY=VALUE form")
    if not LABEL_KEY.match(key):
        raise argparse.ArgumentTypeError(
            f"label key '{key}' must start with a lowercase letter and contain "
            "only lowercase letters, digits, '_' and '-'"
        )
    return key, label_value


def positive_float(value: str) -> float:
    """argparse type for a positive number of seconds."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a number")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"'{value}' must be greater than zero")
    return number
