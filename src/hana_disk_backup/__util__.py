# pyright: standard

"""hana-disk-backup: hana_disk_backup/__util__.py
Common utility code shared between modules.
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 120


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished external command."""

    args: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        """Short human readable description used in error messages."""
        detail = self.stderr.strip() or self.stdout.strip() or "no output"
        return f"'{shlex.join(self.args)}' exited with {self.exit_code}: {detail}"


def exec_command(
    command: list[str], timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> CommandResult:
    """Run a command and capture its output.

    A missing executable or an expired timeout is reported as a failed
    result rather than an exception so callers decide how fatal it is.
    """
    logger.debug("Executing: %s", shlex.join(command))
    try:
        completed = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        return CommandResult(tuple(command), 127, stderr=str(e))
    except subprocess.TimeoutExpired:
        return CommandResult(
            tuple(command), 124, stderr=f"timed out after {timeout} seconds"
        )
    result = CommandResult(
        tuple(command), completed.returncode, completed.stdout, completed.stderr
    )
    if not result.ok:
        logger.debug("Command failed: %s", result.describe())
    return result


def shell(script: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> CommandResult:
    """Run a pipeline through /bin/sh."""
    return exec_command(["/bin/sh", "-c", script], timeout=timeout)


def log_heading(msg: str) -> str:
    """Format a heading line for the log."""
    return f"--[ {msg} ]" + "-" * max(0, 50 - len(msg))
