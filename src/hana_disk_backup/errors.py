"""Error taxonomy for the backup workflow.

Usage and precondition errors are raised before any external side effect.
External service errors trigger cleanup and become the reported cause.
Cleanup errors are recorded next to the primary cause, never in its place.
"""

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class BackupError(Exception):
    """Base class for backup workflow errors."""

    exit_code = EXIT_FAILURE


class UsageError(BackupError):
    """Missing or invalid parameters."""

    exit_code = EXIT_USAGE


class PreconditionError(BackupError):
    """The environment does not allow a backup to start."""


class ExternalServiceError(BackupError):
    """The database or a cloud API failed."""


class PollTimeoutError(ExternalServiceError):
    """A poll exhausted its retry budget before reaching a terminal state."""


class CleanupError(BackupError):
    """Abandoning a token or thawing the filesystem failed."""


class WorkflowCancelled(BackupError):
    """The run was cancelled or hit its deadline."""
