"""Filesystem freeze control.

A frozen filesystem blocks every writer, including the database itself, so
the controller remembers whether it froze the mount point and thaws only
what it froze.
"""

import logging
from typing import Callable

from .. import __util__
from ..errors import CleanupError, ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_FREEZE_COMMAND = "/usr/sbin/xfs_freeze"

Runner = Callable[[list[str]], __util__.CommandResult]


class FilesystemFreezeController:
    """Freezes and thaws one mount point with xfs_freeze (or fsfreeze)."""

    def __init__(
        self,
        mount_point: str,
        command: str = DEFAULT_FREEZE_COMMAND,
        runner: Runner = __util__.exec_command,
    ) -> None:
        self.mount_point = mount_point
        self.command = command
        self.runner = runner
        self.frozen = False

    def freeze(self) -> None:
        """Flush and block writes on the mount point."""
        result = self.runner([self.command, "-f", self.mount_point])
        if not result.ok:
            raise ExternalServiceError(
                f"failure freezing {self.mount_point}: {result.describe()}"
            )
        self.frozen = True
        logger.info("Filesystem frozen successfully: %s", self.mount_point)

    def unfreeze(self) -> None:
        """Resume writes on the mount point if this controller froze it."""
        if not self.frozen:
            logger.debug("Filesystem %s is not frozen", self.mount_point)
            return
        result = self.runner([self.command, "-u", self.mount_point])
        if not result.ok:
            raise CleanupError(
                f"failure unfreezing {self.mount_point}: {result.describe()}"
            )
        self.frozen = False
        logger.info("Filesystem unfrozen successfully: %s", self.mount_point)
