"""HANA data volume inspection.

Maps the HANA data directory to the block devices underneath it: base path
from global.ini, logical device from df, and physical volumes and striping
from lvdisplay.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import Callable

from .. import __util__
from ..errors import ExternalServiceError, PreconditionError

logger = logging.getLogger(__name__)

GLOBAL_INI = "/usr/sap/{sid}/SYS/global/hdb/custom/config/global.ini"
BASE_PATH_KEY = "basepath_datavolumes"

Shell = Callable[[str], __util__.CommandResult]


@dataclass(frozen=True)
class DataVolume:
    """Where the HANA data volume lives."""

    base_path: str
    mount_point: str
    logical_device: str
    physical_devices: tuple[str, ...]
    striped: bool

    @property
    def is_lvm(self) -> bool:
        return self.logical_device.startswith("/dev/mapper")


class DataVolumeInspector:
    """Reads the storage layout of the HANA data volume."""

    def __init__(self, shell: Shell = __util__.shell) -> None:
        self.shell = shell

    def _stdout(self, script: str, what: str) -> str:
        result = self.shell(script)
        if not result.ok:
            raise ExternalServiceError(f"failure parsing {what}: {result.describe()}")
        return result.stdout.strip()

    def base_path(self, sid: str) -> str:
        """Read basepath_datavolumes from the SID's global.ini."""
        ini = GLOBAL_INI.format(sid=sid.upper())
        path = self._stdout(
            f"grep {BASE_PATH_KEY} {shlex.quote(ini)} | cut -d= -f 2",
            "HANA data base path",
        )
        if not path:
            raise PreconditionError(f"{BASE_PATH_KEY} not found in {ini}")
        logger.info("Found HANA base data directory: %s", path)
        return path.splitlines()[0].strip()

    def mount_point(self, path: str) -> str:
        return self._stdout(
            f"df --output=target {shlex.quote(path)} | tail -n 1", "mount point"
        )

    def logical_device(self, path: str) -> str:
        device = self._stdout(
            f"df --output=source {shlex.quote(path)} | tail -n 1", "logical path"
        )
        logger.info("Directory %s is on logical device %s", path, device)
        return device

    def physical_devices(self, logical_device: str) -> tuple[str, ...]:
        output = self._stdout(
            f"/sbin/lvdisplay -m {shlex.quote(logical_device)} "
            "| grep 'Physical volume' | awk '{print $3}'",
            "physical path",
        )
        devices = tuple(dict.fromkeys(line.strip() for line in output.splitlines() if line.strip()))
        logger.info("Logical device %s maps to %s", logical_device, ", ".join(devices))
        return devices

    def is_striped(self, logical_device: str) -> bool:
        result = self.shell(
            f"/sbin/lvdisplay -m {shlex.quote(logical_device)} | grep Stripes"
        )
        return result.ok

    def inspect(self, data_path: str) -> DataVolume:
        logical = self.logical_device(data_path)
        if not logical.startswith("/dev/mapper"):
            return DataVolume(
                base_path=data_path,
                mount_point=self.mount_point(data_path),
                logical_device=logical,
                physical_devices=(logical,),
                striped=False,
            )
        return DataVolume(
            base_path=data_path,
            mount_point=self.mount_point(data_path),
            logical_device=logical,
            physical_devices=self.physical_devices(logical),
            striped=self.is_striped(logical),
        )
