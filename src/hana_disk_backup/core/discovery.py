"""Resolution of the disks backing the HANA data volume."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Sequence

from ..errors import PreconditionError
from ..models import DiskDescriptor, InstanceProperties
from .compute import DiskInventory
from .volume import DataVolume

logger = logging.getLogger(__name__)

BY_ID_DIR = "/dev/disk/by-id"
GOOGLE_PREFIX = "google-"
PARTITION_SUFFIX = re.compile(r"^p?\d+$")


def _same_device(physical: str, disk_device: str) -> bool:
    """Whether physical is disk_device itself or one of its partitions."""
    if physical == disk_device:
        return True
    return physical.startswith(disk_device) and bool(
        PARTITION_SUFFIX.match(physical[len(disk_device) :])
    )


class DiskResolver:
    """Turns disk names, or the data volume layout, into DiskDescriptors."""

    def __init__(self, inventory: DiskInventory, by_id_dir: str = BY_ID_DIR) -> None:
        self.inventory = inventory
        self.by_id_dir = Path(by_id_dir)

    def describe(
        self, names: Sequence[str], project: str, zone: str
    ) -> list[DiskDescriptor]:
        """Describe explicitly named disks."""
        return [self.inventory.describe(project, zone, name) for name in names]

    def device_path(self, device_name: str) -> str:
        """Kernel device behind the stable google-<device name> link."""
        link = self.by_id_dir / f"{GOOGLE_PREFIX}{device_name}"
        return os.path.realpath(link)

    def discover(
        self, volume: DataVolume, instance: InstanceProperties, project: str, zone: str
    ) -> list[DiskDescriptor]:
        """Find the attached disks holding the physical volumes of volume."""
        physical = [os.path.realpath(p) for p in volume.physical_devices]
        attached = self.inventory.attached_disks(project, zone, instance.instance_name)
        found = []
        unmatched = set(physical)
        for disk in attached:
            if not disk.device_name:
                continue
            device = self.device_path(disk.device_name)
            matches = {p for p in physical if _same_device(p, device)}
            if matches:
                logger.info("Data volume device %s is disk %s", device, disk.name)
                found.append(disk)
                unmatched -= matches
        if not found or unmatched:
            missing = ", ".join(sorted(unmatched)) or ", ".join(volume.physical_devices)
            raise PreconditionError(
                f"no attached disk found for {missing} of the HANA data volume "
                f"{volume.base_path}, pass --source-disk"
            )
        return found
