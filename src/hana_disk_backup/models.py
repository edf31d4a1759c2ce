"""Data model shared by the backup workflow.

Requests, disks, handles and tokens are immutable. The only mutable state of a
run lives on its WorkflowContext, which is created per invocation and passed
by reference.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

COMPUTE_BASE_URI = "https://www.googleapis.com/compute/v1"


class CredentialMode(Enum):
    """How the database connection authenticates."""

    PASSWORD = "password"
    PASSWORD_SECRET = "password-secret"
    USERSTORE_KEY = "hdbuserstore-key"


class BackupMode(Enum):
    """Workflow variants, selected by request flags."""

    STANDARD = "standard"
    CHANGE_DISK_TYPE = "change-disk-type"
    GROUP_SNAPSHOT = "group-snapshot"


@dataclass(frozen=True)
class BackupRequest:
    """Caller input for one backup run.

    Attributes:
        sid: HANA system id
        host: HANA host name
        port: SQL port of the system database
        instance_id: HANA instance number, used to derive the port
        user: HANA database user
        password: Cleartext password
        password_secret: Secret Manager secret holding the password
        userstore_key: hdbuserstore key, bypasses explicit credentials
        disks: Source disk names, empty to auto-discover
        zone: Zone of the source disks
        project: Project of the source disks
        snapshot_name: Snapshot (or snapshot group) name
        snapshot_type: STANDARD or ARCHIVE
        description: Snapshot description
        storage_location: Cloud Storage location of the snapshot
        labels: Labels attached to every created snapshot
        source_disk_key_file: CSEK key file of encrypted source disks
        consistency_group: Resource policy grouping the disks in group mode
        data_path: HANA data volume path, read from global.ini when unset
        freeze_filesystem: Freeze the data filesystem around snapshot creation
        group_snapshot: Snapshot all disks atomically as one group
        skip_db_snapshot: Skip the database, used for disk type changes
        confirm_after_create: Confirm the database snapshot before upload ends
        abandon_prepared: Abandon a data snapshot left prepared by an earlier run
        send_status_to_monitoring: Emit status and duration metrics
    """

    sid: str = ""
    host: str = "localhost"
    port: str = ""
    instance_id: str = ""
    user: str = ""
    password: str = ""
    password_secret: str = ""
    userstore_key: str = ""
    disks: tuple[str, ...] = ()
    zone: str = ""
    project: str = ""
    snapshot_name: str = ""
    snapshot_type: str = "STANDARD"
    description: str = ""
    storage_location: str = ""
    labels: tuple[tuple[str, str], ...] = ()
    source_disk_key_file: str = ""
    consistency_group: str = ""
    data_path: str = ""
    freeze_filesystem: bool = False
    group_snapshot: bool = False
    skip_db_snapshot: bool = False
    confirm_after_create: bool = False
    abandon_prepared: bool = False
    send_status_to_monitoring: bool = True

    @property
    def mode(self) -> BackupMode:
        if self.skip_db_snapshot:
            return BackupMode.CHANGE_DISK_TYPE
        if self.group_snapshot:
            return BackupMode.GROUP_SNAPSHOT
        return BackupMode.STANDARD

    @property
    def credential_modes(self) -> list[CredentialMode]:
        """Credential modes the caller supplied values for."""
        modes = []
        if self.password:
            modes.append(CredentialMode.PASSWORD)
        if self.password_secret:
            modes.append(CredentialMode.PASSWORD_SECRET)
        if self.userstore_key:
            modes.append(CredentialMode.USERSTORE_KEY)
        return modes


@dataclass(frozen=True)
class InstanceProperties:
    """Identity of the instance the agent runs on."""

    project: str
    zone: str
    instance_name: str
    instance_id: str = ""

    @property
    def region(self) -> str:
        return self.zone.rsplit("-", 1)[0]


@dataclass(frozen=True)
class DiskDescriptor:
    """A persistent disk as seen from the current instance."""

    name: str
    zone: str
    project: str
    device_name: str = ""
    encryption_key: Optional[str] = None
    provisioned_iops: Optional[int] = None
    provisioned_throughput: Optional[int] = None
    resource_policies: tuple[str, ...] = ()

    @property
    def uri(self) -> str:
        return f"{COMPUTE_BASE_URI}/projects/{self.project}/zones/{self.zone}/disks/{self.name}"


@dataclass(frozen=True)
class SnapshotSpec:
    """What every created snapshot looks like."""

    name: str
    description: str = ""
    snapshot_type: str = "STANDARD"
    storage_location: str = ""
    labels: tuple[tuple[str, str], ...] = ()

    def body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "snapshotType": self.snapshot_type,
        }
        if self.storage_location:
            body["storageLocations"] = [self.storage_location]
        if self.labels:
            body["labels"] = dict(self.labels)
        return body


@dataclass(frozen=True)
class SnapshotHandle:
    """An in-flight or completed disk snapshot.

    encryption_key holds the customer-supplied key of the source disk as
    (field, value) pairs, empty for Google-managed encryption.
    """

    name: str
    source_disk: str
    operation: str = ""
    zone: str = ""
    project: str = ""
    source_instant_snapshot: str = ""
    encryption_key: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class GroupHandle:
    """A group snapshot and the member snapshots it owns."""

    name: str
    consistency_group: str
    operation: str = ""
    zone: str = ""
    project: str = ""
    members: tuple[SnapshotHandle, ...] = ()
    spec: Optional[SnapshotSpec] = None

    @property
    def member_disks(self) -> frozenset[str]:
        return frozenset(m.source_disk for m in self.members)


@dataclass(frozen=True)
class DBSnapshotToken:
    """A prepared HANA data snapshot awaiting confirmation or abandonment."""

    backup_id: str
    comment: str = ""


@dataclass(frozen=True)
class BackupOutcome:
    """Result of one workflow run."""

    success: bool
    sid: str
    snapshot_names: tuple[str, ...]
    disks: tuple[str, ...]
    total_seconds: float
    freeze_seconds: Optional[float] = None
    message: str = ""
    cleanup_errors: tuple[str, ...] = ()
    exit_code: int = 0


@dataclass
class WorkflowContext:
    """Mutable state of a single run."""

    request: BackupRequest
    started_at: float = field(default_factory=time.monotonic)
    disks: list[DiskDescriptor] = field(default_factory=list)
    token: Optional[DBSnapshotToken] = None
    token_closed: bool = False
    frozen: bool = False
    freeze_started_at: Optional[float] = None
    freeze_seconds: Optional[float] = None
    snapshot: Optional[SnapshotHandle] = None
    group: Optional[GroupHandle] = None
    cleanup_errors: list[str] = field(default_factory=list)

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def snapshot_names(self) -> tuple[str, ...]:
        if self.group is not None:
            if self.group.members:
                return tuple(m.name for m in self.group.members)
            return (self.group.name,)
        if self.snapshot is not None:
            return (self.snapshot.name,)
        if self.request.snapshot_name:
            return (self.request.snapshot_name,)
        return ()
