"""Pytest configuration and shared fixtures."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import pytest

from hana_disk_backup.core.orchestrator import BackupOrchestrator
from hana_disk_backup.core.polling import BackoffPolicy
from hana_disk_backup.core.volume import DataVolume
from hana_disk_backup.errors import CleanupError, ExternalServiceError
from hana_disk_backup.models import (
    BackupRequest,
    DiskDescriptor,
    GroupHandle,
    InstanceProperties,
    SnapshotHandle,
)

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5)
TIMESTAMP = "20260102-030405"


class FakeConnection:
    """In-memory HANA backup catalog.

    Statements containing a key of fail_on raise the mapped exception; an
    integer count limits how often.
    """

    def __init__(self, events: list, prepared: Optional[str] = None):
        self.events = events
        self.statements: list[str] = []
        self.prepared = prepared
        self.next_id = 1001
        self.fail_on: dict[str, list] = {}
        self.closed = False

    def fail(self, fragment: str, error: Exception, times: int = 1000) -> None:
        self.fail_on[fragment] = [error, times]

    def execute(self, statement: str):
        self.statements.append(statement)
        for fragment, entry in self.fail_on.items():
            if fragment in statement and entry[1] > 0:
                entry[1] -= 1
                raise entry[0]
        if statement.startswith("SELECT BACKUP_ID"):
            return [(self.prepared,)] if self.prepared else []
        if "CREATE SNAPSHOT" in statement:
            self.prepared = str(self.next_id)
            self.next_id += 1
            self.events.append("db.create")
        elif "SUCCESSFUL" in statement and "UNSUCCESSFUL" not in statement:
            self.prepared = None
            self.events.append("db.confirm")
        elif "UNSUCCESSFUL" in statement:
            self.prepared = None
            self.events.append("db.abandon")
        return []

    def close(self) -> None:
        self.closed = True

    def count(self, fragment: str) -> int:
        return sum(1 for s in self.statements if fragment in s)


class FakeFreezer:
    def __init__(self, events: list, mount_point: str, unfreeze_failures: int = 0):
        self.events = events
        self.mount_point = mount_point
        self.unfreeze_failures = unfreeze_failures
        self.freeze_error: Optional[Exception] = None
        self.frozen = False

    def freeze(self) -> None:
        if self.freeze_error is not None:
            raise self.freeze_error
        self.frozen = True
        self.events.append("freeze")

    def unfreeze(self) -> None:
        if not self.frozen:
            return
        if self.unfreeze_failures > 0:
            self.unfreeze_failures -= 1
            self.events.append("unfreeze.failed")
            raise CleanupError(f"failure unfreezing {self.mount_point}")
        self.frozen = False
        self.events.append("unfreeze")


class FakeDiskClient:
    def __init__(self, events: list):
        self.events = events
        self.created: list[tuple] = []
        self.create_error: Optional[Exception] = None
        self.creation_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None

    def create(self, disk, spec, source_key=None, deadline=None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((disk, spec, source_key))
        self.events.append("snapshot.create")
        return SnapshotHandle(
            name=spec.name,
            source_disk=disk.name,
            operation="operation-1",
            zone=disk.zone,
            project=disk.project,
        )

    def wait_for_creation(self, handle, deadline):
        self.events.append("snapshot.created")
        if self.creation_error is not None:
            raise self.creation_error

    def wait_for_upload(self, handle, deadline):
        self.events.append("snapshot.uploaded")
        if self.upload_error is not None:
            raise self.upload_error


class FakeGroupClient:
    def __init__(self, events: list):
        self.events = events
        self.created: list[tuple] = []
        self.creation_error: Optional[Exception] = None

    def create(self, disks, spec, consistency_group, source_keys=None, deadline=None):
        self.created.append((list(disks), spec, consistency_group, source_keys))
        self.events.append("group.create")
        return GroupHandle(
            name=spec.name,
            consistency_group=consistency_group,
            operation="operation-g",
            zone=disks[0].zone,
            project=disks[0].project,
            members=tuple(
                SnapshotHandle(name=f"{spec.name}-{d.name}", source_disk=d.name)
                for d in disks
            ),
            spec=spec,
        )

    def wait_for_creation(self, handle, deadline):
        self.events.append("group.created")
        if self.creation_error is not None:
            raise self.creation_error
        return handle

    def wait_for_upload(self, handle, deadline):
        self.events.append("group.uploaded")
        return handle


class FakeInventory:
    def __init__(self, disks: list[DiskDescriptor], attached: Optional[set] = None):
        self.disks = {d.name: d for d in disks}
        self.attached = set(self.disks) if attached is None else attached
        self.calls: list[str] = []

    def describe(self, project, zone, disk):
        self.calls.append(f"describe:{disk}")
        if disk not in self.disks:
            raise ExternalServiceError(f"get disk {disk} failed: 404")
        return self.disks[disk]

    def attached_disks(self, project, zone, instance):
        self.calls.append("attached_disks")
        return [d for name, d in self.disks.items() if name in self.attached]

    def is_attached(self, disk, instance):
        self.calls.append(f"is_attached:{disk.name}")
        return disk.name in self.attached


class FakeInspector:
    def __init__(self, volume: DataVolume):
        self.volume = volume
        self.inspected: list[str] = []

    def base_path(self, sid):
        return self.volume.base_path

    def inspect(self, data_path):
        self.inspected.append(data_path)
        return self.volume


class FakeReporter:
    def __init__(self):
        self.outcomes = []
        self.freeze_durations = []

    def report_freeze_duration(self, labels, seconds):
        self.freeze_durations.append((labels, seconds))
        return True

    def report_outcome(self, outcome):
        self.outcomes.append(outcome)
        return True


@dataclass
class Harness:
    """An orchestrator wired to fakes, plus the fakes themselves."""

    events: list
    connection: FakeConnection
    disk_client: FakeDiskClient
    group_client: FakeGroupClient
    inventory: FakeInventory
    inspector: FakeInspector
    reporter: FakeReporter
    orchestrator: BackupOrchestrator
    freezers: list = field(default_factory=list)
    connects: list = field(default_factory=list)
    unfreeze_failures: int = 0
    freeze_error: Optional[Exception] = None


def make_disk(name: str, **kwargs) -> DiskDescriptor:
    kwargs.setdefault("zone", "us-central1-a")
    kwargs.setdefault("project", "test-project")
    return DiskDescriptor(name=name, **kwargs)


@pytest.fixture
def instance():
    return InstanceProperties(
        project="test-project",
        zone="us-central1-a",
        instance_name="hana-vm",
        instance_id="1234567890",
    )


@pytest.fixture
def data_volume():
    return DataVolume(
        base_path="/hana/data/ABC",
        mount_point="/hana/data",
        logical_device="/dev/mapper/vg_hana-data",
        physical_devices=("/dev/sdb",),
        striped=False,
    )


@pytest.fixture
def harness_factory(tmp_path, instance, data_volume):
    """Build a Harness; keyword arguments replace the default fakes."""

    def factory(disks=None, volume=None, attached=None, prepared=None, **kwargs):
        events: list = []
        disks = disks if disks is not None else [make_disk("d1", device_name="d1")]
        connection = FakeConnection(events, prepared=prepared)
        harness = Harness(
            events=events,
            connection=connection,
            disk_client=FakeDiskClient(events),
            group_client=FakeGroupClient(events),
            inventory=FakeInventory(disks, attached),
            inspector=FakeInspector(volume or data_volume),
            reporter=FakeReporter(),
            orchestrator=None,  # type: ignore[arg-type]
        )

        def connect(params):
            harness.connects.append(params)
            events.append("db.connect")
            return connection

        def freezer_factory(mount_point):
            freezer = FakeFreezer(events, mount_point, harness.unfreeze_failures)
            freezer.freeze_error = harness.freeze_error
            harness.freezers.append(freezer)
            return freezer

        options = dict(
            lock_dir=str(tmp_path / "locks"),
            cleanup_policy=BackoffPolicy(
                initial_interval=0, multiplier=1, max_interval=0, max_attempts=2
            ),
            system="Linux",
            now=lambda: FIXED_NOW,
        )
        options.update(kwargs)
        harness.orchestrator = BackupOrchestrator(
            instance=instance,
            connect=connect,
            disk_client=harness.disk_client,
            group_client=harness.group_client,
            inventory=harness.inventory,
            inspector=harness.inspector,
            freezer_factory=freezer_factory,
            reporter=harness.reporter,
            **options,
        )
        return harness

    return factory


@pytest.fixture
def request_factory():
    """Build a BackupRequest with working database credentials."""

    def factory(**kwargs) -> BackupRequest:
        values = dict(
            sid="ABC",
            instance_id="00",
            user="SYSTEM",
            password="secret",
            disks=("d1",),
        )
        values.update(kwargs)
        return BackupRequest(**values)

    return factory


@pytest.fixture
def no_backoff():
    return BackoffPolicy(initial_interval=0, multiplier=1, max_interval=0, max_attempts=3)


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_toml():
    """Return a sample valid TOML configuration string."""
    return """
[global]
log_file = "/var/log/hana-disk-backup.log"
lock_dir = "/run/lock/hana-disk-backup"
lock_timeout = 30

[hana]
host = "hana-host"
user = "BACKUP"
password_secret = "hana-password"
instance_id = "10"
data_path = "/hana/data/ABC"

[gce]
project = "test-project"
zone = "us-central1-a"

[freeze]
command = "/sbin/fsfreeze"

[polling.creation]
initial_interval = 1
max_attempts = 5

[polling.upload]
max_interval = 300.0

[monitoring]
enabled = false
"""


@pytest.fixture
def minimal_config_toml():
    """Return a minimal valid TOML configuration string."""
    return """
[hana]
hdbuserstore_key = "BACKUP"
"""


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def minimal_config_file(tmp_config_dir, minimal_config_toml):
    """Create a temporary config file with minimal content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(minimal_config_toml)
    return config_path
