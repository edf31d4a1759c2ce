# pyright: standard

"""hana-disk-backup: hana_disk_backup/core/orchestrator.py
Sequencing of one disk snapshot backup.

The orchestrator drives the database, the filesystem and the snapshot API
through one run and owns the rollback when any of them fails:

- a prepared database snapshot is confirmed or abandoned before returning
- a frozen filesystem is thawed before returning
- the outcome is reported exactly once, whatever happened
"""

from __future__ import annotations

import contextlib
import logging
import platform
import re
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from filelock import FileLock, Timeout

from .. import __util__
from ..errors import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    BackupError,
    CleanupError,
    ExternalServiceError,
    PreconditionError,
    UsageError,
    WorkflowCancelled,
)
from ..models import (
    BackupMode,
    BackupOutcome,
    BackupRequest,
    CredentialMode,
    DiskDescriptor,
    InstanceProperties,
    SnapshotSpec,
    WorkflowContext,
)
from .compute import DiskInventory, DiskSnapshotClient, GroupSnapshotClient
from .database import Connection, ConnectParams, DatabaseSnapshotController
from .discovery import DiskResolver
from .keys import read_key
from .monitoring import StatusReporter
from .polling import BackoffPolicy, Deadline, call_with_retry
from .volume import DataVolume, DataVolumeInspector

logger = logging.getLogger(__name__)

SID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]{2}$")
INSTANCE_ID_PATTERN = re.compile(r"^\d{2}$")
SNAPSHOT_NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")
SNAPSHOT_TYPES = ("STANDARD", "ARCHIVE")
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
DESCRIPTION_TEMPLATE = 'Snapshot created by Agent for SAP for HANA sid: "{sid}"'
DEFAULT_LOCK_DIR = "/run/lock/hana-disk-backup"
DEFAULT_LOCK_TIMEOUT = 10.0
# Longest disk name part that keeps snapshot-<disk>-<timestamp> within 63 chars.
MAX_DISK_PART = 38


class FilesystemFreezer(Protocol):
    def freeze(self) -> None: ...

    def unfreeze(self) -> None: ...


Connector = Callable[[ConnectParams], Connection]
FreezerFactory = Callable[[str], FilesystemFreezer]


def check_request(request: BackupRequest, system: str) -> None:
    """Reject requests that cannot start a backup on this host.

    Raises:
        UsageError: If parameters are missing, conflicting or malformed
        PreconditionError: If system is not Linux
    """
    if system != "Linux":
        raise PreconditionError(
            f"disk snapshot backups are only supported on Linux, not {system}"
        )
    if not request.sid:
        raise UsageError("--sid is required")
    if not SID_PATTERN.match(request.sid):
        raise UsageError(
            f"invalid SID {request.sid!r}, expected three alphanumeric characters "
            "starting with a letter"
        )
    if request.skip_db_snapshot and request.group_snapshot:
        raise UsageError(
            "--skip-db-snapshot-for-change-disk-type cannot be combined with "
            "--group-snapshot"
        )
    if request.instance_id and not INSTANCE_ID_PATTERN.match(request.instance_id):
        raise UsageError(f"invalid instance id {request.instance_id!r}, expected two digits")
    if request.snapshot_type.upper() not in SNAPSHOT_TYPES:
        raise UsageError(
            f"invalid snapshot type {request.snapshot_type!r}, "
            f"expected one of {', '.join(SNAPSHOT_TYPES)}"
        )
    if request.snapshot_name and not SNAPSHOT_NAME_PATTERN.match(request.snapshot_name):
        raise UsageError(
            f"invalid snapshot name {request.snapshot_name!r}, use lowercase letters, "
            "digits and hyphens, at most 63 characters"
        )
    if request.group_snapshot and not request.consistency_group:
        raise UsageError("--consistency-group is required with --group-snapshot")
    if request.skip_db_snapshot:
        return

    modes = request.credential_modes
    if len(modes) != 1:
        raise UsageError(
            "exactly one of --password, --password-secret or --hdbuserstore-key is required"
        )
    if request.port and not request.port.isdigit():
        raise UsageError(f"invalid port {request.port!r}")
    if modes[0] is not CredentialMode.USERSTORE_KEY:
        if not request.user:
            raise UsageError("--hana-db-user is required")
        if not (request.port or request.instance_id):
            raise UsageError("either --port or --instance-id is required")


class BackupOrchestrator:
    """Runs the standard, change-disk-type and group snapshot workflows.

    Args:
        instance: The instance this process runs on
        connect: Opens a database connection
        disk_client: Single disk snapshot client
        group_client: Consistency group snapshot client
        inventory: Disk and attachment lookups
        inspector: HANA data volume layout reader
        freezer_factory: Builds a freeze controller for a mount point
        reporter: Status and duration telemetry
        lock_dir: Directory of the per-SID run locks, None disables locking
        lock_timeout: Seconds to wait for another run of the same SID
        cleanup_policy: Budget of the abandon and unfreeze retries
        system: Operating system name, defaults to the running one
        now: Wall clock used for default snapshot names
    """

    def __init__(
        self,
        instance: InstanceProperties,
        connect: Connector,
        disk_client: DiskSnapshotClient,
        group_client: GroupSnapshotClient,
        inventory: DiskInventory,
        inspector: DataVolumeInspector,
        freezer_factory: FreezerFactory,
        reporter: StatusReporter,
        lock_dir: Optional[str] = DEFAULT_LOCK_DIR,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        cleanup_policy: Optional[BackoffPolicy] = None,
        system: Optional[str] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.instance = instance
        self.connect = connect
        self.disk_client = disk_client
        self.group_client = group_client
        self.inventory = inventory
        self.resolver = DiskResolver(inventory)
        self.inspector = inspector
        self.freezer_factory = freezer_factory
        self.reporter = reporter
        self.lock_dir = lock_dir
        self.lock_timeout = lock_timeout
        self.cleanup_policy = cleanup_policy or BackoffPolicy(
            initial_interval=2.0, multiplier=2.0, max_interval=2.0, max_attempts=2
        )
        self.system = system if system is not None else platform.system()
        self.now = now

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, request: BackupRequest, deadline: Optional[Deadline] = None) -> BackupOutcome:
        """Run one backup and report its outcome.

        Failures of the workflow are returned as an unsuccessful outcome.
        Unexpected exceptions propagate after the outcome was reported.
        """
        context = WorkflowContext(request=request)
        deadline = deadline or Deadline()
        outcome = None
        try:
            self._run(context, deadline)
            outcome = self._outcome(context)
        except BackupError as e:
            outcome = self._outcome(context, e)
        except KeyboardInterrupt:
            outcome = self._outcome(context, WorkflowCancelled("interrupted by user"))
        finally:
            if outcome is None:
                outcome = self._outcome(
                    context, BackupError("backup aborted by an unexpected error")
                )
            if context.request.send_status_to_monitoring:
                self.reporter.report_outcome(outcome)
        return outcome

    def _run(self, context: WorkflowContext, deadline: Deadline) -> None:
        request = self.validate(context.request)
        context.request = request
        logger.info(__util__.log_heading(f"HANA disk backup of {request.sid}"))

        with self._lock(request.sid):
            volume = self._data_volume(request)
            context.disks = self._resolve_disks(request, volume)
            request = self._with_defaults(request, context.disks)
            context.request = request
            source_keys = self._source_keys(request, context.disks)
            mount_point = volume.mount_point if volume is not None else ""

            if request.mode is BackupMode.CHANGE_DISK_TYPE:
                logger.info("Skipping the HANA data snapshot for a disk type change")
                self._snapshot(context, deadline, None, mount_point, source_keys)
                return

            connection = self.connect(self._connect_params(request))
            try:
                self._check_attached(context.disks)
                controller = DatabaseSnapshotController(connection)
                self._prepare_database(controller, request)
                context.token = controller.create(request.snapshot_name)
                try:
                    self._snapshot(context, deadline, controller, mount_point, source_keys)
                except BaseException as e:
                    self._abandon(controller, context, str(e) or type(e).__name__)
                    raise
            finally:
                _close(connection)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def validate(self, request: BackupRequest) -> BackupRequest:
        """Check the request and fill in values derived without side effects.

        Raises:
            UsageError: If parameters are missing, conflicting or malformed
            PreconditionError: If the host cannot run a disk snapshot backup
        """
        check_request(request, self.system)
        port = request.port
        if not port and request.instance_id:
            port = f"3{request.instance_id}13"
        sid = request.sid.upper()
        return replace(
            request,
            sid=sid,
            port=port,
            snapshot_type=request.snapshot_type.upper(),
            project=request.project or self.instance.project,
            zone=request.zone or self.instance.zone,
            description=request.description or DESCRIPTION_TEMPLATE.format(sid=sid),
        )

    def _with_defaults(
        self, request: BackupRequest, disks: list[DiskDescriptor]
    ) -> BackupRequest:
        if request.snapshot_name:
            return request
        timestamp = self.now().strftime(TIMESTAMP_FORMAT)
        if request.mode is BackupMode.GROUP_SNAPSHOT:
            name = f"group-snapshot-{request.sid.lower()}-{timestamp}"
        else:
            disk = re.sub(r"[^a-z0-9-]", "-", disks[0].name.lower())
            name = f"snapshot-{disk[:MAX_DISK_PART].rstrip('-')}-{timestamp}"
        logger.info("Using snapshot name %s", name)
        return replace(request, snapshot_name=name)

    def _connect_params(self, request: BackupRequest) -> ConnectParams:
        return ConnectParams(
            host=request.host,
            port=request.port,
            user=request.user,
            password=request.password,
            password_secret=request.password_secret,
            userstore_key=request.userstore_key,
            project=self.instance.project,
        )

    # ------------------------------------------------------------------
    # Disks
    # ------------------------------------------------------------------

    def _data_volume(self, request: BackupRequest) -> Optional[DataVolume]:
        if request.disks and not request.freeze_filesystem:
            return None
        data_path = request.data_path or self.inspector.base_path(request.sid)
        volume = self.inspector.inspect(data_path)
        logger.info(
            "HANA data volume %s is mounted at %s on %s",
            volume.base_path,
            volume.mount_point,
            volume.logical_device,
        )
        return volume

    def _resolve_disks(
        self, request: BackupRequest, volume: Optional[DataVolume]
    ) -> list[DiskDescriptor]:
        grouped = request.mode is BackupMode.GROUP_SNAPSHOT
        if request.disks:
            if len(request.disks) > 1 and not grouped:
                raise PreconditionError(
                    f"{len(request.disks)} source disks given, backing up more than "
                    "one disk requires --group-snapshot"
                )
            return self.resolver.describe(request.disks, request.project, request.zone)

        if volume is None:
            raise PreconditionError(
                "no source disks given and the HANA data volume was not inspected"
            )
        if volume.striped and not grouped:
            raise PreconditionError(
                f"HANA data volume {volume.logical_device} is striped across disks, "
                "use --group-snapshot"
            )
        disks = self.resolver.discover(volume, self.instance, request.project, request.zone)
        if len(disks) > 1 and not grouped:
            raise PreconditionError(
                f"HANA data volume spans disks {', '.join(d.name for d in disks)}, "
                "use --group-snapshot"
            )
        return disks

    def _check_attached(self, disks: list[DiskDescriptor]) -> None:
        for disk in disks:
            if not self.inventory.is_attached(disk, self.instance.instance_name):
                raise PreconditionError(
                    f"disk {disk.name} is not attached to instance "
                    f"{self.instance.instance_name}"
                )

    def _source_keys(
        self, request: BackupRequest, disks: list[DiskDescriptor]
    ) -> dict[str, dict[str, str]]:
        if not request.source_disk_key_file:
            return {}
        return {d.name: read_key(request.source_disk_key_file, d.uri) for d in disks}

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    def _prepare_database(
        self, controller: DatabaseSnapshotController, request: BackupRequest
    ) -> None:
        prepared = controller.find_prepared()
        if prepared is None:
            return
        if not request.abandon_prepared:
            raise PreconditionError(
                f"HANA data snapshot {prepared.backup_id} is already prepared, "
                "rerun with --abandon-prepared to abandon it"
            )
        logger.warning("Abandoning prepared HANA snapshot %s", prepared.backup_id)
        controller.abandon(prepared, "abandoned before starting a new disk snapshot backup")

    def _confirm(self, controller, context: WorkflowContext, external_id: str) -> None:
        if controller is None or context.token is None:
            return
        controller.confirm(context.token, external_id)
        context.token_closed = True

    def _abandon(self, controller, context: WorkflowContext, reason: str) -> None:
        """Abandon the open token, recording rather than raising a failure."""
        token = context.token
        if token is None or context.token_closed:
            return
        logger.info("Abandoning HANA snapshot %s: %s", token.backup_id, reason)
        try:
            call_with_retry(
                lambda: controller.abandon(token, reason),
                self.cleanup_policy,
                lambda e: isinstance(e, ExternalServiceError),
            )
        except BackupError as e:
            message = f"failed to abandon HANA snapshot {token.backup_id}: {e}"
            logger.error(message)
            context.cleanup_errors.append(message)
            return
        context.token_closed = True

    # ------------------------------------------------------------------
    # Freeze and snapshot
    # ------------------------------------------------------------------

    def _snapshot(
        self,
        context: WorkflowContext,
        deadline: Deadline,
        controller: Optional[DatabaseSnapshotController],
        mount_point: str,
        source_keys: dict[str, dict[str, str]],
    ) -> None:
        request = context.request
        spec = SnapshotSpec(
            name=request.snapshot_name,
            description=request.description,
            snapshot_type=request.snapshot_type,
            storage_location=request.storage_location,
            labels=request.labels,
        )
        freezer = self.freezer_factory(mount_point) if request.freeze_filesystem else None

        try:
            deadline.check("snapshot creation")
            if freezer is not None:
                freezer.freeze()
                context.frozen = True
                context.freeze_started_at = time.monotonic()
            if request.mode is BackupMode.GROUP_SNAPSHOT:
                context.group = self.group_client.create(
                    context.disks,
                    spec,
                    request.consistency_group,
                    source_keys,
                    deadline=deadline,
                )
            else:
                disk = context.disks[0]
                context.snapshot = self.disk_client.create(
                    disk, spec, source_keys.get(disk.name), deadline=deadline
                )
        except BaseException:
            self._thaw(context, freezer, failed=True)
            raise
        self._thaw(context, freezer, failed=False)

        if context.group is not None:
            self._wait_group(context, deadline, controller)
        else:
            self._wait_disk(context, deadline, controller)

    def _wait_disk(self, context, deadline, controller) -> None:
        snapshot = context.snapshot
        self.disk_client.wait_for_creation(snapshot, deadline)
        if context.request.confirm_after_create:
            self._confirm(controller, context, snapshot.name)
            self.disk_client.wait_for_upload(snapshot, deadline)
        else:
            self.disk_client.wait_for_upload(snapshot, deadline)
            self._confirm(controller, context, snapshot.name)

    def _wait_group(self, context, deadline, controller) -> None:
        context.group = self.group_client.wait_for_creation(context.group, deadline)
        if context.request.confirm_after_create:
            self._confirm(controller, context, context.group.name)
            context.group = self.group_client.wait_for_upload(context.group, deadline)
        else:
            context.group = self.group_client.wait_for_upload(context.group, deadline)
            self._confirm(controller, context, context.group.name)

    def _thaw(
        self, context: WorkflowContext, freezer: Optional[FilesystemFreezer], failed: bool
    ) -> None:
        """Unfreeze, then report the freeze window.

        After a failure, an unfreeze error is recorded next to it. On the
        success path it becomes the failure of the run.
        """
        if freezer is None or not context.frozen:
            return
        try:
            call_with_retry(
                freezer.unfreeze,
                self.cleanup_policy,
                lambda e: isinstance(e, CleanupError),
            )
            context.frozen = False
        except BackupError as e:
            if not failed:
                raise
            logger.error("%s", e)
            context.cleanup_errors.append(str(e))
        finally:
            context.freeze_seconds = time.monotonic() - context.freeze_started_at
            if context.request.send_status_to_monitoring:
                self.reporter.report_freeze_duration(
                    StatusReporter.labels(
                        context.request.sid,
                        [d.name for d in context.disks],
                        context.snapshot_names,
                    ),
                    context.freeze_seconds,
                )

    # ------------------------------------------------------------------
    # Locking and outcome
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _lock(self, sid: str) -> Iterator[None]:
        if not self.lock_dir:
            yield
            return
        lock_dir = Path(self.lock_dir)
        try:
            lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreconditionError(f"cannot create lock directory {lock_dir}: {e}") from e
        lock = FileLock(str(lock_dir / f"{sid}.lock"), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise PreconditionError(f"another backup of {sid} is already running") from e
        try:
            yield
        finally:
            lock.release()

    def _outcome(
        self, context: WorkflowContext, error: Optional[BaseException] = None
    ) -> BackupOutcome:
        names = context.snapshot_names
        disks = tuple(d.name for d in context.disks) or context.request.disks
        if error is None:
            message = (
                "HANA backup and disk snapshot creation successful. "
                f"Snapshot(s): {', '.join(names)}"
            )
            logger.info(message)
        else:
            target = ", ".join(names) or f"of {context.request.sid or 'HANA'}"
            message = f"backup {target} failed: {error}"
            logger.error(message)
        for cleanup_error in context.cleanup_errors:
            logger.error("Cleanup error: %s", cleanup_error)
        elapsed = context.elapsed()
        logger.info("Total time taken: %.3f seconds", elapsed)
        return BackupOutcome(
            success=error is None,
            sid=context.request.sid,
            snapshot_names=names,
            disks=disks,
            total_seconds=elapsed,
            freeze_seconds=context.freeze_seconds,
            message=message,
            cleanup_errors=tuple(context.cleanup_errors),
            exit_code=EXIT_SUCCESS
            if error is None
            else getattr(error, "exit_code", EXIT_FAILURE),
        )


def _close(connection: Connection) -> None:
    try:
        connection.close()
    except Exception as e:  # pylint: disable=broad-except
        logger.warning("Error closing HANA connection: %s", e)
