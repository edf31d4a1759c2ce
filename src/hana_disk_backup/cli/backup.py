"""Backup command: Run one HANA disk snapshot backup."""

import argparse
import contextlib
import logging
import platform
import signal
from typing import Iterator

from ..__logger__ import create_logger
from ..config import Config, ConfigError, find_config_file, load_config
from ..core.compute import (
    GceCompute,
    GceDiskInventory,
    GceDiskSnapshotClient,
    GceGroupSnapshotClient,
)
from ..core.database import HanaConnector
from ..core.freeze import FilesystemFreezeController
from ..core.metadata import MetadataReader
from ..core.monitoring import CloudMonitoringSender, StatusReporter
from ..core.orchestrator import BackupOrchestrator, check_request
from ..core.polling import Deadline
from ..core.secrets import SecretManagerReader
from ..core.volume import DataVolumeInspector
from ..errors import EXIT_FAILURE, EXIT_USAGE, BackupError
from ..models import BackupRequest, InstanceProperties
from .common import get_log_level

logger = logging.getLogger(__name__)


def execute_backup(args: argparse.Namespace) -> int:
    """Execute the backup command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 success, 1 failure, 2 usage error)
    """
    try:
        config, warnings = _load_config(args)
    except ConfigError as e:
        create_logger(level=get_log_level(args))
        print(f"ERROR: configuration error: {e}")
        return EXIT_USAGE

    create_logger(level=get_log_level(args), log_file=config.global_config.log_file)
    for warning in warnings:
        logger.warning("Config: %s", warning)

    request = build_request(args, config)
    deadline = Deadline(timeout=getattr(args, "timeout", None))

    try:
        check_request(request, platform.system())
        instance = MetadataReader().read()
    except BackupError as e:
        logger.error("%s", e)
        print(f"ERROR: {e}")
        return e.exit_code

    orchestrator = build_orchestrator(instance, config, request)
    try:
        with cancel_on_signals(deadline):
            outcome = orchestrator.run(request, deadline)
    except Exception as e:
        logger.exception("Unexpected error during backup")
        print(f"ERROR: backup failed: {e}")
        return EXIT_FAILURE

    print(("SUCCESS: " if outcome.success else "ERROR: ") + outcome.message)
    return outcome.exit_code


def _load_config(args: argparse.Namespace) -> tuple[Config, list[str]]:
    config_path = find_config_file(getattr(args, "config", None))
    if config_path is None:
        return Config(), []
    logger.debug("Loading configuration from: %s", config_path)
    return load_config(config_path)


def build_request(args: argparse.Namespace, config: Config) -> BackupRequest:
    """Merge command line options over configuration values."""
    hana = config.hana
    password = args.password or ""
    password_secret = args.password_secret or ""
    userstore_key = args.hdbuserstore_key or ""
    # Credentials given on the command line replace the configured ones.
    if not (password or password_secret or userstore_key):
        password_secret = hana.password_secret
        userstore_key = hana.hdbuserstore_key

    send_status = args.send_status_to_monitoring
    if send_status is None:
        send_status = config.monitoring.enabled

    return BackupRequest(
        sid=args.sid or "",
        host=args.host or hana.host,
        port=args.port or hana.port,
        instance_id=args.instance_id or hana.instance_id,
        user=args.hana_db_user or hana.user,
        password=password,
        password_secret=password_secret,
        userstore_key=userstore_key,
        disks=tuple(args.source_disks or ()),
        zone=args.source_disk_zone or config.gce.zone,
        project=args.project or config.gce.project,
        snapshot_name=args.snapshot_name or "",
        snapshot_type=args.snapshot_type or "STANDARD",
        description=args.snapshot_description or "",
        storage_location=args.storage_location or "",
        labels=tuple(args.labels or ()),
        source_disk_key_file=args.source_disk_key_file or "",
        consistency_group=args.consistency_group or "",
        data_path=args.data_path or hana.data_path,
        freeze_filesystem=args.freeze_filesystem,
        group_snapshot=args.group_snapshot,
        skip_db_snapshot=args.skip_db_snapshot,
        confirm_after_create=args.confirm_after_create,
        abandon_prepared=args.abandon_prepared,
        send_status_to_monitoring=send_status,
    )


def build_orchestrator(
    instance: InstanceProperties, config: Config, request: BackupRequest
) -> BackupOrchestrator:
    """Wire the production collaborators."""
    compute = GceCompute(
        api_policy=config.polling.api.policy(),
        api_version=config.gce.compute_api_version,
    )
    creation = config.polling.creation.policy()
    upload = config.polling.upload.policy()
    reporter = StatusReporter(
        CloudMonitoringSender(),
        instance,
        enabled=request.send_status_to_monitoring,
        metric_prefix=config.monitoring.metric_prefix,
        policy=config.polling.api.policy(),
    )
    freeze_command = config.freeze.command
    return BackupOrchestrator(
        instance=instance,
        connect=HanaConnector(SecretManagerReader()).connect,
        disk_client=GceDiskSnapshotClient(compute, creation, upload),
        group_client=GceGroupSnapshotClient(compute, creation, upload),
        inventory=GceDiskInventory(compute),
        inspector=DataVolumeInspector(),
        freezer_factory=lambda mount_point: FilesystemFreezeController(
            mount_point, freeze_command
        ),
        reporter=reporter,
        lock_dir=config.global_config.lock_dir,
        lock_timeout=config.global_config.lock_timeout,
    )


@contextlib.contextmanager
def cancel_on_signals(deadline: Deadline) -> Iterator[None]:
    """Turn SIGINT and SIGTERM into a cancellation of deadline."""

    def handler(signum, frame):
        name = signal.Signals(signum).name
        logger.warning("Received %s, cancelling backup", name)
        deadline.cancel(f"received {name}")

    previous = {
        signum: signal.signal(signum, handler)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)
