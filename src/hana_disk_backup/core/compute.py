"""Compute Engine disk snapshots.

Snapshot creation returns an operation immediately; the snapshot then
materializes (CREATING) and uploads (UPLOADING) asynchronously. Both phases
are polled separately with their own retry budgets, and every API call
retries transient HTTP errors on a third, shorter budget.
"""

from __future__ import annotations

import hashlib
import logging
import re
import socket
from dataclasses import replace
from typing import Any, Optional, Protocol, Sequence

from googleapiclient.errors import HttpError

from ..errors import ExternalServiceError, PreconditionError
from ..models import (
    COMPUTE_BASE_URI,
    DiskDescriptor,
    GroupHandle,
    SnapshotHandle,
    SnapshotSpec,
)
from .gcp import build_service
from .polling import BackoffPolicy, Deadline, PollPending, call_with_retry, poll

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
FAILED_STATUSES = frozenset({"FAILED", "DELETING", "UNAVAILABLE"})
MAX_NAME_LENGTH = 63


class DiskSnapshotClient(Protocol):
    """Single disk snapshots."""

    def create(
        self,
        disk: DiskDescriptor,
        spec: SnapshotSpec,
        source_key: Optional[dict[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> SnapshotHandle: ...

    def wait_for_creation(self, handle: SnapshotHandle, deadline: Deadline) -> None: ...

    def wait_for_upload(self, handle: SnapshotHandle, deadline: Deadline) -> None: ...


class GroupSnapshotClient(Protocol):
    """Consistency group snapshots over several disks."""

    def create(
        self,
        disks: Sequence[DiskDescriptor],
        spec: SnapshotSpec,
        consistency_group: str,
        source_keys: Optional[dict[str, dict[str, str]]] = None,
        deadline: Optional[Deadline] = None,
    ) -> GroupHandle: ...

    def wait_for_creation(self, handle: GroupHandle, deadline: Deadline) -> GroupHandle: ...

    def wait_for_upload(self, handle: GroupHandle, deadline: Deadline) -> GroupHandle: ...


class DiskInventory(Protocol):
    """Read-only view of disks and their attachments."""

    def describe(self, project: str, zone: str, disk: str) -> DiskDescriptor: ...

    def attached_disks(
        self, project: str, zone: str, instance: str
    ) -> list[DiskDescriptor]: ...

    def is_attached(self, disk: DiskDescriptor, instance: str) -> bool: ...


def is_transient(error: BaseException) -> bool:
    """Whether a failed API call is worth repeating."""
    if isinstance(error, HttpError):
        return error.resp.status in TRANSIENT_HTTP_STATUSES
    return isinstance(error, (socket.timeout, ConnectionError, TimeoutError))


def resource_name(url_or_name: str) -> str:
    """Last path segment of a resource URL."""
    return url_or_name.rstrip("/").rsplit("/", 1)[-1]


def member_snapshot_name(group_name: str, disk_name: str) -> str:
    """Name of the standard snapshot made from one group member."""
    name = f"{group_name}-{disk_name}".lower()
    name = re.sub(r"[^a-z0-9-]", "-", name)
    if len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode()).hexdigest()[:8]
    return f"{name[: MAX_NAME_LENGTH - 9].rstrip('-')}-{digest}"


class GceCompute:
    """Thin wrapper around the compute discovery client."""

    def __init__(
        self,
        service=None,
        api_policy: Optional[BackoffPolicy] = None,
        api_version: str = "v1",
    ) -> None:
        self._service = service
        self.api_version = api_version
        self.api_policy = api_policy or BackoffPolicy(
            initial_interval=1.0, multiplier=2.0, max_interval=10.0, max_attempts=4
        )

    @property
    def service(self):
        if self._service is None:
            self._service = build_service("compute", self.api_version)
        return self._service

    def execute(
        self, request, what: str, deadline: Optional[Deadline] = None
    ) -> dict[str, Any]:
        """Execute a prepared API request, retrying transient errors.

        Args:
            request: Prepared discovery request.
            what: Description used in error messages.
            deadline: When given, a cancellation stops the retries and
                raises WorkflowCancelled.
        """
        try:
            return call_with_retry(request.execute, self.api_policy, is_transient, deadline)
        except HttpError as e:
            _check(deadline, what)
            raise ExternalServiceError(f"{what} failed: {e}") from e
        except (socket.timeout, ConnectionError, TimeoutError) as e:
            _check(deadline, what)
            raise ExternalServiceError(f"{what} failed: {e}") from e

    def get_or_none(
        self, request, what: str, deadline: Optional[Deadline] = None
    ) -> Optional[dict[str, Any]]:
        """Like execute, but a missing resource yields None."""
        try:
            return call_with_retry(request.execute, self.api_policy, is_transient, deadline)
        except HttpError as e:
            if e.resp.status == 404:
                return None
            _check(deadline, what)
            raise ExternalServiceError(f"{what} failed: {e}") from e
        except (socket.timeout, ConnectionError, TimeoutError) as e:
            _check(deadline, what)
            raise ExternalServiceError(f"{what} failed: {e}") from e


def _check(deadline: Optional[Deadline], what: str) -> None:
    if deadline is not None:
        deadline.check(what)


def _raise_on_operation_error(operation: dict[str, Any], what: str) -> None:
    errors = operation.get("error", {}).get("errors", [])
    if errors:
        detail = "; ".join(e.get("message", e.get("code", "")) for e in errors)
        raise ExternalServiceError(f"{what} failed: {detail}")


class GceDiskSnapshotClient:
    """DiskSnapshotClient backed by the compute API."""

    def __init__(
        self,
        compute: GceCompute,
        creation_policy: BackoffPolicy,
        upload_policy: BackoffPolicy,
    ) -> None:
        self.compute = compute
        self.creation_policy = creation_policy
        self.upload_policy = upload_policy

    def create(
        self,
        disk: DiskDescriptor,
        spec: SnapshotSpec,
        source_key: Optional[dict[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> SnapshotHandle:
        logger.info(
            "Creating disk snapshot %s of disk %s in %s", spec.name, disk.name, disk.zone
        )
        body = spec.body()
        if source_key:
            body["sourceDiskEncryptionKey"] = dict(source_key)
            body["snapshotEncryptionKey"] = dict(source_key)
        request = self.compute.service.disks().createSnapshot(
            project=disk.project, zone=disk.zone, disk=disk.name, body=body
        )
        operation = self.compute.execute(request, f"create snapshot {spec.name}", deadline)
        _raise_on_operation_error(operation, f"create snapshot {spec.name}")
        return SnapshotHandle(
            name=spec.name,
            source_disk=disk.name,
            operation=operation.get("name", ""),
            zone=disk.zone,
            project=disk.project,
        )

    def _snapshot_status(
        self, handle: SnapshotHandle, deadline: Optional[Deadline] = None
    ) -> Optional[str]:
        snapshot = self.compute.get_or_none(
            self.compute.service.snapshots().get(
                project=handle.project, snapshot=handle.name
            ),
            f"get snapshot {handle.name}",
            deadline,
        )
        return None if snapshot is None else snapshot.get("status")

    def wait_for_creation(self, handle: SnapshotHandle, deadline: Deadline) -> None:
        def check() -> str:
            status = self._snapshot_status(handle, deadline)
            logger.info("Snapshot %s creation status: %s", handle.name, status)
            if status is None or status == "CREATING":
                raise PollPending(f"snapshot {handle.name} is {status or 'not visible yet'}")
            if status in FAILED_STATUSES:
                raise ExternalServiceError(f"snapshot {handle.name} is {status}")
            return status

        poll(check, self.creation_policy, deadline, f"creation of snapshot {handle.name}")

    def wait_for_upload(self, handle: SnapshotHandle, deadline: Deadline) -> None:
        def check() -> None:
            if handle.operation:
                operation = self.compute.execute(
                    self.compute.service.zoneOperations().get(
                        project=handle.project, zone=handle.zone, operation=handle.operation
                    ),
                    f"get operation {handle.operation}",
                    deadline,
                )
                logger.info(
                    "Operation %s: %s (%s%%)",
                    handle.operation,
                    operation.get("status"),
                    operation.get("progress", 0),
                )
                if operation.get("status") != "DONE":
                    raise PollPending(f"operation {handle.operation} is not DONE yet")
                _raise_on_operation_error(operation, f"snapshot {handle.name}")
            status = self._snapshot_status(handle, deadline)
            logger.info("Snapshot %s upload status: %s", handle.name, status)
            if status == "READY":
                return
            if status in FAILED_STATUSES:
                raise ExternalServiceError(f"snapshot {handle.name} is {status}")
            raise PollPending(f"snapshot {handle.name} not READY yet, status: {status}")

        poll(check, self.upload_policy, deadline, f"upload of snapshot {handle.name}")


class GceGroupSnapshotClient:
    """GroupSnapshotClient backed by instant snapshot groups.

    One insert call snapshots every disk of a consistency group. The member
    instant snapshots are then converted into standard snapshots, which is
    the upload phase of the group. The handle carries everything the
    conversion needs, so any client instance can finish a group.
    """

    def __init__(
        self,
        compute: GceCompute,
        creation_policy: BackoffPolicy,
        upload_policy: BackoffPolicy,
    ) -> None:
        self.compute = compute
        self.creation_policy = creation_policy
        self.upload_policy = upload_policy

    def create(
        self,
        disks: Sequence[DiskDescriptor],
        spec: SnapshotSpec,
        consistency_group: str,
        source_keys: Optional[dict[str, dict[str, str]]] = None,
        deadline: Optional[Deadline] = None,
    ) -> GroupHandle:
        """Snapshot every disk of a consistency group in one call.

        Args:
            disks: Group members, all in one project and zone.
            spec: Settings applied to each member's standard snapshot.
            consistency_group: Resource policy name or URL.
            source_keys: Encryption keys by disk name, for encrypted members.
            deadline: Cancellation for the insert call's retries.

        Raises:
            PreconditionError: A disk is outside the group or its zone.
        """
        if not disks:
            raise PreconditionError("group snapshot needs at least one disk")
        source_keys = source_keys or {}
        project, zone = disks[0].project, disks[0].zone
        group_policy = resource_name(consistency_group)
        for disk in disks:
            if (disk.project, disk.zone) != (project, zone):
                raise PreconditionError(
                    f"disk {disk.name} is not in {project}/{zone} with the other group members"
                )
            if group_policy not in {resource_name(p) for p in disk.resource_policies}:
                raise PreconditionError(
                    f"disk {disk.name} is not part of consistency group {group_policy}"
                )

        region = zone.rsplit("-", 1)[0]
        group_url = consistency_group
        if "/" not in consistency_group:
            group_url = (
                f"{COMPUTE_BASE_URI}/projects/{project}/regions/{region}"
                f"/resourcePolicies/{consistency_group}"
            )
        logger.info(
            "Creating group snapshot %s of %s",
            spec.name,
            ", ".join(d.name for d in disks),
        )
        body = {
            "name": spec.name,
            "description": spec.description,
            "sourceConsistencyGroup": group_url,
        }
        operation = self.compute.execute(
            self.compute.service.instantSnapshotGroups().insert(
                project=project, zone=zone, body=body
            ),
            f"create group snapshot {spec.name}",
            deadline,
        )
        _raise_on_operation_error(operation, f"create group snapshot {spec.name}")
        members = tuple(
            SnapshotHandle(
                name=member_snapshot_name(spec.name, d.name),
                source_disk=d.name,
                zone=zone,
                project=project,
                encryption_key=tuple(sorted(source_keys.get(d.name, {}).items())),
            )
            for d in disks
        )
        return GroupHandle(
            name=spec.name,
            consistency_group=group_policy,
            operation=operation.get("name", ""),
            zone=zone,
            project=project,
            members=members,
            spec=spec,
        )

    def _instant_snapshots(
        self, handle: GroupHandle, deadline: Optional[Deadline] = None
    ) -> list[dict[str, Any]]:
        group_url = (
            f"{COMPUTE_BASE_URI}/projects/{handle.project}/zones/{handle.zone}"
            f"/instantSnapshotGroups/{handle.name}"
        )
        response = self.compute.execute(
            self.compute.service.instantSnapshots().list(
                project=handle.project,
                zone=handle.zone,
                filter=f'sourceInstantSnapshotGroup = "{group_url}"',
            ),
            f"list instant snapshots of {handle.name}",
            deadline,
        )
        return response.get("items", [])

    def wait_for_creation(self, handle: GroupHandle, deadline: Deadline) -> GroupHandle:
        expected = handle.member_disks

        def check() -> GroupHandle:
            operation = self.compute.execute(
                self.compute.service.zoneOperations().get(
                    project=handle.project, zone=handle.zone, operation=handle.operation
                ),
                f"get operation {handle.operation}",
                deadline,
            )
            if operation.get("status") != "DONE":
                raise PollPending(f"group operation {handle.operation} is not DONE yet")
            _raise_on_operation_error(operation, f"group snapshot {handle.name}")

            by_disk = {
                resource_name(item.get("sourceDisk", "")): item
                for item in self._instant_snapshots(handle, deadline)
            }
            if set(by_disk) != expected:
                raise ExternalServiceError(
                    f"group snapshot {handle.name} members {sorted(by_disk)} "
                    f"do not match disks {sorted(expected)}"
                )
            pending = []
            for disk, item in sorted(by_disk.items()):
                status = item.get("status")
                if status in FAILED_STATUSES:
                    raise ExternalServiceError(
                        f"member {item.get('name')} of group {handle.name} is {status}"
                    )
                if status != "READY":
                    pending.append(disk)
            if pending:
                raise PollPending(f"group members not ready: {', '.join(pending)}")
            members = tuple(
                replace(m, source_instant_snapshot=by_disk[m.source_disk]["name"])
                for m in handle.members
            )
            return replace(handle, members=members)

        return poll(
            check, self.creation_policy, deadline, f"creation of group snapshot {handle.name}"
        )

    def wait_for_upload(self, handle: GroupHandle, deadline: Deadline) -> GroupHandle:
        if handle.spec is None:
            raise ExternalServiceError(f"group snapshot {handle.name} has no snapshot settings")
        members = []
        for member in handle.members:
            if not member.source_instant_snapshot:
                raise ExternalServiceError(
                    f"member {member.name} of group {handle.name} has no instant snapshot"
                )
            if not member.operation:
                member = self._convert(member, handle.spec, deadline)
            members.append(member)
        handle = replace(handle, members=tuple(members))

        def check() -> GroupHandle:
            pending = []
            for member in handle.members:
                snapshot = self.compute.get_or_none(
                    self.compute.service.snapshots().get(
                        project=member.project, snapshot=member.name
                    ),
                    f"get snapshot {member.name}",
                    deadline,
                )
                status = None if snapshot is None else snapshot.get("status")
                if status in FAILED_STATUSES:
                    raise ExternalServiceError(
                        f"member {member.name} of group {handle.name} is {status}"
                    )
                if status != "READY":
                    pending.append(f"{member.name}={status}")
            if pending:
                raise PollPending(f"group members not uploaded: {', '.join(pending)}")
            return handle

        return poll(
            check, self.upload_policy, deadline, f"upload of group snapshot {handle.name}"
        )

    def _convert(
        self,
        member: SnapshotHandle,
        spec: SnapshotSpec,
        deadline: Optional[Deadline] = None,
    ) -> SnapshotHandle:
        body = replace(spec, name=member.name).body()
        body["sourceInstantSnapshot"] = (
            f"projects/{member.project}/zones/{member.zone}"
            f"/instantSnapshots/{member.source_instant_snapshot}"
        )
        if member.encryption_key:
            key = dict(member.encryption_key)
            body["sourceInstantSnapshotEncryptionKey"] = key
            body["snapshotEncryptionKey"] = dict(key)
        logger.info(
            "Converting instant snapshot %s to snapshot %s",
            member.source_instant_snapshot,
            member.name,
        )
        operation = self.compute.execute(
            self.compute.service.snapshots().insert(project=member.project, body=body),
            f"create snapshot {member.name}",
            deadline,
        )
        _raise_on_operation_error(operation, f"create snapshot {member.name}")
        return replace(member, operation=operation.get("name", ""))


class GceDiskInventory:
    """DiskInventory backed by the compute API."""

    def __init__(self, compute: GceCompute) -> None:
        self.compute = compute

    def describe(self, project: str, zone: str, disk: str) -> DiskDescriptor:
        data = self.compute.execute(
            self.compute.service.disks().get(project=project, zone=zone, disk=disk),
            f"get disk {disk}",
        )
        key = data.get("diskEncryptionKey", {})
        return DiskDescriptor(
            name=data.get("name", disk),
            zone=zone,
            project=project,
            encryption_key=key.get("sha256") or key.get("kmsKeyName"),
            provisioned_iops=_optional_int(data.get("provisionedIops")),
            provisioned_throughput=_optional_int(data.get("provisionedThroughput")),
            resource_policies=tuple(data.get("resourcePolicies", [])),
        )

    def _instance(self, project: str, zone: str, instance: str) -> dict[str, Any]:
        return self.compute.execute(
            self.compute.service.instances().get(
                project=project, zone=zone, instance=instance
            ),
            f"get instance {instance}",
        )

    def attached_disks(
        self, project: str, zone: str, instance: str
    ) -> list[DiskDescriptor]:
        disks = []
        for attached in self._instance(project, zone, instance).get("disks", []):
            name = resource_name(attached.get("source", ""))
            if not name:
                continue
            disk = self.describe(project, zone, name)
            disks.append(replace(disk, device_name=attached.get("deviceName", "")))
        return disks

    def is_attached(self, disk: DiskDescriptor, instance: str) -> bool:
        attached = self._instance(disk.project, disk.zone, instance).get("disks", [])
        return any(resource_name(d.get("source", "")) == disk.name for d in attached)


def _optional_int(value) -> Optional[int]:
    return None if value in (None, "") else int(value)
