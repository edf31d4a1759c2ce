"""Backup status and duration telemetry.

Reporting is best-effort: a failure to send a metric is logged and never
changes the outcome of the backup.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from .. import COMMAND_NAME, METRIC_PREFIX
from ..models import BackupOutcome, InstanceProperties
from .gcp import build_service
from .polling import BackoffPolicy, call_with_retry

logger = logging.getLogger(__name__)


class MetricSender(Protocol):
    def send(self, project: str, time_series: list[dict[str, Any]]) -> None: ...


class CloudMonitoringSender:
    """Writes time series with the Cloud Monitoring v3 API."""

    def __init__(self, service=None) -> None:
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = build_service("monitoring", "v3")
        return self._service

    def send(self, project: str, time_series: list[dict[str, Any]]) -> None:
        self.service.projects().timeSeries().create(
            name=f"projects/{project}", body={"timeSeries": time_series}
        ).execute()


def _now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class StatusReporter:
    """Emits the status, total time and freeze time of a backup run."""

    def __init__(
        self,
        sender: MetricSender,
        instance: InstanceProperties,
        enabled: bool = True,
        metric_prefix: str = METRIC_PREFIX,
        policy: Optional[BackoffPolicy] = None,
    ) -> None:
        self.sender = sender
        self.instance = instance
        self.enabled = enabled
        self.metric_type = metric_prefix + COMMAND_NAME
        self.policy = policy or BackoffPolicy(
            initial_interval=2.0, multiplier=2.0, max_interval=30.0, max_attempts=3
        )
        self.failures = 0

    def _series(self, metric_type: str, labels: dict[str, str], value: dict[str, Any]):
        return {
            "metric": {"type": metric_type, "labels": labels},
            "resource": {
                "type": "gce_instance",
                "labels": {
                    "project_id": self.instance.project,
                    "zone": self.instance.zone,
                    "instance_id": self.instance.instance_id,
                },
            },
            "points": [{"interval": {"endTime": _now()}, "value": value}],
        }

    def _send(self, series: list[dict[str, Any]], what: str) -> bool:
        if not self.enabled:
            return False
        try:
            call_with_retry(
                lambda: self.sender.send(self.instance.project, series),
                self.policy,
                lambda e: isinstance(e, Exception),
            )
        except Exception as e:  # pylint: disable=broad-except
            self.failures += 1
            logger.error("Error sending %s to cloud monitoring: %s", what, e)
            return False
        logger.debug("Sent %s to cloud monitoring", what)
        return True

    @staticmethod
    def labels(sid: str, disks, snapshot_names) -> dict[str, str]:
        return {
            "sid": sid,
            "disk": ",".join(disks),
            "snapshot_name": ",".join(snapshot_names),
        }

    def report_freeze_duration(self, labels: dict[str, str], seconds: float) -> bool:
        """Send how long the filesystem stayed frozen."""
        logger.info("Filesystem was frozen for %.3f seconds", seconds)
        return self._send(
            [self._series(self.metric_type + "/freezetime", labels, {"doubleValue": seconds})],
            "freeze time",
        )

    def report_outcome(self, outcome: BackupOutcome) -> bool:
        """Send the final status and the total workflow duration."""
        labels = self.labels(outcome.sid, outcome.disks, outcome.snapshot_names)
        logger.info(
            "Sending backup status to cloud monitoring: success=%s", outcome.success
        )
        return self._send(
            [
                self._series(self.metric_type, labels, {"boolValue": outcome.success}),
                self._series(
                    self.metric_type + "/totaltime",
                    labels,
                    {"doubleValue": outcome.total_seconds},
                ),
            ],
            "backup status",
        )
