"""Tests for status and duration reporting."""

from unittest import mock

from hana_disk_backup import COMMAND_NAME, METRIC_PREFIX
from hana_disk_backup.core.monitoring import CloudMonitoringSender, StatusReporter
from hana_disk_backup.models import BackupOutcome

METRIC = METRIC_PREFIX + COMMAND_NAME


def outcome(success=True):
    return BackupOutcome(
        success=success,
        sid="ABC",
        snapshot_names=("snap-1", "snap-2"),
        disks=("d1", "d2"),
        total_seconds=42.5,
    )


class TestStatusReporter:
    """Tests for StatusReporter."""

    def test_report_outcome(self, instance, no_backoff):
        sender = mock.MagicMock()
        reporter = StatusReporter(sender, instance, policy=no_backoff)

        assert reporter.report_outcome(outcome())

        project, series = sender.send.call_args.args
        assert project == "test-project"
        assert [s["metric"]["type"] for s in series] == [METRIC, METRIC + "/totaltime"]
        assert series[0]["metric"]["labels"] == {
            "sid": "ABC",
            "disk": "d1,d2",
            "snapshot_name": "snap-1,snap-2",
        }
        assert series[0]["points"][0]["value"] == {"boolValue": True}
        assert series[1]["points"][0]["value"] == {"doubleValue": 42.5}
        assert series[0]["resource"] == {
            "type": "gce_instance",
            "labels": {
                "project_id": "test-project",
                "zone": "us-central1-a",
                "instance_id": "1234567890",
            },
        }

    def test_report_freeze_duration(self, instance, no_backoff):
        sender = mock.MagicMock()
        reporter = StatusReporter(sender, instance, policy=no_backoff)

        reporter.report_freeze_duration({"sid": "ABC"}, 1.25)

        series = sender.send.call_args.args[1]
        assert series[0]["metric"]["type"] == METRIC + "/freezetime"
        assert series[0]["points"][0]["value"] == {"doubleValue": 1.25}

    def test_disabled(self, instance):
        sender = mock.MagicMock()
        reporter = StatusReporter(sender, instance, enabled=False)

        assert not reporter.report_outcome(outcome(False))
        sender.send.assert_not_called()

    def test_send_failure_is_swallowed(self, instance, no_backoff):
        """Test that a failing sender never raises into the workflow."""
        sender = mock.MagicMock()
        sender.send.side_effect = ConnectionError("unreachable")
        reporter = StatusReporter(sender, instance, policy=no_backoff)

        assert not reporter.report_outcome(outcome())
        assert reporter.failures == 1
        assert sender.send.call_count == no_backoff.max_attempts

    def test_custom_prefix(self, instance, no_backoff):
        sender = mock.MagicMock()
        reporter = StatusReporter(
            sender, instance, metric_prefix="custom.googleapis.com/", policy=no_backoff
        )

        reporter.report_outcome(outcome())

        series = sender.send.call_args.args[1]
        assert series[0]["metric"]["type"] == "custom.googleapis.com/hanadiskbackup"


class TestCloudMonitoringSender:
    def test_send(self):
        service = mock.MagicMock()
        CloudMonitoringSender(service).send("p", [{"metric": {}}])

        create = service.projects.return_value.timeSeries.return_value.create
        create.assert_called_once_with(
            name="projects/p", body={"timeSeries": [{"metric": {}}]}
        )
        create.return_value.execute.assert_called_once()
