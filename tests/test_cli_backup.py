"""Tests for the backup command."""

import signal
from unittest import mock

import pytest

from hana_disk_backup.cli import backup
from hana_disk_backup.cli.dispatcher import create_subcommand_parser, main
from hana_disk_backup.config import Config, load_config
from hana_disk_backup.core.polling import Deadline
from hana_disk_backup.errors import PreconditionError
from hana_disk_backup.models import BackupOutcome


def parse(*argv):
    return create_subcommand_parser().parse_args(list(argv))


@pytest.fixture
def no_config(tmp_path, monkeypatch):
    """Make sure no real configuration file is picked up."""
    monkeypatch.setattr(
        "hana_disk_backup.config.loader.CONFIG_PATHS", [tmp_path / "missing.toml"]
    )


@pytest.fixture
def patched(instance, no_config):
    """Patch out logging setup, the metadata server and the orchestrator."""
    with (
        mock.patch.object(backup, "create_logger"),
        mock.patch.object(backup.platform, "system", return_value="Linux"),
        mock.patch.object(backup, "MetadataReader") as reader,
        mock.patch.object(backup, "build_orchestrator") as build,
    ):
        reader.return_value.read.return_value = instance
        yield reader, build


BACKUP_ARGS = (
    "backup",
    "--sid",
    "ABC",
    "--instance-id",
    "00",
    "--hana-db-user",
    "SYSTEM",
    "--password",
    "secret",
    "--source-disk",
    "d1",
)


class TestBuildRequest:
    """Tests for merging command line options over configuration."""

    def test_command_line_only(self):
        args = parse(*BACKUP_ARGS, "--label", "env=prod", "--group-snapshot")

        request = backup.build_request(args, Config())

        assert request.sid == "ABC"
        assert request.user == "SYSTEM"
        assert request.password == "secret"
        assert request.disks == ("d1",)
        assert request.labels == (("env", "prod"),)
        assert request.group_snapshot is True
        assert request.snapshot_type == "STANDARD"
        assert request.send_status_to_monitoring is True

    def test_config_values_fill_gaps(self, config_file):
        config, _ = load_config(config_file)
        args = parse("backup", "--sid", "ABC")

        request = backup.build_request(args, config)

        assert request.host == "hana-host"
        assert request.user == "BACKUP"
        assert request.instance_id == "10"
        assert request.password_secret == "hana-password"
        assert request.data_path == "/hana/data/ABC"
        assert request.project == "test-project"
        assert request.send_status_to_monitoring is False

    def test_command_line_credentials_replace_config(self, config_file):
        """Test that a credential on the command line drops the configured one."""
        config, _ = load_config(config_file)
        args = parse("backup", "--sid", "ABC", "--hdbuserstore-key", "KEY")

        request = backup.build_request(args, config)

        assert request.userstore_key == "KEY"
        assert request.password_secret == ""

    def test_monitoring_flag_overrides_config(self, config_file):
        config, _ = load_config(config_file)
        args = parse("backup", "--sid", "ABC", "--send-status-to-monitoring")

        assert backup.build_request(args, config).send_status_to_monitoring is True


class TestExecuteBackup:
    """Tests for execute_backup."""

    def test_success(self, patched, capsys):
        _, build = patched
        build.return_value.run.return_value = BackupOutcome(
            success=True,
            sid="ABC",
            snapshot_names=("snap",),
            disks=("d1",),
            total_seconds=1.0,
            message="HANA backup and disk snapshot creation successful.",
        )

        assert main(list(BACKUP_ARGS)) == 0

        assert "SUCCESS: HANA backup" in capsys.readouterr().out
        request, deadline = build.return_value.run.call_args.args
        assert request.sid == "ABC"
        assert isinstance(deadline, Deadline)

    def test_failed_outcome(self, patched, capsys):
        _, build = patched
        build.return_value.run.return_value = BackupOutcome(
            success=False,
            sid="ABC",
            snapshot_names=(),
            disks=("d1",),
            total_seconds=1.0,
            message="backup of ABC failed: boom",
            exit_code=1,
        )

        assert main(list(BACKUP_ARGS)) == 1
        assert "ERROR: backup of ABC failed: boom" in capsys.readouterr().out

    def test_usage_error_before_metadata(self, patched, capsys):
        """Test that invalid parameters fail before any remote call."""
        reader, build = patched

        assert main(["backup", "--sid", "ABC", "--source-disk", "d1"]) == 2

        reader.assert_not_called()
        build.assert_not_called()
        assert "ERROR:" in capsys.readouterr().out

    def test_metadata_failure(self, patched, capsys):
        reader, build = patched
        reader.return_value.read.side_effect = PreconditionError(
            "metadata server not reachable"
        )

        assert main(list(BACKUP_ARGS)) == 1
        build.assert_not_called()

    def test_config_error(self, patched, tmp_path, capsys):
        missing = tmp_path / "nope.toml"

        assert main(["-c", str(missing), *BACKUP_ARGS]) == 2
        assert "configuration error" in capsys.readouterr().out

    def test_unexpected_error(self, patched, capsys):
        _, build = patched
        build.return_value.run.side_effect = RuntimeError("bug")

        assert main(list(BACKUP_ARGS)) == 1
        assert "backup failed: bug" in capsys.readouterr().out


class TestBuildOrchestrator:
    def test_wires_configuration(self, instance, request_factory, tmp_path):
        config = Config()
        config.global_config.lock_dir = str(tmp_path)
        config.global_config.lock_timeout = 3.0

        orchestrator = backup.build_orchestrator(instance, config, request_factory())

        assert orchestrator.instance == instance
        assert orchestrator.lock_dir == str(tmp_path)
        assert orchestrator.lock_timeout == 3.0


class TestCancelOnSignals:
    """Tests for cancel_on_signals."""

    def test_sigterm_cancels_deadline(self):
        deadline = Deadline()
        previous = signal.getsignal(signal.SIGTERM)

        with backup.cancel_on_signals(deadline):
            signal.raise_signal(signal.SIGTERM)

        assert deadline.cancelled
        assert deadline.reason == "received SIGTERM"
        assert signal.getsignal(signal.SIGTERM) == previous
