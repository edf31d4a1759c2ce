"""CLI dispatcher.

Builds the subcommand parser and routes parsed arguments to the command
handlers.
"""

import argparse
import sys
from typing import Callable

from .common import add_verbosity_args, parse_label, positive_float


def _add_backup_parser(subparsers) -> None:
    backup_parser = subparsers.add_parser(
        "backup",
        help="Back up a HANA database with disk snapshots",
        description=(
            "Prepare a HANA data snapshot, snapshot the data disk(s) and "
            "confirm or abandon the data snapshot depending on the result"
        ),
    )

    hana = backup_parser.add_argument_group("HANA database")
    hana.add_argument("--sid", metavar="SID", help="HANA system id")
    hana.add_argument("--host", metavar="HOST", help="HANA host (default: localhost)")
    hana.add_argument("--port", metavar="PORT", help="SQL port of the system database")
    hana.add_argument(
        "--instance-id",
        metavar="NN",
        help="HANA instance number, the port defaults to 3<NN>13",
    )
    hana.add_argument("--hana-db-user", metavar="USER", help="HANA database user")
    hana.add_argument("--password", metavar="PASSWORD", help="HANA password")
    hana.add_argument(
        "--password-secret",
        metavar="SECRET",
        help="Secret Manager secret holding the HANA password",
    )
    hana.add_argument(
        "--hdbuserstore-key",
        metavar="KEY",
        help="hdbuserstore key, instead of user and password",
    )
    hana.add_argument(
        "--data-path",
        metavar="PATH",
        help="HANA data volume path (default: basepath_datavolumes of global.ini)",
    )
    hana.add_argument(
        "--abandon-prepared",
        action="store_true",
        help="Abandon a data snapshot left prepared by an earlier run",
    )
    hana.add_argument(
        "--skip-db-snapshot-for-change-disk-type",
        dest="skip_db_snapshot",
        action="store_true",
        help="Snapshot the disk without a HANA data snapshot, for disk type changes",
    )
    hana.add_argument(
        "--confirm-data-snapshot-after-create",
        dest="confirm_after_create",
        action="store_true",
        help="Confirm the HANA data snapshot once the disk snapshot exists, "
        "before its upload completes",
    )

    disks = backup_parser.add_argument_group("Disks and snapshots")
    disks.add_argument(
        "--source-disk",
        dest="source_disks",
        metavar="DISK",
        action="append",
        help="Disk to snapshot (repeatable, default: disks of the HANA data volume)",
    )
    disks.add_argument("--source-disk-zone", metavar="ZONE", help="Zone of the disks")
    disks.add_argument("--project", metavar="PROJECT", help="Project of the disks")
    disks.add_argument("--snapshot-name", metavar="NAME", help="Snapshot name")
    disks.add_argument(
        "--snapshot-type",
        metavar="TYPE",
        choices=["STANDARD", "ARCHIVE"],
        type=str.upper,
        help="STANDARD or ARCHIVE (default: STANDARD)",
    )
    disks.add_argument(
        "--snapshot-description", metavar="TEXT", help="Snapshot description"
    )
    disks.add_argument(
        "--storage-location", metavar="LOCATION", help="Snapshot storage location"
    )
    disks.add_argument(
        "--label",
        dest="labels",
        metavar="KEY=VALUE",
        action="append",
        type=parse_label,
        help="Snapshot label (repeatable)",
    )
    disks.add_argument(
        "--source-disk-key-file",
        metavar="FILE",
        help="JSON key file of customer-supplied encryption keys",
    )
    disks.add_argument(
        "--group-snapshot",
        action="store_true",
        help="Snapshot all disks of a consistency group together",
    )
    disks.add_argument(
        "--consistency-group",
        metavar="POLICY",
        help="Consistency group resource policy of the disks",
    )
    disks.add_argument(
        "--freeze-file-system",
        dest="freeze_filesystem",
        action="store_true",
        help="Freeze the data filesystem while the snapshot is taken",
    )

    run = backup_parser.add_argument_group("Run control")
    run.add_argument(
        "--send-status-to-monitoring",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Send status and duration metrics to Cloud Monitoring (default: config)",
    )
    run.add_argument(
        "--timeout",
        type=positive_float,
        metavar="SECONDS",
        help="Give up waiting for the snapshot after this many seconds",
    )


def create_subcommand_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="hana-disk-backup",
        description="Application consistent SAP HANA backups with disk snapshots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    add_verbosity_args(parser)

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands (use 'command --help' for details)",
    )

    _add_backup_parser(subparsers)

    # config command with subcommands
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Validate or initialize configuration",
    )
    config_subs = config_parser.add_subparsers(dest="config_action")

    config_subs.add_parser(
        "validate",
        help="Validate configuration file",
    )

    init_parser = config_subs.add_parser(
        "init",
        help="Generate example configuration",
    )
    init_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Output file (default: stdout)",
    )

    return parser


def cmd_backup(args: argparse.Namespace) -> int:
    """Execute backup command."""
    from .backup import execute_backup

    return execute_backup(args)


def cmd_config(args: argparse.Namespace) -> int:
    """Execute config command."""
    from .config_cmd import execute_config

    return execute_config(args)


def run_subcommand(args: argparse.Namespace) -> int:
    """Run the specified subcommand.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    from .. import __version__
    from ..errors import EXIT_USAGE

    if args.version:
        print(f"hana-disk-backup {__version__}")
        return 0

    if not args.command:
        print("No command specified. Use --help for usage information.")
        return EXIT_USAGE

    # Route to appropriate command handler
    handlers: dict[str, Callable] = {
        "backup": cmd_backup,
        "config": cmd_config,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return EXIT_USAGE


def main(argv: list[str] | None = None) -> int:
    """Main entry point for hana-disk-backup CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = create_subcommand_parser()
    args = parser.parse_args(argv)

    return run_subcommand(args)
