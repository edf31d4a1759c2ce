"""hana-disk-backup: hana_disk_backup/__init__.py."""

__version__ = "0.3.0"

METRIC_PREFIX = "workload.googleapis.com/sap/agent/"
COMMAND_NAME = "hanadiskbackup"
