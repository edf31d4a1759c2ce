"""Command line interface for hana-disk-backup.

Subcommand-based CLI:
    hana-disk-backup backup   - Run one HANA disk snapshot backup
    hana-disk-backup config   - Validate or generate configuration
"""

from .dispatcher import main

__all__ = ["main"]
