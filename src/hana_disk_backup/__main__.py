# pyright: standard

"""hana-disk-backup: hana_disk_backup/__main__.py.

Application consistent SAP HANA backups with Compute Engine disk snapshots.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
