"""blockdev-backup-ng: blockdev_backup_ng/__main__.py.

Back up raw block devices as compressed images or chained deltas and
prove every backup by restoring it into a digest.
"""

import sys

from .cli.dispatcher import main

if __name__ == "__main__":
    sys.exit(main())
