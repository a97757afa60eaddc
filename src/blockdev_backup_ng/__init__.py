"""blockdev-backup-ng: blockdev_backup_ng/__init__.py."""

from pathlib import Path


__version__ = "0.1.0"


def device_name(device: Path | str) -> str:
    """Return the file name stem used for every output of a device."""
    return Path(device).name
