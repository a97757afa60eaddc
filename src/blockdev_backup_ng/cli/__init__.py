"""Command line interface for blockdev-backup-ng."""

from .dispatcher import main

__all__ = ["main"]
