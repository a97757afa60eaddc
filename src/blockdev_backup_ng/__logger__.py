# pyright: standard

"""blockdev-backup-ng: blockdev_backup_ng/__logger__.py
A common logger that keeps progress and errors on separate streams.
"""

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

# Progress goes to stdout, problems go to stderr
cons = Console(file=sys.stdout)
err_cons = Console(file=sys.stderr)
logger = logging.getLogger("blockdev_backup_ng")


class _BelowLevel(logging.Filter):
    """Pass only records strictly below a level."""

    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def create_logger(level: str | int = "INFO", package_level: str | int | None = None) -> None:
    """Helper function to setup logging for a run.

    ``level`` applies to every logger, ``package_level`` (default: the
    same) to this package's own loggers only.
    """
    # pylint: disable=global-statement
    global cons, err_cons

    cons = Console(file=sys.stdout)
    err_cons = Console(file=sys.stderr)

    progress_handler = RichHandler(console=cons, show_path=False)
    progress_handler.addFilter(_BelowLevel(logging.WARNING))

    error_handler = RichHandler(console=err_cons, show_path=False)
    error_handler.setLevel(logging.WARNING)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=[progress_handler, error_handler],
        force=True,
    )
    logger.setLevel(package_level or level)
