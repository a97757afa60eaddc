# pyright: standard

"""blockdev-backup-ng: blockdev_backup_ng/__util__.py
Common errors and helpers shared by all modules.
"""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Base class for every error that aborts a run."""


class ValidationError(BackupError):
    """Bad or conflicting options, or output files that already exist."""


class DependencyMissing(BackupError):
    """A required external tool is not installed."""

    def __init__(self, commands: list[str]) -> None:
        self.commands = list(commands)
        super().__init__(f"Required command(s) not found: {', '.join(self.commands)}")


class ChainBroken(BackupError):
    """A predecessor artifact or manifest is missing or unreadable."""


class PipelineFailure(BackupError):
    """The imaging, compression or delta tool exited with a non-zero status."""

    def __init__(self, device: str, message: str) -> None:
        self.device = device
        super().__init__(f"{device}: {message}")


class DigestFailure(PipelineFailure):
    """The digest tool failed or printed something unparseable."""


class RedundancyFailure(BackupError):
    """The forward-error-correction tool failed."""


class VerificationMismatch(BackupError):
    """A restored image does not hash to the recorded source digest."""

    def __init__(
        self,
        device: str,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        self.device = device
        self.expected = expected
        self.actual = actual
        super().__init__(f"{device}: {message}")


class ReconciliationWarning(UserWarning):
    """A post-run re-hash disagrees with a recorded digest."""

    def __init__(self, path: Path, expected: str, actual: str) -> None:
        self.path = Path(path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{self.path}: recorded digest {expected} but re-hash gave {actual}"
        )


def log_heading(caption: str) -> str:
    """Formatted heading for logging output sections."""
    return f"--[ {caption} ]--"


def missing_commands(commands) -> list[str]:
    """Return the commands (in given order, deduplicated) not found on PATH."""
    missing = []
    for command in commands:
        if command not in missing and shutil.which(command) is None:
            missing.append(command)
    return missing


def require_commands(commands) -> None:
    """Raise DependencyMissing unless every command is on PATH."""
    missing = missing_commands(commands)
    if missing:
        raise DependencyMissing(missing)
    logger.debug("All required commands available: %s", ", ".join(commands))


def remove_if_exists(path: Path) -> None:
    """Delete a file, logging instead of raising if that is not possible."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
