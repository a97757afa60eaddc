"""Backup verification by round-trip restore.

A backup only counts once its whole chain has been replayed into the
digest tool and the result matches the digest taken from the device
before imaging. Every process in the restore pipeline must also exit
cleanly: a digest computed over a truncated stream can look perfectly
valid.
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from ..__util__ import VerificationMismatch
from ..config import Config
from .process import (
    ProcessChain,
    StageStatus,
    describe_failures,
    failed_stages,
    log_stage_errors,
)
from .restore import open_restore_stream
from .session import Device, Digest
from .tools import Toolchain

logger = logging.getLogger(__name__)


@dataclass
class VerifyResult:
    """Result of a verification operation."""

    device: str
    expected: Digest
    actual: Digest
    chain_length: int
    duration_seconds: float = 0.0
    statuses: list[StageStatus] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.expected.value == self.actual.value


def restore_digest(
    artifacts: list[Path],
    config: Config,
    toolchain: Toolchain,
) -> tuple[str, list[StageStatus]]:
    """Digest the image a chain restores to.

    Returns:
        Raw digest tool output and the exit status of every stage
    """
    processes = ProcessChain()
    try:
        stream = open_restore_stream(processes, artifacts, config, toolchain)
        digest = processes.spawn("digest", toolchain.digest_argv(), stdin=stream)
        processes.release(stream)
    except BaseException:
        processes.abort()
        raise

    output = digest.stdout.read() if digest.stdout else b""
    processes.release(digest.stdout)
    statuses = processes.wait()
    return output.decode("utf-8", errors="replace"), statuses


def verify_restore(
    device: Device,
    source: Digest,
    artifacts: list[Path],
    config: Config,
    toolchain: Toolchain,
) -> VerifyResult:
    """Restore a device's backup chain and compare it to the source digest.

    Args:
        device: Device the chain was produced from
        source: Digest recorded for the device before imaging
        artifacts: The chain to replay, oldest first, ending at the new artifact
        config: Compression and imaging settings
        toolchain: External program argv builders

    Returns:
        VerifyResult of a passing verification

    Raises:
        VerificationMismatch: If any stage fails or the digests differ
    """
    start = time.monotonic()
    logger.info(
        "Verifying %s by restoring %d artifact(s) ...", device.name, len(artifacts)
    )

    try:
        output, statuses = restore_digest(artifacts, config, toolchain)
    except (OSError, subprocess.SubprocessError) as e:
        raise VerificationMismatch(device.name, f"Cannot run restore pipeline: {e}") from e

    if failed_stages(statuses):
        log_stage_errors(statuses)
        raise VerificationMismatch(
            device.name,
            f"Restore pipeline failed ({describe_failures(statuses)})",
            expected=source.value,
        )

    try:
        actual = Digest.parse(output)
    except ValueError as e:
        raise VerificationMismatch(
            device.name, f"Unusable digest output: {e}", expected=source.value
        ) from e

    result = VerifyResult(
        device=device.name,
        expected=source,
        actual=actual,
        chain_length=len(artifacts),
        duration_seconds=time.monotonic() - start,
        statuses=statuses,
    )
    if not result.passed:
        logger.error(
            "%s: restored digest %s does not match source digest %s",
            device.name,
            actual.value,
            source.value,
        )
        raise VerificationMismatch(
            device.name,
            "Restored image does not match the device",
            expected=source.value,
            actual=actual.value,
        )

    logger.info(
        "Verified %s (%s) in %.1fs", device.name, actual.value, result.duration_seconds
    )
    return result
