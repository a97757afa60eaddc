"""Forward-error-correction data for artifacts.

The encoder writes an index file plus numbered recovery volumes. Only
one volume is requested; the index is discarded and the volume renamed
to ``<artifact>.recovery`` so nothing else needs to know the encoder's
volume naming.
"""

import logging
import os
import subprocess
from pathlib import Path

from .. import __util__
from ..config import RedundancyConfig
from .session import recovery_path
from .tools import Toolchain

logger = logging.getLogger(__name__)


def _index_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + ".par2")


def _volumes(artifact: Path) -> list[Path]:
    return sorted(artifact.parent.glob(f"{_glob_escape(artifact.name)}.vol*.par2"))


def encoder_leftovers(artifact: Path) -> list[Path]:
    """Encoder files already present beside an artifact."""
    artifact = Path(artifact)
    index = _index_path(artifact)
    leftovers = [index] if index.exists() or index.is_symlink() else []
    return leftovers + _volumes(artifact)


def _glob_escape(name: str) -> str:
    return "".join(f"[{c}]" if c in "*?[" else c for c in name)


def generate_recovery(
    artifact: Path,
    params: RedundancyConfig,
    toolchain: Toolchain,
) -> Path:
    """Create the single recovery file for an artifact.

    Args:
        artifact: Artifact to protect
        params: Redundancy percentage and block count
        toolchain: External program argv builders

    Returns:
        Path of ``<artifact>.recovery``

    Raises:
        RedundancyFailure: If the encoder fails or leaves an unexpected set of files
    """
    artifact = Path(artifact)
    index = _index_path(artifact)
    target = recovery_path(artifact)
    cmd = toolchain.redundancy_argv(artifact, index, params.block_count, params.percent)

    logger.info(
        "Generating recovery data for %s (%d%%, %d blocks) ...",
        artifact.name,
        params.percent,
        params.block_count,
    )
    logger.debug("Executing: %s", " ".join(cmd))

    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            cwd=artifact.parent,
        )
    except OSError as e:
        raise __util__.RedundancyFailure(f"Cannot run {cmd[0]}: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        if stderr:
            logger.error("%s stderr: %s", cmd[0], stderr)
        raise __util__.RedundancyFailure(
            f"{cmd[0]} exited {result.returncode} for {artifact.name}"
        )

    volumes = _volumes(artifact)
    if len(volumes) != 1:
        raise __util__.RedundancyFailure(
            f"Expected exactly one recovery volume for {artifact.name}, "
            f"found {len(volumes)}"
        )

    try:
        index.unlink(missing_ok=True)
        os.rename(volumes[0], target)
    except OSError as e:
        raise __util__.RedundancyFailure(
            f"Cannot finalize recovery file {target}: {e}"
        ) from e

    logger.info("Recovery file %s written", target.name)
    return target
