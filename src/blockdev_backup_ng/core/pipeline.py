"""Core backup operation: image a device into a compressed artifact.

Full backups read the whole device through the imager into the
compressor. Delta backups reconstruct the predecessor image as a stream
and let the delta encoder diff the device against it; devices usually
change in a small, stable region, so the encoder runs with a small fixed
window and no secondary compression, trading ratio for speed.
"""

import logging
import subprocess
import time
from pathlib import Path

from .. import __util__
from ..config import Config
from .chain import ResolvedLink
from .process import ProcessChain, describe_failures, failed_stages, log_stage_errors
from .restore import open_restore_stream
from .session import Device, LinkKind, artifact_path
from .tools import DELTA_WINDOW, Toolchain

logger = logging.getLogger(__name__)


def _start_source(
    processes: ProcessChain,
    device: Device,
    link: ResolvedLink,
    config: Config,
    toolchain: Toolchain,
):
    """Start the stage producing uncompressed artifact content."""
    if link.kind is LinkKind.FULL:
        return processes.spawn(
            f"image {device.name}",
            toolchain.image_argv(device.path, config.imaging.block_size),
        ).stdout

    previous = open_restore_stream(processes, link.ancestors, config, toolchain)
    source_fd = previous.fileno()
    delta = processes.spawn(
        f"delta {device.name}",
        toolchain.delta_encode_argv(
            f"/dev/fd/{source_fd}", device.path, DELTA_WINDOW
        ),
        pass_fds=(source_fd,),
    )
    processes.release(previous)
    return delta.stdout


def backup_device(
    device: Device,
    link: ResolvedLink,
    output_dir: Path,
    config: Config,
    toolchain: Toolchain,
) -> Path:
    """Produce the artifact for one device.

    Args:
        device: Device to image
        link: Resolved chain link (full, or delta with its ancestors)
        output_dir: Directory receiving the artifact
        config: Compression and imaging settings
        toolchain: External program argv builders

    Returns:
        Absolute path of the new artifact

    Raises:
        ValidationError: If the artifact already exists
        PipelineFailure: If any process fails or cannot be started
    """
    artifact = artifact_path(output_dir, device.name, link.kind).absolute()
    mode = "incremental" if link.kind is LinkKind.DELTA else "full"
    logger.info("Imaging %s -> %s (%s)", device, artifact.name, mode)
    if link.predecessor is not None:
        logger.info("  Using predecessor: %s", link.predecessor)

    try:
        out = open(artifact, "xb")
    except FileExistsError:
        raise __util__.ValidationError(f"Refusing to overwrite {artifact}") from None
    except OSError as e:
        raise __util__.PipelineFailure(device.name, f"Cannot create {artifact}: {e}") from e

    start = time.monotonic()
    processes = ProcessChain()
    with out:
        try:
            content = _start_source(processes, device, link, config, toolchain)
            processes.spawn(
                f"compress {device.name}",
                toolchain.compress_argv(config.compression),
                stdin=content,
                stdout=out,
            )
            processes.release(content)
        except (OSError, subprocess.SubprocessError) as e:
            processes.abort()
            __util__.remove_if_exists(artifact)
            raise __util__.PipelineFailure(
                device.name, f"Cannot start backup pipeline: {e}"
            ) from e
        except BaseException:
            processes.abort()
            __util__.remove_if_exists(artifact)
            raise

    statuses = processes.wait()
    if failed_stages(statuses):
        log_stage_errors(statuses)
        __util__.remove_if_exists(artifact)
        raise __util__.PipelineFailure(
            device.name, f"Backup pipeline failed ({describe_failures(statuses)})"
        )

    logger.info(
        "Imaged %s: %d bytes in %.1fs",
        artifact.name,
        artifact.stat().st_size,
        time.monotonic() - start,
    )
    return artifact
