"""Core restore plumbing: replay a backup chain as a byte stream.

The restored image is never written to disk. The full image is
decompressed into a pipe, and each delta in turn is decoded with the
previous stage's pipe as its source, handed over as /dev/fd/N the same
way a shell's process substitution does it.
"""

import logging
from pathlib import Path
from typing import IO

from ..__util__ import ChainBroken
from ..config import Config
from .process import ProcessChain
from .session import LinkKind
from .tools import DELTA_WINDOW, Toolchain

logger = logging.getLogger(__name__)


def open_restore_stream(
    processes: ProcessChain,
    artifacts: list[Path],
    config: Config,
    toolchain: Toolchain,
) -> IO[bytes]:
    """Start the processes that reconstruct the newest image of a chain.

    Args:
        processes: Chain that will own every started process
        artifacts: Artifacts oldest first; the first must be a full image
        config: Compression and imaging settings
        toolchain: External program argv builders

    Returns:
        Readable pipe carrying the restored image. The caller must wait
        on ``processes`` and check every status.

    Raises:
        ChainBroken: If the artifact list does not start with a full image
        OSError: If a program cannot be started
    """
    if not artifacts:
        raise ChainBroken("Nothing to restore: empty chain")
    base, deltas = Path(artifacts[0]), [Path(a) for a in artifacts[1:]]
    if base.suffix != LinkKind.FULL.suffix:
        raise ChainBroken(f"Chain must start with a full image, not {base.name}")

    logger.debug(
        "Replaying chain: %s", " -> ".join(Path(a).name for a in artifacts)
    )

    current = processes.spawn(
        f"decompress {base.name}",
        toolchain.decompress_argv(base, config.compression),
    ).stdout

    for delta in deltas:
        unpacked = processes.spawn(
            f"decompress {delta.name}",
            toolchain.decompress_argv(delta, config.compression),
        ).stdout
        source_fd = current.fileno()
        patched = processes.spawn(
            f"apply {delta.name}",
            toolchain.delta_decode_argv(f"/dev/fd/{source_fd}", DELTA_WINDOW),
            stdin=unpacked,
            pass_fds=(source_fd,),
        )
        processes.release(unpacked)
        processes.release(current)
        current = patched.stdout

    return current
