"""Backup chains: deciding full versus delta and tracking delta ancestry.

A delta artifact only encodes the difference from its immediate
predecessor, so restoring it means replaying every ancestor back to the
originating full image. That ancestry is recorded beside each delta in a
manifest: one path per line, relative to the manifest's directory,
oldest (the full image) first and ending at the immediate predecessor.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from ..__util__ import ChainBroken
from .session import LinkKind, artifact_path, manifest_path

logger = logging.getLogger(__name__)


@dataclass
class ResolvedLink:
    """Outcome of chain resolution for one device.

    Attributes:
        kind: Whether the new artifact is a full image or a delta
        predecessor: Artifact the delta is encoded against (None for full)
        manifest: Manifest entries to persist beside the new artifact
        ancestors: Absolute paths of the manifest entries, oldest first
    """

    kind: LinkKind
    predecessor: Path | None = None
    manifest: list[str] = field(default_factory=list)
    ancestors: list[Path] = field(default_factory=list)


def read_manifest(path: Path) -> list[str]:
    """Read manifest entries, oldest first.

    Raises:
        ChainBroken: If the manifest cannot be read or names nothing
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ChainBroken(f"Cannot read chain manifest {path}: {e}") from e

    entries = [line.strip() for line in text.splitlines() if line.strip()]
    if not entries:
        raise ChainBroken(f"Chain manifest {path} is empty")
    return entries


def write_manifest(path: Path, entries: list[str]) -> None:
    """Write a manifest so that readers see either nothing or all of it."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write("".join(f"{entry}\n" for entry in entries))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    dir_fd = os.open(path.parent, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)
    logger.debug("Wrote chain manifest %s (%d entries)", path, len(entries))


def chain_artifacts(directory: Path, entries: list[str]) -> list[Path]:
    """Resolve manifest entries against a directory.

    The first entry must be a full image and every later one a delta,
    each present on disk exactly once.

    Raises:
        ChainBroken: If an entry is missing, repeated or of the wrong kind
    """
    artifacts: list[Path] = []
    for position, entry in enumerate(entries):
        path = Path(os.path.normpath(Path(directory) / entry))
        expected = LinkKind.FULL if position == 0 else LinkKind.DELTA
        if path.suffix != expected.suffix:
            raise ChainBroken(
                f"Chain entry {position + 1} ({entry}) should be a "
                f"{expected.value} artifact"
            )
        if path in artifacts:
            raise ChainBroken(f"Chain entry {entry} appears more than once")
        if not path.is_file():
            raise ChainBroken(
                f"Chain entry {entry} does not exist relative to {directory}"
            )
        artifacts.append(path)
    return artifacts


def chain_for(directory: Path, name: str) -> list[Path]:
    """All artifacts needed to restore a device backup stored in directory.

    Returns:
        Artifact paths oldest first; the last one is the directory's own.

    Raises:
        ChainBroken: If the backup or any of its ancestors is missing
    """
    directory = Path(directory)
    manifest = manifest_path(directory, name)
    if manifest.exists():
        own = artifact_path(directory, name, LinkKind.DELTA)
        ancestors = chain_artifacts(directory, read_manifest(manifest))
    else:
        own = artifact_path(directory, name, LinkKind.FULL)
        ancestors = []

    if not own.is_file():
        raise ChainBroken(f"Backup artifact {own} not found")
    return ancestors + [own]


def plan_link(
    name: str, output_dir: Path, predecessor_dir: Path | None = None
) -> ResolvedLink:
    """Decide how a device is backed up without touching the disk.

    Args:
        name: Device name
        output_dir: Directory the new backup goes to
        predecessor_dir: Directory of the backup to delta against, if any

    Returns:
        The resolved link

    Raises:
        ChainBroken: If the predecessor backup cannot be used
    """
    if predecessor_dir is None:
        logger.debug("%s: no predecessor, full image", name)
        return ResolvedLink(kind=LinkKind.FULL)

    output_dir = Path(output_dir)
    predecessor_dir = Path(predecessor_dir)
    previous_manifest = manifest_path(predecessor_dir, name)

    if previous_manifest.exists():
        # The predecessor is itself a delta; extend its chain by one
        entries = read_manifest(previous_manifest)
        predecessor = artifact_path(predecessor_dir, name, LinkKind.DELTA)
    else:
        entries = []
        predecessor = artifact_path(predecessor_dir, name, LinkKind.FULL)

    if not predecessor.is_file():
        raise ChainBroken(f"Predecessor artifact {predecessor} not found")
    try:
        with open(predecessor, "rb"):
            pass
    except OSError as e:
        raise ChainBroken(f"Cannot read predecessor artifact {predecessor}: {e}") from e

    manifest = entries + [os.path.relpath(predecessor, output_dir)]
    ancestors = chain_artifacts(output_dir, manifest)
    logger.debug(
        "%s: delta against %s (chain of %d)", name, predecessor, len(manifest) + 1
    )
    return ResolvedLink(
        kind=LinkKind.DELTA,
        predecessor=predecessor,
        manifest=manifest,
        ancestors=ancestors,
    )


def resolve_link(
    name: str, output_dir: Path, predecessor_dir: Path | None = None
) -> ResolvedLink:
    """Plan a device's link and persist its manifest when it is a delta."""
    link = plan_link(name, output_dir, predecessor_dir)
    if link.kind is LinkKind.DELTA:
        write_manifest(manifest_path(output_dir, name), link.manifest)
    return link
