"""Content digests of devices and artifacts.

Devices are hashed concurrently, one task per device: the work touches
disjoint inputs and has nothing to share until the join. Results come
back as typed values and are only persisted after every task finished.
"""

import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path

from .. import __util__
from .session import Device, Digest, Session, source_digest_path
from .tools import Toolchain

logger = logging.getLogger(__name__)


@dataclass
class HashResult:
    """Outcome of hashing one device."""

    device: Device
    digest: Digest | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.digest is not None


def digest_file(path: Path, toolchain: Toolchain, owner: str | None = None) -> Digest:
    """Run the digest tool over a file or device.

    Args:
        path: File or device to hash
        toolchain: External program argv builders
        owner: Device name reported on failure (defaults to the path)

    Raises:
        DigestFailure: If the tool fails or its output cannot be parsed
    """
    owner = owner or str(path)
    cmd = toolchain.digest_argv(Path(path))
    logger.debug("Executing: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise __util__.DigestFailure(owner, f"Cannot run {cmd[0]}: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise __util__.DigestFailure(
            owner, f"{cmd[0]} exited {result.returncode}: {stderr}"
        )
    try:
        return Digest.parse(result.stdout.decode("utf-8", errors="replace"))
    except ValueError as e:
        raise __util__.DigestFailure(owner, f"Unusable digest output: {e}") from e


def _hash_one(device: Device, toolchain: Toolchain) -> HashResult:
    try:
        return HashResult(device, digest=digest_file(device.path, toolchain, device.name))
    except __util__.DigestFailure as e:
        return HashResult(device, error=e)


def hash_devices(devices: list[Device], toolchain: Toolchain) -> list[HashResult]:
    """Hash every device concurrently and wait for all of them.

    Returns:
        One HashResult per device, in the order given
    """
    if not devices:
        return []
    logger.info("Hashing %d device(s) ...", len(devices))
    with ThreadPoolExecutor(max_workers=len(devices)) as executor:
        futures = [executor.submit(_hash_one, d, toolchain) for d in devices]
        wait(futures)
    return [f.result() for f in futures]


def hash_files(paths: list[Path], toolchain: Toolchain) -> list[HashResult]:
    """Hash arbitrary files concurrently (used for artifacts)."""
    return hash_devices([Device(Path(p)) for p in paths], toolchain)


def write_digest(path: Path, digest: Digest) -> None:
    """Write a digest sidecar; the file must not exist yet."""
    with open(path, "x", encoding="utf-8") as f:
        f.write(digest.to_line())


def read_digest(path: Path) -> Digest:
    """Read a digest sidecar.

    Raises:
        OSError: If the file cannot be read
        ValueError: If it does not hold a digest
    """
    return Digest.parse(Path(path).read_text(encoding="utf-8"))


def prehash_devices(session: Session, toolchain: Toolchain) -> dict[str, Digest]:
    """Hash every device of a run and record the results.

    Each successful digest is written to ``<name>.hash`` regardless of
    what happens to the rest of the run, then the first failure (if any)
    is raised: a run never proceeds with a partial set of digests.

    Raises:
        DigestFailure: If hashing any device failed
    """
    results = hash_devices(session.devices, toolchain)

    for result in results:
        if not result.ok:
            continue
        path = source_digest_path(session.output_dir, result.device.name)
        try:
            write_digest(path, result.digest)
        except OSError as e:
            result.error = __util__.DigestFailure(
                result.device.name, f"Cannot write {path}: {e}"
            )
            continue
        session.source_digests[result.device.name] = result.digest
        logger.info("%s: %s", result.device.name, result.digest.value)

    failures = [r for r in results if not r.ok]
    for result in failures:
        logger.error("Hashing %s failed: %s", result.device, result.error)
    if failures:
        raise failures[0].error
    return dict(session.source_digests)
