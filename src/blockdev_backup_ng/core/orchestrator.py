"""Run sequencing: pre-flight, batch hashing and the per-device pipeline.

Devices are processed strictly one after another, and every stage of a
device finishes before the next device starts; only the initial device
hashing runs concurrently. The first fatal error ends the run. Files
already written for earlier devices stay where they are.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from filelock import FileLock, Timeout

from .. import __util__
from ..config import Config
from ..transaction import TransactionContext
from .chain import chain_for, plan_link, resolve_link
from .hashing import digest_file, hash_files, prehash_devices, read_digest, write_digest
from .pipeline import backup_device
from .redundancy import encoder_leftovers, generate_recovery
from .session import (
    Device,
    Digest,
    LinkKind,
    Session,
    artifact_path,
    expected_outputs,
    sidecar_path,
    source_digest_path,
)
from .tools import Toolchain
from .verify import verify_restore

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".blockdev-backup-ng.lock"


@dataclass
class DeviceResult:
    """Everything recorded about one successfully verified device."""

    device: str
    kind: LinkKind
    artifact: Path
    source: Digest
    artifact_digest: Digest
    restored: Digest
    chain_length: int
    duration_seconds: float = 0.0


@dataclass
class RunReport:
    """Complete run report."""

    output_dir: Path
    started_at: float = field(default_factory=time.time)
    completed_at: float = 0.0
    results: list[DeviceResult] = field(default_factory=list)
    warnings: list[__util__.ReconciliationWarning] = field(default_factory=list)
    reconciled: bool = False

    @property
    def duration(self) -> float:
        if self.completed_at:
            return self.completed_at - self.started_at
        return time.time() - self.started_at


def preflight(session: Session) -> list[Path]:
    """Check a run can start without touching anything.

    Returns:
        Every file the run will create

    Raises:
        ValidationError: Listing every problem found, including all
            output files that already exist
        ChainBroken: Listing every device whose predecessor backup
            cannot be extended
    """
    session.validate()

    problems = []
    if session.output_dir.exists() and not session.output_dir.is_dir():
        problems.append(f"Output path {session.output_dir} is not a directory")
    if session.predecessor_dir is not None and not session.predecessor_dir.is_dir():
        problems.append(
            f"Predecessor directory {session.predecessor_dir} does not exist"
        )

    expected = []
    conflicts = []
    for device in session.devices:
        for path in expected_outputs(session.output_dir, device.name, session.link_kind):
            expected.append(path)
            if path.exists() or path.is_symlink():
                conflicts.append(path)
        if session.output_dir.is_dir():
            artifact = artifact_path(session.output_dir, device.name, session.link_kind)
            conflicts.extend(encoder_leftovers(artifact))
    if conflicts:
        problems.append(
            "Output file(s) already exist: " + ", ".join(str(p) for p in conflicts)
        )

    if problems:
        raise __util__.ValidationError("; ".join(problems))

    broken = []
    for device in session.devices:
        try:
            plan_link(device.name, session.output_dir, session.predecessor_dir)
        except __util__.ChainBroken as e:
            broken.append(f"{device.name}: {e}")
    if broken:
        raise __util__.ChainBroken("; ".join(broken))
    return expected



def backup_one(
    session: Session,
    device: Device,
    config: Config,
    toolchain: Toolchain,
) -> DeviceResult:
    """Resolve, image, hash, protect and verify one device."""
    start = time.monotonic()
    name = device.name
    source = session.source_digests[name]

    with TransactionContext("resolve", device=name):
        link = resolve_link(name, session.output_dir, session.predecessor_dir)

    predecessor = str(link.predecessor) if link.predecessor else None
    with TransactionContext("backup", device=name, predecessor=predecessor) as tx:
        artifact = backup_device(device, link, session.output_dir, config, toolchain)
        tx.set_artifact(artifact)
        tx.add_detail("size_bytes", artifact.stat().st_size)
    session.artifacts[name] = artifact

    with TransactionContext("hash", device=name, artifact=str(artifact)):
        artifact_digest = digest_file(artifact, toolchain, owner=name)
        write_digest(sidecar_path(artifact), artifact_digest)
    logger.info("%s: %s", artifact.name, artifact_digest.value)

    with TransactionContext("redundancy", device=name, artifact=str(artifact)):
        generate_recovery(artifact, config.redundancy, toolchain)

    with TransactionContext("verify", device=name, artifact=str(artifact)):
        chain = chain_for(session.output_dir, name)
        verified = verify_restore(device, source, chain, config, toolchain)

    session.completed.append(name)
    return DeviceResult(
        device=name,
        kind=link.kind,
        artifact=artifact,
        source=source,
        artifact_digest=artifact_digest,
        restored=verified.actual,
        chain_length=verified.chain_length,
        duration_seconds=time.monotonic() - start,
    )


def reconcile(session: Session, toolchain: Toolchain) -> list[__util__.ReconciliationWarning]:
    """Re-hash devices and artifacts and compare with the recorded digests.

    Restore verification already proved each backup; this is only a
    sanity net, so disagreements are reported as warnings.
    """
    pairs: list[tuple[Path, Path]] = []
    for name in session.completed:
        device = next(d for d in session.devices if d.name == name)
        artifact = session.artifacts[name]
        pairs.append((device.path, source_digest_path(session.output_dir, name)))
        pairs.append((artifact, sidecar_path(artifact)))

    if not pairs:
        return []

    logger.info(__util__.log_heading("Reconciliation"))
    warnings = []
    with TransactionContext("reconcile", details={"files": len(pairs)}) as tx:
        results = hash_files([path for path, _ in pairs], toolchain)
        for (path, sidecar), result in zip(pairs, results):
            try:
                recorded = read_digest(sidecar).value
            except (OSError, ValueError) as e:
                recorded = f"unreadable ({e})"
            if not result.ok:
                actual = f"error ({result.error})"
            else:
                actual = result.digest.value
            if actual != recorded:
                warning = __util__.ReconciliationWarning(path, recorded, actual)
                logger.warning("Reconciliation: %s", warning)
                warnings.append(warning)
        tx.add_detail("warnings", len(warnings))

    if not warnings:
        logger.info("All %d recorded digest(s) reconfirmed", len(pairs))
    return warnings


def run_backup(
    session: Session,
    config: Config,
    toolchain: Toolchain | None = None,
) -> RunReport:
    """Back up every device of a session.

    Raises:
        ValidationError, ChainBroken, DependencyMissing: Before anything is written
        ChainBroken, PipelineFailure, RedundancyFailure, VerificationMismatch:
            On the first device that fails; later devices are not attempted
    """
    toolchain = toolchain or Toolchain.from_config(config.tools)
    report = RunReport(output_dir=session.output_dir)

    preflight(session)
    __util__.require_commands(
        toolchain.required_commands(delta=session.link_kind is LinkKind.DELTA)
    )

    session.output_dir.mkdir(parents=True, exist_ok=True)
    lock = FileLock(session.output_dir / LOCK_FILE_NAME, timeout=0)
    try:
        lock.acquire()
    except Timeout:
        raise __util__.ValidationError(
            f"Another run is already writing to {session.output_dir}"
        ) from None

    try:
        logger.info(__util__.log_heading(f"Started at {time.ctime()}"))
        with TransactionContext("hash", details={"devices": len(session.devices)}):
            prehash_devices(session, toolchain)

        total = len(session.devices)
        for i, device in enumerate(session.devices, 1):
            logger.info(__util__.log_heading(f"[{i}/{total}] {device}"))
            report.results.append(backup_one(session, device, config, toolchain))

        if session.fast:
            logger.info("Fast mode: skipping reconciliation")
        else:
            report.warnings = reconcile(session, toolchain)
            report.reconciled = True
    finally:
        lock.release()
        report.completed_at = time.time()

    logger.info(__util__.log_heading(f"Finished at {time.ctime()}"))
    return report
