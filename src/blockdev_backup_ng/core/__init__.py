"""Core backup operations for blockdev-backup-ng.

Chain resolution, the imaging pipeline, redundancy generation, restore
verification and the hashing fan-out, sequenced by the orchestrator.
"""

from .chain import ResolvedLink, chain_for, plan_link, read_manifest, resolve_link
from .hashing import HashResult, digest_file, hash_devices, prehash_devices
from .orchestrator import DeviceResult, RunReport, preflight, reconcile, run_backup
from .pipeline import backup_device
from .redundancy import generate_recovery
from .session import Device, Digest, LinkKind, Session
from .tools import Toolchain
from .verify import VerifyResult, verify_restore

__all__ = [
    "Device",
    "DeviceResult",
    "Digest",
    "HashResult",
    "LinkKind",
    "ResolvedLink",
    "RunReport",
    "Session",
    "Toolchain",
    "VerifyResult",
    "backup_device",
    "chain_for",
    "digest_file",
    "generate_recovery",
    "hash_devices",
    "plan_link",
    "preflight",
    "prehash_devices",
    "read_manifest",
    "reconcile",
    "resolve_link",
    "run_backup",
    "verify_restore",
]
