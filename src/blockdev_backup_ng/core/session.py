"""Per-run state: devices, digests and the artifacts produced so far.

The on-disk sidecars and manifests are the persistent record of a
backup; a Session only lives for one run and is handed explicitly to
each stage.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .. import device_name
from ..__util__ import ValidationError

HASH_SUFFIX = ".hash"
CHAIN_SUFFIX = ".chain"
RECOVERY_SUFFIX = ".recovery"


class LinkKind(Enum):
    """Kind of artifact a device backup produces."""

    FULL = "full"
    DELTA = "delta"

    @property
    def suffix(self) -> str:
        return f".{self.value}"


@dataclass(frozen=True)
class Device:
    """A device to back up, named after the last component of its path."""

    path: Path

    @property
    def name(self) -> str:
        return device_name(self.path)

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class Digest:
    """A content digest and the label the digest tool printed with it."""

    value: str
    label: str = "-"

    @classmethod
    def parse(cls, line: str) -> "Digest":
        """Parse '<hex>  <label>' as printed by sha256sum and friends.

        Raises:
            ValueError: If the line holds no hexadecimal digest
        """
        parts = line.strip().split(None, 1)
        if not parts:
            raise ValueError("empty digest output")
        value = parts[0].lstrip("\\").lower()
        try:
            int(value, 16)
        except ValueError:
            raise ValueError(f"not a hexadecimal digest: {parts[0]!r}") from None
        label = parts[1].lstrip("*") if len(parts) > 1 else "-"
        return cls(value, label)

    def to_line(self) -> str:
        return f"{self.value}  {self.label}\n"

    def __str__(self) -> str:
        return self.value


def artifact_path(directory: Path, name: str, kind: LinkKind) -> Path:
    return Path(directory) / f"{name}{kind.suffix}"


def source_digest_path(directory: Path, name: str) -> Path:
    return Path(directory) / f"{name}{HASH_SUFFIX}"


def sidecar_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + HASH_SUFFIX)


def recovery_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + RECOVERY_SUFFIX)


def manifest_path(directory: Path, name: str) -> Path:
    return Path(directory) / f"{name}{CHAIN_SUFFIX}"


def expected_outputs(directory: Path, name: str, kind: LinkKind) -> list[Path]:
    """Every file a backup of one device writes into the output directory."""
    directory = Path(directory)
    artifact = artifact_path(directory, name, kind)
    outputs = [
        source_digest_path(directory, name),
        artifact,
        sidecar_path(artifact),
        recovery_path(artifact),
    ]
    if kind is LinkKind.DELTA:
        outputs.append(manifest_path(directory, name))
    return outputs


@dataclass
class Session:
    """Working state of one backup run.

    Attributes:
        output_dir: Directory receiving every new file
        devices: Devices in processing order
        predecessor_dir: Directory holding the backup to delta against
        fast: Skip the final reconciliation pass
        source_digests: Device name -> digest taken before imaging
        artifacts: Device name -> artifact produced in this run
        completed: Names of devices that passed verification, in order
    """

    output_dir: Path
    devices: list[Device]
    predecessor_dir: Path | None = None
    fast: bool = False
    source_digests: dict[str, Digest] = field(default_factory=dict)
    artifacts: dict[str, Path] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.output_dir = Path(self.output_dir).expanduser().absolute()
        if self.predecessor_dir is not None:
            self.predecessor_dir = Path(self.predecessor_dir).expanduser().absolute()
        self.devices = [
            d if isinstance(d, Device) else Device(Path(d)) for d in self.devices
        ]

    @property
    def link_kind(self) -> LinkKind:
        """Every device in a run is a delta exactly when a predecessor is given."""
        return LinkKind.FULL if self.predecessor_dir is None else LinkKind.DELTA

    def validate(self) -> None:
        """Reject device lists that would make two devices share output files."""
        if not self.devices:
            raise ValidationError("No devices given")

        seen: dict[str, Device] = {}
        problems = []
        for device in self.devices:
            name = device.name
            if not name or name in (".", ".."):
                problems.append(f"Cannot derive an output name from {device}")
            elif name in seen:
                problems.append(
                    f"{seen[name]} and {device} would both write '{name}' outputs"
                )
            else:
                seen[name] = device
        if self.predecessor_dir is not None and self.predecessor_dir == self.output_dir:
            problems.append("Predecessor directory must differ from the output directory")
        if problems:
            raise ValidationError("; ".join(problems))
