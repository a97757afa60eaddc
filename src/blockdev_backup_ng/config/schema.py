"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class CompressionConfig:
    """Compression settings shared by every imaging and decode stage.

    Attributes:
        level: Compression preset, 0 (fastest) to 9 (smallest)
        threads: Compressor thread count (0 lets the compressor decide)
        memory: Compressor memory ceiling (e.g. "50%", "2GiB")
    """

    level: int = 6
    threads: int = 0
    memory: str = "50%"


@dataclass
class ImagingConfig:
    """Block imaging settings.

    Attributes:
        block_size: Read block size for full device images (dd syntax)
    """

    block_size: str = "4M"


@dataclass
class RedundancyConfig:
    """Forward-error-correction settings.

    Attributes:
        percent: Recovery data size as a percentage of the artifact
        block_count: Number of source blocks the artifact is split into
    """

    percent: int = 5
    block_count: int = 2000


@dataclass
class ToolsConfig:
    """Names (or paths) of the external programs."""

    imager: str = "dd"
    compressor: str = "xz"
    differ: str = "xdelta3"
    fec: str = "par2"
    digest: str = "sha256sum"


@dataclass
class GlobalConfig:
    """Global configuration settings.

    Attributes:
        fast: Skip the final reconciliation re-hash
        transaction_log: Path to a JSON-lines transaction log (None disables it)
    """

    fast: bool = False
    transaction_log: Optional[str] = None


@dataclass
class Config:
    """Root configuration object."""

    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    imaging: ImagingConfig = field(default_factory=ImagingConfig)
    redundancy: RedundancyConfig = field(default_factory=RedundancyConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
