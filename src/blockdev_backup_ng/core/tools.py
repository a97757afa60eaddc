"""Command lines for the external imaging, delta, redundancy and digest tools.

Nothing in here runs a process; each method only builds an argv list so
the pipeline code can wire processes together and tests can substitute
other programs.
"""

from dataclasses import dataclass
from pathlib import Path

from ..config import CompressionConfig, ToolsConfig

# Every delta in every chain is encoded and decoded with this source
# window; decoding from a pipe fails if it differs from the encoder's.
DELTA_WINDOW = 8 * 1024 * 1024


@dataclass
class Toolchain:
    """Argv builders for the default dd/xz/xdelta3/par2/sha256sum toolset."""

    imager: str = "dd"
    compressor: str = "xz"
    differ: str = "xdelta3"
    fec: str = "par2"
    digest: str = "sha256sum"

    @classmethod
    def from_config(cls, tools: ToolsConfig) -> "Toolchain":
        return cls(
            imager=tools.imager,
            compressor=tools.compressor,
            differ=tools.differ,
            fec=tools.fec,
            digest=tools.digest,
        )

    def required_commands(self, delta: bool) -> list[str]:
        """Programs a run needs, in the order they are first used."""
        commands = [self.digest, self.imager, self.compressor]
        if delta:
            commands.append(self.differ)
        commands.append(self.fec)
        return commands

    def image_argv(self, device: Path, block_size: str) -> list[str]:
        return [self.imager, f"if={device}", f"bs={block_size}", "status=none"]

    def compress_argv(self, params: CompressionConfig) -> list[str]:
        return [
            self.compressor,
            f"-{params.level}",
            f"--threads={params.threads}",
            f"--memlimit={params.memory}",
            "-c",
        ]

    def decompress_argv(self, artifact: Path, params: CompressionConfig) -> list[str]:
        return [
            self.compressor,
            "-d",
            f"--threads={params.threads}",
            f"--memlimit={params.memory}",
            "-c",
            str(artifact),
        ]

    def delta_encode_argv(self, source: str, device: Path, window: int) -> list[str]:
        # -N/-D/-R/-S none: no small-string matching, no external
        # (de)compression and no secondary compression
        return [
            self.differ,
            "-e",
            "-c",
            "-N",
            "-D",
            "-R",
            "-S",
            "none",
            "-B",
            str(window),
            "-s",
            source,
            str(device),
        ]

    def delta_decode_argv(self, source: str, window: int) -> list[str]:
        return [self.differ, "-d", "-c", "-D", "-R", "-B", str(window), "-s", source]

    def redundancy_argv(
        self, artifact: Path, index: Path, block_count: int, percent: int
    ) -> list[str]:
        return [
            self.fec,
            "create",
            "-q",
            "-n1",
            f"-b{block_count}",
            f"-r{percent}",
            str(index),
            str(artifact),
        ]

    def digest_argv(self, path: Path | None = None) -> list[str]:
        """Digest a file, or standard input when no path is given."""
        if path is None:
            return [self.digest]
        return [self.digest, str(path)]
