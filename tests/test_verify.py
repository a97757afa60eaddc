"""Tests for restore-based verification."""

import hashlib

import pytest

from blockdev_backup_ng.__util__ import ChainBroken, VerificationMismatch
from blockdev_backup_ng.config import load_config
from blockdev_backup_ng.core.session import Device, Digest
from blockdev_backup_ng.core.tools import DELTA_WINDOW
from blockdev_backup_ng.core.verify import restore_digest, verify_restore
from fakes import FakeToolchain


def _digest(content: bytes) -> Digest:
    return Digest(hashlib.sha256(content).hexdigest(), "/dev/fake")


class TamperingToolchain(FakeToolchain):
    """Decompression appends a byte, so restores never match."""

    def decompress_argv(self, artifact, params):
        return ["sh", "-c", 'cat "$1"; printf x', "xz", str(artifact)]


class FailingDecodeToolchain(FakeToolchain):
    """Decompression emits the right bytes but exits non-zero."""

    def decompress_argv(self, artifact, params):
        return ["sh", "-c", 'cat "$1"; exit 3', "xz", str(artifact)]


class FailingDigestToolchain(FakeToolchain):
    def digest_argv(self, path=None):
        return ["sh", "-c", "cat > /dev/null; echo 0000  -; exit 1"]


@pytest.fixture
def full_chain(tmp_path):
    artifact = tmp_path / "sda.full"
    artifact.write_bytes(b"image-v1" * 1000)
    return [artifact]


@pytest.fixture
def delta_chain(tmp_path):
    # The fake "delta" of each link is the complete newer image
    paths = []
    for i, (name, content) in enumerate(
        [("sda.full", b"v1"), ("sda.delta", b"v2"), ("sda.delta", b"v3")]
    ):
        directory = tmp_path / f"b{i + 1}"
        directory.mkdir()
        path = directory / name
        path.write_bytes(content * 5000)
        paths.append(path)
    return paths


class TestRestoreDigest:
    """Tests for restore_digest."""

    def test_full_image(self, full_chain, config, toolchain):
        output, statuses = restore_digest(full_chain, config, toolchain)
        assert Digest.parse(output).value == _digest(b"image-v1" * 1000).value
        assert [s.name for s in statuses] == ["decompress sda.full", "digest"]

    def test_replays_whole_chain_in_order(self, delta_chain, config, toolchain):
        output, statuses = restore_digest(delta_chain, config, toolchain)

        assert Digest.parse(output).value == _digest(b"v3" * 5000).value
        assert all(s.ok for s in statuses)
        names = [s.name for s in statuses]
        assert names.count("apply sda.delta") == 2
        assert names[0] == "decompress sda.full"

    def test_chain_must_start_with_full(self, delta_chain, config, toolchain):
        with pytest.raises(ChainBroken):
            restore_digest(delta_chain[1:], config, toolchain)


class TestVerifyRestore:
    """Tests for verify_restore."""

    def test_matching_digest_passes(self, full_chain, config, toolchain):
        source = _digest(b"image-v1" * 1000)
        result = verify_restore(Device("/dev/sda"), source, full_chain, config, toolchain)

        assert result.passed
        assert result.actual.value == source.value
        assert result.chain_length == 1

    def test_delta_chain_passes(self, delta_chain, config, toolchain):
        source = _digest(b"v3" * 5000)
        result = verify_restore(Device("/dev/sda"), source, delta_chain, config, toolchain)
        assert result.passed
        assert result.chain_length == 3

    def test_mismatch_raises(self, full_chain, config):
        source = _digest(b"image-v1" * 1000)
        with pytest.raises(VerificationMismatch) as excinfo:
            verify_restore(
                Device("/dev/sda"), source, full_chain, config, TamperingToolchain()
            )
        assert excinfo.value.expected == source.value
        assert excinfo.value.actual != source.value
        assert excinfo.value.device == "sda"

    def test_decode_failure_fails_even_with_right_digest(self, full_chain, config):
        source = _digest(b"image-v1" * 1000)
        with pytest.raises(VerificationMismatch, match="decompress sda.full exited 3"):
            verify_restore(
                Device("/dev/sda"), source, full_chain, config, FailingDecodeToolchain()
            )

    def test_digest_failure(self, full_chain, config):
        source = _digest(b"image-v1" * 1000)
        with pytest.raises(VerificationMismatch, match="digest exited 1"):
            verify_restore(
                Device("/dev/sda"), source, full_chain, config, FailingDigestToolchain()
            )

    def test_missing_tool(self, full_chain, config):
        toolchain = FakeToolchain()
        toolchain.digest = "/nonexistent/sha256sum"
        source = _digest(b"image-v1" * 1000)
        with pytest.raises(VerificationMismatch, match="Cannot run"):
            verify_restore(Device("/dev/sda"), source, full_chain, config, toolchain)


class LazyDecodeToolchain(FakeToolchain):
    """Applying a delta reads only the start of its source, like a delta
    that never copies from the tail of its predecessor."""

    def delta_decode_argv(self, source, window):
        return ["sh", "-c", 'head -c 16 "$1" > /dev/null; cat', "apply", source]


class TestPartialSourceReads:
    """Restores whose delta decoders stop reading their source early."""

    @pytest.fixture
    def large_chain(self, tmp_path):
        # Every link is far larger than a pipe buffer
        paths = []
        for i, (name, content) in enumerate(
            [("sda.full", b"1"), ("sda.delta", b"2"), ("sda.delta", b"3")]
        ):
            directory = tmp_path / f"b{i + 1}"
            directory.mkdir()
            path = directory / name
            path.write_bytes(content * 4 * 1024 * 1024)
            paths.append(path)
        return paths

    def test_single_delta(self, large_chain, config):
        chain = large_chain[:2]
        source = _digest(b"2" * 4 * 1024 * 1024)

        result = verify_restore(
            Device("/dev/sda"), source, chain, config, LazyDecodeToolchain()
        )

        assert result.passed
        assert result.statuses[0].closed_early

    def test_abandoned_sources_along_a_chain(self, large_chain, config):
        source = _digest(b"3" * 4 * 1024 * 1024)

        result = verify_restore(
            Device("/dev/sda"), source, large_chain, config, LazyDecodeToolchain()
        )

        assert result.passed
        assert result.chain_length == 3

    def test_failing_decoder_still_fails(self, large_chain, config):
        toolchain = LazyDecodeToolchain()
        toolchain.delta_decode_argv = lambda source, window: [
            "sh", "-c", 'head -c 16 "$1" > /dev/null; exit 5', "apply", source,
        ]
        with pytest.raises(VerificationMismatch, match="apply sda.delta exited 5"):
            verify_restore(
                Device("/dev/sda"),
                _digest(b"2" * 4 * 1024 * 1024),
                large_chain[:2],
                config,
                toolchain,
            )


class TestDecodeWindow:
    """Every delta of a chain is decoded with the window it was encoded with."""

    def test_window_is_fixed(self, delta_chain, tmp_path, toolchain):
        windows = []
        decode = toolchain.delta_decode_argv

        def record(source, window):
            windows.append(window)
            return decode(source, window)

        toolchain.delta_decode_argv = record
        path = tmp_path / "config.toml"
        path.write_text("[imaging]\ndelta_window = 65536\n")
        config, _ = load_config(path)

        restore_digest(delta_chain, config, toolchain)

        assert windows == [DELTA_WINDOW, DELTA_WINDOW]
