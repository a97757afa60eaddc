"""Tests for run sequencing, end to end with a coreutils toolchain."""

import hashlib
from unittest.mock import patch

import pytest
from filelock import FileLock

from blockdev_backup_ng.__util__ import (
    ChainBroken,
    DependencyMissing,
    PipelineFailure,
    ValidationError,
    VerificationMismatch,
)
from blockdev_backup_ng.core import orchestrator
from blockdev_backup_ng.core.chain import read_manifest
from blockdev_backup_ng.core.hashing import read_digest
from blockdev_backup_ng.core.orchestrator import (
    LOCK_FILE_NAME,
    preflight,
    reconcile,
    run_backup,
)
from blockdev_backup_ng.core.session import LinkKind
from fakes import FakeToolchain


def _sha(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _outputs(directory):
    return sorted(p.name for p in directory.iterdir() if p.name != LOCK_FILE_NAME)


class CountingFailToolchain(FakeToolchain):
    """Compression always fails; count how many pipelines were started."""

    def __init__(self):
        super().__init__()
        self.compress_calls = 0

    def compress_argv(self, params):
        self.compress_calls += 1
        return ["sh", "-c", "cat > /dev/null; exit 1"]


class TamperingToolchain(FakeToolchain):
    def decompress_argv(self, artifact, params):
        return ["sh", "-c", 'cat "$1"; printf x', "xz", str(artifact)]


class TestScenarios:
    """A full image followed by two generations of deltas."""

    def test_full_backup(self, make_device, make_session, config, toolchain):
        content = b"generation-1" * 512
        session = make_session("b1", [make_device("sda", content)])

        report = run_backup(session, config, toolchain)

        out = session.output_dir
        assert _outputs(out) == [
            "sda.full",
            "sda.full.hash",
            "sda.full.recovery",
            "sda.hash",
        ]
        [result] = report.results
        assert result.kind is LinkKind.FULL
        assert result.chain_length == 1
        assert result.source.value == _sha(content)
        assert result.restored.value == read_digest(out / "sda.hash").value
        assert read_digest(out / "sda.full.hash").value == _sha(content)
        assert report.reconciled
        assert report.warnings == []

    def test_delta_against_full(self, make_device, make_session, config, toolchain):
        run_backup(make_session("b1", [make_device("sda", b"v1" * 1000)]), config, toolchain)

        session = make_session("b2", [make_device("sda", b"v2" * 1000)], predecessor="b1")
        report = run_backup(session, config, toolchain)

        out = session.output_dir
        assert _outputs(out) == [
            "sda.chain",
            "sda.delta",
            "sda.delta.hash",
            "sda.delta.recovery",
            "sda.hash",
        ]
        assert read_manifest(out / "sda.chain") == ["../b1/sda.full"]
        [result] = report.results
        assert result.kind is LinkKind.DELTA
        assert result.chain_length == 2
        assert result.restored.value == _sha(b"v2" * 1000)

    def test_chain_grows_by_one(self, make_device, make_session, config, toolchain):
        for label, predecessor, content in [
            ("b1", None, b"v1"),
            ("b2", "b1", b"v2"),
            ("b3", "b2", b"v3"),
            ("b4", "b3", b"v4"),
        ]:
            session = make_session(
                label, [make_device("sda", content * 1000)], predecessor=predecessor
            )
            report = run_backup(session, config, toolchain)

        b3_entries = read_manifest(session.output_dir.parent / "b3" / "sda.chain")
        b4_entries = read_manifest(session.output_dir / "sda.chain")
        assert b3_entries == ["../b1/sda.full", "../b2/sda.delta"]
        assert b4_entries[:2] == b3_entries
        assert b4_entries[2] == "../b3/sda.delta"
        assert report.results[0].chain_length == 4
        assert report.results[0].restored.value == _sha(b"v4" * 1000)

    def test_several_devices(self, make_device, make_session, config, toolchain):
        session = make_session(
            "b1", [make_device("sda", b"a" * 100), make_device("sdb", b"b" * 100)]
        )

        report = run_backup(session, config, toolchain)

        assert [r.device for r in report.results] == ["sda", "sdb"]
        assert session.completed == ["sda", "sdb"]
        assert (session.output_dir / "sdb.full.recovery").exists()


class TestPreflight:
    """Tests for checks made before anything is written."""

    def test_reports_every_collision_without_running_anything(
        self, make_device, make_session, config, toolchain
    ):
        session = make_session(
            "b1", [make_device("sda", b"a"), make_device("sdb", b"b")]
        )
        session.output_dir.mkdir()
        (session.output_dir / "sda.hash").write_text("x\n")
        (session.output_dir / "sdb.full.recovery").write_text("x\n")

        with patch("subprocess.Popen") as popen, patch("subprocess.run") as run:
            with pytest.raises(ValidationError) as excinfo:
                run_backup(session, config, toolchain)

        message = str(excinfo.value)
        assert "sda.hash" in message
        assert "sdb.full.recovery" in message
        popen.assert_not_called()
        run.assert_not_called()
        assert _outputs(session.output_dir) == ["sda.hash", "sdb.full.recovery"]

    def test_encoder_leftovers_are_collisions(
        self, make_device, make_session, config, toolchain
    ):
        session = make_session("b1", [make_device("sda", b"a")])
        session.output_dir.mkdir()
        (session.output_dir / "sda.full.par2").write_text("x\n")
        (session.output_dir / "sda.full.vol00+01.par2").write_text("x\n")

        with patch("subprocess.Popen") as popen, patch("subprocess.run") as run:
            with pytest.raises(ValidationError) as excinfo:
                run_backup(session, config, toolchain)

        message = str(excinfo.value)
        assert "sda.full.par2" in message
        assert "sda.full.vol00+01.par2" in message
        popen.assert_not_called()
        run.assert_not_called()

    def test_every_broken_chain_reported_before_any_tool_runs(
        self, make_device, make_session, backups_dir, config, toolchain
    ):
        (backups_dir / "b1").mkdir()
        (backups_dir / "b1" / "sda.full").write_bytes(b"a")
        session = make_session(
            "b2",
            [make_device("sda", b"a"), make_device("sdb", b"b"), make_device("sdc", b"c")],
            predecessor="b1",
        )

        with patch("subprocess.Popen") as popen, patch("subprocess.run") as run:
            with pytest.raises(ChainBroken) as excinfo:
                run_backup(session, config, toolchain)

        message = str(excinfo.value)
        assert "sda:" not in message
        assert "sdb: Predecessor artifact" in message
        assert "sdc: Predecessor artifact" in message
        popen.assert_not_called()
        run.assert_not_called()
        assert not session.output_dir.exists()

    def test_expected_outputs_for_delta_run(self, make_device, make_session, backups_dir):
        (backups_dir / "b1").mkdir()
        (backups_dir / "b1" / "sda.full").write_bytes(b"a")
        session = make_session("b2", [make_device("sda", b"a")], predecessor="b1")

        names = sorted(p.name for p in preflight(session))

        assert names == [
            "sda.chain",
            "sda.delta",
            "sda.delta.hash",
            "sda.delta.recovery",
            "sda.hash",
        ]

    def test_missing_predecessor_directory(self, make_device, make_session):
        session = make_session("b2", [make_device("sda", b"a")], predecessor="nope")
        with pytest.raises(ValidationError, match="does not exist"):
            preflight(session)

    def test_duplicate_device_names(self, tmp_path, make_device, make_session):
        other = tmp_path / "other"
        other.mkdir()
        (other / "sda").write_bytes(b"b")
        session = make_session("b1", [make_device("sda", b"a"), other / "sda"])
        with pytest.raises(ValidationError, match="would both write"):
            preflight(session)

    def test_missing_dependency_writes_nothing(
        self, make_device, make_session, config
    ):
        toolchain = FakeToolchain()
        toolchain.fec = "/nonexistent/par2"
        session = make_session("b1", [make_device("sda", b"a")])

        with pytest.raises(DependencyMissing) as excinfo:
            run_backup(session, config, toolchain)

        assert excinfo.value.commands == ["/nonexistent/par2"]
        assert not session.output_dir.exists()

    def test_concurrent_run_is_refused(self, make_device, make_session, config, toolchain):
        session = make_session("b1", [make_device("sda", b"a")])
        session.output_dir.mkdir()

        with FileLock(session.output_dir / LOCK_FILE_NAME):
            with pytest.raises(ValidationError, match="Another run"):
                run_backup(session, config, toolchain)
        assert not (session.output_dir / "sda.hash").exists()


class TestFailFast:
    """The first failing device ends the run."""

    def test_pipeline_failure_stops_before_next_device(
        self, make_device, make_session, config
    ):
        toolchain = CountingFailToolchain()
        session = make_session(
            "b1", [make_device("sda", b"a"), make_device("sdb", b"b")]
        )

        with pytest.raises(PipelineFailure) as excinfo:
            run_backup(session, config, toolchain)

        assert excinfo.value.device == "sda"
        assert toolchain.compress_calls == 1
        out = session.output_dir
        # Both devices were hashed up front; nothing else exists for sdb
        assert _outputs(out) == ["sda.hash", "sdb.hash"]
        assert session.completed == []

    def test_verification_mismatch_keeps_written_files(
        self, make_device, make_session, config
    ):
        session = make_session(
            "b1", [make_device("sda", b"a" * 10), make_device("sdb", b"b" * 10)]
        )

        with pytest.raises(VerificationMismatch) as excinfo:
            run_backup(session, config, TamperingToolchain())

        assert excinfo.value.device == "sda"
        assert _outputs(session.output_dir) == [
            "sda.full",
            "sda.full.hash",
            "sda.full.recovery",
            "sda.hash",
            "sdb.hash",
        ]

    def test_hash_failure_runs_no_pipeline(
        self, devices_dir, make_device, make_session, config
    ):
        toolchain = CountingFailToolchain()
        session = make_session("b1", [make_device("sda", b"a"), devices_dir / "sdb"])

        with pytest.raises(PipelineFailure):
            run_backup(session, config, toolchain)

        assert toolchain.compress_calls == 0
        assert _outputs(session.output_dir) == ["sda.hash"]


class TestReconciliation:
    """Tests for the final re-hash pass."""

    def test_fast_mode_skips_reconciliation(
        self, make_device, make_session, config, toolchain
    ):
        session = make_session("b1", [make_device("sda", b"a")], fast=True)

        with patch.object(orchestrator, "hash_files") as hash_files:
            report = run_backup(session, config, toolchain)

        hash_files.assert_not_called()
        assert not report.reconciled

    def test_normal_mode_rehashes_devices_and_artifacts(
        self, make_device, make_session, config, toolchain
    ):
        session = make_session("b1", [make_device("sda", b"a")])

        with patch.object(
            orchestrator, "hash_files", wraps=orchestrator.hash_files
        ) as hash_files:
            run_backup(session, config, toolchain)

        [call] = hash_files.call_args_list
        paths = call.args[0]
        assert [p.name for p in paths] == ["sda", "sda.full"]

    def test_changed_device_is_a_warning(
        self, make_device, make_session, config, toolchain
    ):
        session = make_session("b1", [make_device("sda", b"before")], fast=True)
        run_backup(session, config, toolchain)
        make_device("sda", b"after")

        warnings = reconcile(session, toolchain)

        [warning] = warnings
        assert warning.path.name == "sda"
        assert warning.expected == _sha(b"before")
        assert warning.actual == _sha(b"after")

    def test_nothing_completed_nothing_to_do(self, make_device, make_session, toolchain):
        session = make_session("b1", [make_device("sda", b"a")])
        with patch.object(orchestrator, "hash_files") as hash_files:
            assert reconcile(session, toolchain) == []
        hash_files.assert_not_called()
