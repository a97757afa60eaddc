"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from blockdev_backup_ng.config import Config
from blockdev_backup_ng.core.session import Session
from blockdev_backup_ng.transaction import set_transaction_log
from fakes import FakeToolchain


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def devices_dir(tmp_path):
    """Directory holding regular files standing in for block devices."""
    path = tmp_path / "dev"
    path.mkdir()
    return path


@pytest.fixture
def make_device(devices_dir):
    """Create (or rewrite) a fake device with the given content."""

    def _make(name: str, content: bytes) -> Path:
        path = devices_dir / name
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def backups_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def make_session(backups_dir):
    """Build a session writing to backups/<label>."""

    def _make(label, devices, predecessor=None, fast=False) -> Session:
        return Session(
            output_dir=backups_dir / label,
            devices=list(devices),
            predecessor_dir=backups_dir / predecessor if predecessor else None,
            fast=fast,
        )

    return _make


@pytest.fixture(autouse=True)
def no_transaction_log():
    """Make sure no test leaks a transaction log path into the next."""
    yield
    set_transaction_log(None)
