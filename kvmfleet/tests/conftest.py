from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from kvmfleet.config import Settings, settings
from kvmfleet.credentials import Credentials


@pytest.fixture(autouse=True)
def _isolate_work_dir(monkeypatch, tmp_path):
    """Keep the shared settings singleton away from the real _work directory."""
    monkeypatch.setattr(settings, "work_dir", str(tmp_path / "work"))
    yield


@pytest.fixture
def fleet_settings(tmp_path) -> Settings:
    """Settings with short intervals suitable for unit tests."""
    work_dir = tmp_path / "work"
    work_dir.mkdir(exist_ok=True)
    return Settings(
        work_dir=str(work_dir),
        base_image=str(tmp_path / "base.img"),
        poll_interval=0.05,
        liveness_interval=0.05,
        kill_grace_period=1.0,
        boot_settle_seconds=0,
        login_timeout=5,
        prompt_timeout=5,
        cluster_poll_interval=0.01,
        cluster_ready_timeout=1.0,
        shutdown_timeout=1.0,
        http_proxy="",
        https_proxy="",
        no_proxy="",
    )


@pytest.fixture
def credentials(tmp_path) -> Credentials:
    return Credentials(
        root_password="s3cret-pass",
        private_key_path=tmp_path / "id",
        public_key="ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFakeKeyForTests kvmfleet",
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests that need real processes on a pseudo terminal when sh is missing."""
    if shutil.which("sh") and Path("/dev/ptmx").exists():
        return
    skip = pytest.mark.skip(reason="needs /bin/sh and pseudo terminals")
    for item in items:
        if "pty" in item.keywords:
            item.add_marker(skip)
