"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from sbxctl.locking import LockManager, LockTimeoutError


def test_deployment_lock_writes_metadata(tmp_path: Path) -> None:
    """Acquiring the lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "sbxctl.lock"
    with manager.deployment_lock() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["name"] == "sbxctl"

    # The lock file stays for diagnostics but no longer holds the lock.
    with manager.deployment_lock(timeout=0.2):
        pass


def test_second_acquisition_times_out(tmp_path: Path) -> None:
    """A concurrent holder blocks the second caller until the timeout."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.deployment_lock():
        with pytest.raises(LockTimeoutError, match="Another sbxctl command is running"):
            with manager.deployment_lock(timeout=0.1):
                pass


def test_lock_names_are_sanitised(tmp_path: Path) -> None:
    """Slashes cannot escape the runtime directory."""
    manager = LockManager(tmp_path / "run")
    assert manager.lock_path("cert/sync") == tmp_path / "run" / "cert-sync.lock"
    assert manager.lock_path("  ") == tmp_path / "run" / "sbxctl.lock"
