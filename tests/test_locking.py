"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from sfctl.locking import LockError, LockManager, LockTimeoutError


def test_fleet_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring the fleet lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "sfctl.lock"
    with manager.fleet_lock() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.fleet_lock(timeout=0.2):
        pass


def test_fleet_lock_timeout(tmp_path: Path) -> None:
    """A second sweep times out while the first one holds the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    other = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.fleet_lock():
        with pytest.raises(LockTimeoutError):
            with other.fleet_lock(timeout=0.1):
                pass


def test_fleet_lock_reports_unusable_runtime_dir(tmp_path: Path) -> None:
    """A runtime directory that cannot be created raises LockError."""
    blocker = tmp_path / "run"
    blocker.write_text("not a directory", encoding="utf-8")
    manager = LockManager(blocker, default_timeout=0.1)

    with pytest.raises(LockError, match="Unable to open lock file"):
        with manager.fleet_lock():
            pass
