"""Advisory file locks guarding fleet-wide operations.

Drush resolves ``--uri`` and the database connection per process, and dumps
and restores write to shared folders, so two sweeps against the same factory
must not interleave. The fleet lock is an ``fcntl`` advisory lock on
``<runtime_dir>/sfctl.lock``; the file keeps the metadata of the last holder
for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

FLEET_LOCK_NAME = "sfctl.lock"
POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire advisory locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    @contextmanager
    def fleet_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the fleet-wide lock for the duration of the block."""
        with self._acquire(self.runtime_dir / FLEET_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)

            wait_ms = int((time.monotonic() - start) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
