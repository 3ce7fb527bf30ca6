"""Advisory file locks serialising bootstrap and snapshot work.

Locks are ``fcntl.flock`` exclusive locks on small JSON files under the
runtime directory. The lock file records who holds it for diagnostics and is
left in place after release. Because ``flock`` locks belong to an open file
description, two acquisitions from the same process (e.g. two threads) also
exclude each other.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")
_POLL_INTERVAL = 0.05


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


def _safe(name: str) -> str:
    cleaned = _SAFE_NAME.sub("-", name.strip())
    if not cleaned or cleaned in {".", ".."}:
        raise ValueError(f"Invalid lock name: {name!r}")
    return cleaned


class LockManager:
    """Create and acquire lock files under *root*."""

    def __init__(self, root: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout."""
        self.root = Path(root).expanduser()
        self.default_timeout = default_timeout

    def path_for(self, *parts: str) -> Path:
        """Return the lock file path for the given name segments."""
        *dirs, name = [_safe(part) for part in parts]
        return self.root.joinpath(*dirs, f"{name}.lock")

    @contextmanager
    def acquire(
        self,
        *parts: str,
        timeout: float | None = None,
        owner: str | None = None,
    ) -> Iterator[LockHandle]:
        """Acquire the lock identified by *parts*, waiting up to *timeout* seconds."""
        path = self.path_for(*parts)
        path.parent.mkdir(parents=True, exist_ok=True)
        effective_timeout = self.default_timeout if timeout is None else timeout
        start = time.monotonic()
        deadline = start + max(effective_timeout, 0.0)

        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            self._write_metadata(fd, path, owner)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def cluster_lock(
        self,
        cluster_id: str,
        *,
        timeout: float | None = None,
        owner: str | None = None,
    ) -> AbstractContextManager[LockHandle]:
        """Serialise bootstrap transitions for *cluster_id*."""
        return self.acquire("clusters", cluster_id, timeout=timeout, owner=owner)

    def scheduler_lock(
        self,
        cluster_id: str,
        node_id: str,
        *,
        timeout: float | None = None,
    ) -> AbstractContextManager[LockHandle]:
        """Guarantee a single snapshot scheduler per node."""
        return self.acquire(
            "snapshots", cluster_id, node_id, timeout=timeout, owner=f"scheduler:{node_id}"
        )

    @staticmethod
    def _write_metadata(fd: int, path: Path, owner: str | None) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            "owner": owner,
        }
        data = (json.dumps(payload) + "\n").encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, data, 0)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
