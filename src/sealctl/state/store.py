"""Injected state store for bootstrap coordination.

Bootstrap progress, the cluster lease and write-once secret material are kept
in a key/value store addressed by cluster identity. ``compare_and_swap`` is
the single primitive used to enforce "exactly one initialisation" and "one
bootstrap sequence per cluster"; nothing relies on file existence checks.

Two implementations are provided:

* :class:`MemoryStateStore` keeps values in process memory.
* :class:`FileStateStore` keeps one YAML document per cluster under a root
  directory. Writes are atomic (temp file + ``os.replace``) and every
  read-modify-write runs under a :class:`~sealctl.locking.LockManager` lock.
"""
from __future__ import annotations

import os
import re
import tempfile
import threading
from collections.abc import Mapping
from contextlib import AbstractContextManager
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage sealctl state. Install with `pip install sealctl`."
    ) from exc

from ..locking import LockHandle, LockManager

_CLUSTER_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StateStoreError(RuntimeError):
    """Raised when state store operations fail."""


def _check_cluster_id(cluster_id: str) -> str:
    normalized = cluster_id.strip()
    if not _CLUSTER_ID.match(normalized):
        raise StateStoreError(f"Invalid cluster identity: {cluster_id!r}")
    return normalized


class StateStore(Protocol):
    """Key/value storage keyed by cluster identity."""

    def read(self, cluster_id: str, key: str, default: object | None = None) -> object | None:
        """Return the stored value or *default*."""
        ...

    def write(self, cluster_id: str, key: str, value: object) -> None:
        """Unconditionally store *value*."""
        ...

    def compare_and_swap(
        self,
        cluster_id: str,
        key: str,
        expected: object | None,
        new: object | None,
    ) -> bool:
        """Store *new* only if the current value equals *expected*."""
        ...

    def write_once(self, cluster_id: str, key: str, value: object) -> bool:
        """Store *value* only if *key* is unset; return ``True`` when written."""
        ...


@dataclass(slots=True)
class MemoryStateStore:
    """Thread-safe in-memory :class:`StateStore`."""

    _data: dict[str, dict[str, object]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def read(self, cluster_id: str, key: str, default: object | None = None) -> object | None:
        """Return the stored value or *default*."""
        with self._lock:
            bucket = self._data.get(_check_cluster_id(cluster_id), {})
            return deepcopy(bucket.get(key, default))

    def write(self, cluster_id: str, key: str, value: object) -> None:
        """Unconditionally store *value*."""
        with self._lock:
            self._data.setdefault(_check_cluster_id(cluster_id), {})[key] = deepcopy(value)

    def compare_and_swap(
        self,
        cluster_id: str,
        key: str,
        expected: object | None,
        new: object | None,
    ) -> bool:
        """Store *new* only if the current value equals *expected*."""
        with self._lock:
            bucket = self._data.setdefault(_check_cluster_id(cluster_id), {})
            if bucket.get(key) != expected:
                return False
            if new is None:
                bucket.pop(key, None)
            else:
                bucket[key] = deepcopy(new)
            return True

    def write_once(self, cluster_id: str, key: str, value: object) -> bool:
        """Store *value* only if *key* is unset."""
        return self.compare_and_swap(cluster_id, key, None, value)


@dataclass(frozen=True)
class FileStateStore:
    """YAML-backed :class:`StateStore` with one document per cluster."""

    root: Path
    locks: LockManager
    lock_timeout: float = 10.0

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the state directory with restrictive permissions."""
        self.root.mkdir(parents=True, exist_ok=True)
        os.chmod(self.root, 0o700)

    def path_for(self, cluster_id: str) -> Path:
        """Return the document path for *cluster_id*."""
        return self.root / f"{_check_cluster_id(cluster_id)}.yml"

    # ------------------------------------------------------------------
    # StateStore protocol
    # ------------------------------------------------------------------
    def read(self, cluster_id: str, key: str, default: object | None = None) -> object | None:
        """Return the stored value or *default*."""
        document = self._load(cluster_id)
        return deepcopy(document.get(key, default))

    def write(self, cluster_id: str, key: str, value: object) -> None:
        """Unconditionally store *value*."""
        with self._exclusive(cluster_id):
            document = self._load(cluster_id)
            document[key] = value
            self._dump(cluster_id, document)

    def compare_and_swap(
        self,
        cluster_id: str,
        key: str,
        expected: object | None,
        new: object | None,
    ) -> bool:
        """Store *new* only if the current value equals *expected*."""
        with self._exclusive(cluster_id):
            document = self._load(cluster_id)
            if document.get(key) != expected:
                return False
            if new is None:
                document.pop(key, None)
            else:
                document[key] = new
            self._dump(cluster_id, document)
            return True

    def write_once(self, cluster_id: str, key: str, value: object) -> bool:
        """Store *value* only if *key* is unset."""
        return self.compare_and_swap(cluster_id, key, None, value)

    # ------------------------------------------------------------------
    def _exclusive(self, cluster_id: str) -> AbstractContextManager[LockHandle]:
        return self.locks.acquire(
            "state", _check_cluster_id(cluster_id), timeout=self.lock_timeout
        )

    def _load(self, cluster_id: str) -> dict[str, object]:
        path = self.path_for(cluster_id)
        if not path.exists():
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateStoreError(f"Failed to parse state file {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise StateStoreError(f"State file {path} must contain a mapping.")
        return {str(key): value for key, value in data.items()}

    def _dump(self, cluster_id: str, document: Mapping[str, object]) -> None:
        self.ensure_root()
        path = self.path_for(cluster_id)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(document), handle, sort_keys=True)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["FileStateStore", "MemoryStateStore", "StateStore", "StateStoreError"]
