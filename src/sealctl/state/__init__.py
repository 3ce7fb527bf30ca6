"""State storage helpers for sealctl."""
from __future__ import annotations

from .store import FileStateStore, MemoryStateStore, StateStore, StateStoreError

__all__ = ["FileStateStore", "MemoryStateStore", "StateStore", "StateStoreError"]
