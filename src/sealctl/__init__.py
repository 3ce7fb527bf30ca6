"""Orchestrator for a transit auto-unsealed Raft secrets cluster."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in sync with ``pyproject.toml``.
__version__ = "0.1.0a0"
