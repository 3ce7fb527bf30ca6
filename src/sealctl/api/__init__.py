"""Secrets control API client."""
from __future__ import annotations

from .client import TOKEN_HEADER, SecretsAPIClient, build_client

__all__ = ["TOKEN_HEADER", "SecretsAPIClient", "build_client"]
