"""Error taxonomy shared by the bootstrap and snapshot workflows.

Every failure raised by sealctl derives from :class:`SealctlError` so callers
can decide on retry behaviour by class rather than by inspecting messages:

* :class:`TransientNetworkError` is retried with bounded backoff.
* :class:`AlreadySatisfied` signals an idempotent no-op and is treated as success.
* :class:`AuthorizationDenied` triggers at most one re-authentication.
* :class:`QuorumNotMet` reports a partial cluster formation.
* :class:`IntegrityViolation` is fatal and never retried.
"""
from __future__ import annotations

from collections.abc import Sequence


class SealctlError(RuntimeError):
    """Base class for sealctl failures."""


class TransientNetworkError(SealctlError):
    """Raised for connection failures, timeouts, and retryable server errors."""


class AlreadySatisfied(SealctlError):
    """Raised when the requested change is already in place (e.g. already initialised)."""


class AuthorizationDenied(SealctlError):
    """Raised when a credential is missing, invalid, expired, or lacks permission."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuorumNotMet(SealctlError):
    """Raised when fewer voters than the quorum joined the Raft cluster."""

    def __init__(self, message: str, *, joined: Sequence[str], failed: Sequence[str]) -> None:
        super().__init__(message)
        self.joined = tuple(joined)
        self.failed = tuple(failed)


class IntegrityViolation(SealctlError):
    """Raised on inconsistent seal configuration or snapshot checksum mismatches."""


class APIError(SealctlError):
    """Raised for secrets API failures that do not fit a more specific category."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        errors: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = tuple(errors)


class ReachabilityTimeout(SealctlError):
    """Raised when a bounded wait for an endpoint or condition is exhausted."""


class TransitSealedError(SealctlError):
    """Raised when the transit instance is sealed and cannot serve unseal callbacks."""


class ConcurrentBootstrapError(SealctlError):
    """Raised when another bootstrap sequence already holds the cluster lease."""


class PolicyError(SealctlError):
    """Raised when a policy document grants more than least privilege allows."""


class StorageError(SealctlError):
    """Raised when object storage operations fail permanently."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


__all__ = [
    "APIError",
    "AlreadySatisfied",
    "AuthorizationDenied",
    "ConcurrentBootstrapError",
    "IntegrityViolation",
    "PolicyError",
    "QuorumNotMet",
    "ReachabilityTimeout",
    "SealctlError",
    "StorageError",
    "TransientNetworkError",
    "TransitSealedError",
]
