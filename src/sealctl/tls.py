"""CA bundle loading and validation for TLS-protected secrets API endpoints."""
from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.hazmat.primitives import hashes

_LOOPBACK_NAMES = {"localhost", "localhost.localdomain"}


class TLSBundleError(RuntimeError):
    """Raised when a CA bundle cannot be used."""


@dataclass(frozen=True, slots=True)
class CABundle:
    """A parsed PEM CA bundle."""

    path: Path
    pem: str
    subjects: tuple[str, ...]
    fingerprints: tuple[str, ...]
    not_after: datetime


def load_ca_bundle(path: Path, *, now: datetime | None = None) -> CABundle:
    """Parse the PEM bundle at *path* and reject empty or expired bundles."""
    bundle_path = Path(path).expanduser()
    try:
        data = bundle_path.read_bytes()
    except OSError as exc:
        raise TLSBundleError(f"Unable to read CA bundle {bundle_path}: {exc}") from exc
    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise TLSBundleError(f"CA bundle {bundle_path} is not valid PEM: {exc}") from exc
    if not certificates:
        raise TLSBundleError(f"CA bundle {bundle_path} contains no certificates.")

    reference = now or datetime.now(tz=UTC)
    expired = [
        cert.subject.rfc4514_string()
        for cert in certificates
        if cert.not_valid_after_utc <= reference
    ]
    if expired:
        raise TLSBundleError(
            f"CA bundle {bundle_path} contains expired certificates: {', '.join(expired)}"
        )

    return CABundle(
        path=bundle_path,
        pem=data.decode("ascii"),
        subjects=tuple(cert.subject.rfc4514_string() for cert in certificates),
        fingerprints=tuple(cert.fingerprint(hashes.SHA256()).hex() for cert in certificates),
        not_after=min(cert.not_valid_after_utc for cert in certificates),
    )


def is_loopback_address(address: str) -> bool:
    """Return ``True`` when the host part of *address* is a loopback host."""
    host = urlsplit(address if "://" in address else f"//{address}").hostname or ""
    if host.lower() in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def all_loopback(addresses: Iterable[str]) -> bool:
    """Return ``True`` when every address in *addresses* targets loopback."""
    return all(is_loopback_address(address) for address in addresses)


__all__ = ["CABundle", "TLSBundleError", "all_loopback", "is_loopback_address", "load_ca_bundle"]
