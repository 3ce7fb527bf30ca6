"""Tests for CA bundle validation."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from sealctl.tls import TLSBundleError, all_loopback, is_loopback_address, load_ca_bundle


def _write_ca(path: Path, *, name: str = "Test Root CA", days: int = 30) -> Path:
    """Write a self-signed CA certificate valid for *days* days."""
    now = datetime.now(UTC)
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=2))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return path


def test_load_ca_bundle_parses_certificates(tmp_path: Path) -> None:
    """Subjects, fingerprints and the earliest expiry are reported."""
    bundle = load_ca_bundle(_write_ca(tmp_path / "ca.pem"))

    assert bundle.subjects == ("CN=Test Root CA",)
    assert len(bundle.fingerprints[0]) == 64
    assert bundle.pem.startswith("-----BEGIN CERTIFICATE-----")
    assert bundle.not_after > datetime.now(UTC)


def test_load_ca_bundle_rejects_expired(tmp_path: Path) -> None:
    """Bundles containing expired certificates are refused."""
    path = _write_ca(tmp_path / "ca.pem", days=1)

    with pytest.raises(TLSBundleError, match="expired"):
        load_ca_bundle(path, now=datetime.now(UTC) + timedelta(days=5))


def test_load_ca_bundle_rejects_garbage(tmp_path: Path) -> None:
    """Unreadable or non-PEM bundles raise TLSBundleError."""
    bogus = tmp_path / "bogus.pem"
    bogus.write_text("not a certificate\n", encoding="utf-8")

    with pytest.raises(TLSBundleError):
        load_ca_bundle(bogus)
    with pytest.raises(TLSBundleError, match="Unable to read"):
        load_ca_bundle(tmp_path / "missing.pem")


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("http://127.0.0.1:8200", True),
        ("https://localhost:8200", True),
        ("http://[::1]:8200", True),
        ("https://vault1:8200", False),
        ("10.0.0.5:8200", False),
    ],
)
def test_is_loopback_address(address: str, expected: bool) -> None:
    """Only loopback hosts qualify for relaxed TLS settings."""
    assert is_loopback_address(address) is expected


def test_all_loopback() -> None:
    """Every address must be loopback."""
    assert all_loopback(["http://127.0.0.1:8200", "http://localhost:8210"])
    assert not all_loopback(["http://127.0.0.1:8200", "https://vault2:8200"])
