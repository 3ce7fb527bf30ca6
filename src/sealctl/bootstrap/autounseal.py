"""Compose the transit seal stanza for every main-cluster node.

The coordinator never talks to an API. It turns a key reference and an
unseal credential into a validated :class:`SealStanza`, renders it as an HCL
``seal "transit"`` block and, when a node has a configuration directory,
writes ``seal-transit.hcl`` there before the node process starts.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..errors import IntegrityViolation
from ..models import NodeSpec, TransitKeyRef, UnsealCredential

LOG = logging.getLogger(__name__)

SEAL_FILE_NAME = "seal-transit.hcl"


@dataclass(frozen=True, slots=True)
class SealStanza:
    """Parameters of a node's ``seal "transit"`` block."""

    address: str
    token: str
    key_name: str
    mount_path: str
    tls_ca_cert: str | None = None
    tls_skip_verify: bool = False

    def fingerprint(self) -> str:
        """Return a digest identifying the stanza without exposing the token."""
        canonical = json.dumps(self._fields(), sort_keys=True).encode("utf-8")
        return hashlib.sha256(canonical).hexdigest()

    def to_hcl(self) -> str:
        """Render the stanza as an HCL block."""
        lines = ['seal "transit" {']
        for name, value in self._fields().items():
            if value is None:
                continue
            if isinstance(value, bool):
                rendered = "true" if value else "false"
            else:
                rendered = json.dumps(value)
            lines.append(f"  {name} = {rendered}")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, object]:
        """Return a redacted, serialisable representation."""
        payload = dict(self._fields())
        payload["token"] = "****"
        payload["fingerprint"] = self.fingerprint()
        return payload

    def _fields(self) -> dict[str, object]:
        return {
            "address": self.address,
            "token": self.token,
            "key_name": self.key_name,
            "mount_path": self.mount_path,
            "disable_renewal": "false",
            "tls_ca_cert": self.tls_ca_cert,
            "tls_skip_verify": self.tls_skip_verify,
        }


class AutoUnsealCoordinator:
    """Apply one identical seal stanza to every node."""

    def __init__(
        self,
        transit_address: str,
        *,
        ca_cert: Path | None = None,
        skip_verify: bool = False,
        file_name: str = SEAL_FILE_NAME,
    ) -> None:
        """Store the transit endpoint shared by every stanza."""
        self._address = transit_address.rstrip("/")
        self._ca_cert = str(ca_cert) if ca_cert else None
        self._skip_verify = skip_verify
        self._file_name = file_name
        self._applied: dict[str, SealStanza] = {}

    @property
    def applied(self) -> Mapping[str, SealStanza]:
        """Return the stanza configured for each node so far."""
        return dict(self._applied)

    def compose(self, key_ref: TransitKeyRef, credential: UnsealCredential) -> SealStanza:
        """Build the stanza, rejecting a credential issued for a different key."""
        if credential.key_ref != key_ref:
            raise IntegrityViolation(
                "Unseal credential was issued for "
                f"{credential.key_ref.encrypt_path}, not {key_ref.encrypt_path}."
            )
        if not credential.token:
            raise IntegrityViolation("Unseal credential has no token.")
        return SealStanza(
            address=self._address,
            token=credential.token,
            key_name=key_ref.key_name,
            mount_path=key_ref.mount_path,
            tls_ca_cert=self._ca_cert,
            tls_skip_verify=self._skip_verify,
        )

    def configure(
        self,
        node: NodeSpec,
        key_ref: TransitKeyRef,
        credential: UnsealCredential,
    ) -> bool:
        """Apply the stanza to *node*; return ``True`` if anything changed."""
        stanza = self.compose(key_ref, credential)
        for other_id, other in self._applied.items():
            if other_id != node.node_id and other.fingerprint() != stanza.fingerprint():
                raise IntegrityViolation(
                    f"Seal configuration for '{node.node_id}' differs from '{other_id}'."
                )
        previous = self._applied.get(node.node_id)
        self._applied[node.node_id] = stanza
        changed = previous is None or previous != stanza
        if node.config_dir:
            changed = self._write(Path(node.config_dir), stanza)
        return changed

    def configure_all(
        self,
        nodes: Iterable[NodeSpec],
        key_ref: TransitKeyRef,
        credential: UnsealCredential,
    ) -> dict[str, bool]:
        """Apply the stanza to every node in *nodes*."""
        results: dict[str, bool] = {}
        for node in nodes:
            results[node.node_id] = self.configure(node, key_ref, credential)
        self.validate()
        return results

    def validate(self, stanzas: Mapping[str, SealStanza] | None = None) -> None:
        """Raise :class:`IntegrityViolation` if the nodes do not share one stanza."""
        candidates = dict(self._applied if stanzas is None else stanzas)
        fingerprints = {node_id: stanza.fingerprint() for node_id, stanza in candidates.items()}
        if len(set(fingerprints.values())) > 1:
            groups: dict[str, list[str]] = {}
            for node_id, digest in sorted(fingerprints.items()):
                groups.setdefault(digest[:12], []).append(node_id)
            detail = "; ".join(f"{digest}: {', '.join(ids)}" for digest, ids in groups.items())
            raise IntegrityViolation(f"Seal configuration differs across nodes ({detail}).")

    def verify_files(self, nodes: Iterable[NodeSpec], stanza: SealStanza) -> list[str]:
        """Return the ids of nodes whose seal file does not match *stanza*."""
        expected = stanza.to_hcl()
        mismatched: list[str] = []
        for node in nodes:
            if not node.config_dir:
                continue
            path = Path(node.config_dir) / self._file_name
            try:
                current = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                mismatched.append(node.node_id)
                continue
            if current != expected:
                mismatched.append(node.node_id)
        return mismatched

    def _write(self, config_dir: Path, stanza: SealStanza) -> bool:
        config_dir.mkdir(parents=True, exist_ok=True)
        path = config_dir / self._file_name
        content = stanza.to_hcl()
        try:
            if path.read_text(encoding="utf-8") == content:
                return False
        except FileNotFoundError:
            pass
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(config_dir), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        LOG.info("wrote seal stanza to %s", path)
        return True


__all__ = ["SEAL_FILE_NAME", "AutoUnsealCoordinator", "SealStanza"]
