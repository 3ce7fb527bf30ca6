"""S3-compatible object storage for snapshot uploads.

Uploads are staged under a prefix outside the cluster's snapshot prefix,
verified with ``head_object`` and only then copied to their final key. A
cancelled or corrupt upload therefore never becomes visible to listing or
retention pruning.
"""
from __future__ import annotations

import base64
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..config import StorageConfig
from ..errors import IntegrityViolation, StorageError, TransientNetworkError

LOG = logging.getLogger(__name__)

CHECKSUM_METADATA_KEY = "sha256"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_INTEGRITY_CODES = {"BadDigest", "InvalidDigest", "XAmzContentSHA256Mismatch"}
_TRANSIENT_CODES = {"500", "502", "503", "504", "SlowDown", "InternalError", "RequestTimeout"}
_TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    BotoConnectionError,
)


@dataclass(frozen=True, slots=True)
class StoredObject:
    """A listed object."""

    key: str
    size: int
    last_modified: datetime | None = None


class ObjectStorage(Protocol):
    """Operations the snapshot scheduler needs from object storage."""

    def put_verified(self, key: str, body: IO[bytes], *, size: int, sha256_hex: str) -> None:
        """Upload *body* to *key*, making it visible only after verification."""
        ...

    def exists(self, key: str) -> bool:
        """Return ``True`` when *key* exists."""
        ...

    def list_objects(self, prefix: str) -> list[StoredObject]:
        """Return every object under *prefix*."""
        ...

    def delete(self, key: str) -> None:
        """Delete *key*."""
        ...


class S3ObjectStorage:
    """:class:`ObjectStorage` backed by a boto3 S3 client."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        staging_prefix: str = ".staging/",
        server_checksum: bool = False,
    ) -> None:
        """Wrap an existing boto3 ``s3`` client."""
        self._client = client
        self.bucket = bucket
        self.staging_prefix = staging_prefix
        self.server_checksum = server_checksum

    @classmethod
    def from_config(cls, config: StorageConfig) -> S3ObjectStorage:
        """Create a storage backend from the ``storage`` configuration section."""
        client = boto3.client(
            "s3",
            endpoint_url=config.endpoint,
            region_name=config.region,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            config=BotoConfig(
                s3={"addressing_style": config.addressing_style},
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        return cls(
            client,
            config.bucket,
            staging_prefix=config.staging_prefix,
            server_checksum=config.server_checksum,
        )

    # ------------------------------------------------------------------
    def put_verified(self, key: str, body: IO[bytes], *, size: int, sha256_hex: str) -> None:
        """Stage, verify and promote an upload."""
        staging_key = f"{self.staging_prefix}{key}.{uuid.uuid4().hex[:12]}"
        put_args: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": staging_key,
            "Body": body,
            "ContentLength": size,
            "Metadata": {CHECKSUM_METADATA_KEY: sha256_hex},
        }
        if self.server_checksum:
            put_args["ChecksumSHA256"] = base64.b64encode(bytes.fromhex(sha256_hex)).decode("ascii")

        promoted = False
        try:
            self._call("put_object", **put_args)
            self._verify(staging_key, size=size, sha256_hex=sha256_hex)
            self._call(
                "copy_object",
                Bucket=self.bucket,
                Key=key,
                CopySource={"Bucket": self.bucket, "Key": staging_key},
                MetadataDirective="COPY",
            )
            try:
                self._verify(key, size=size, sha256_hex=sha256_hex)
            except IntegrityViolation:
                self._withdraw(key)
                raise
            promoted = True
        finally:
            self._discard(staging_key, promoted=promoted)

    def exists(self, key: str) -> bool:
        """Return ``True`` when *key* exists."""
        try:
            self._call("head_object", Bucket=self.bucket, Key=key)
        except StorageError as exc:
            if _is_missing(exc):
                return False
            raise
        return True

    def list_objects(self, prefix: str) -> list[StoredObject]:
        """Return every object under *prefix* using the ``list_objects_v2`` paginator."""
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            objects: list[StoredObject] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                objects.extend(_stored_objects(page.get("Contents", [])))
        except (ClientError, BotoCoreError) as exc:
            raise _translate("list_objects_v2", exc) from exc
        return objects

    def delete(self, key: str) -> None:
        """Delete *key*."""
        self._call("delete_object", Bucket=self.bucket, Key=key)

    # ------------------------------------------------------------------
    def _verify(self, key: str, *, size: int, sha256_hex: str) -> None:
        head = self._call("head_object", Bucket=self.bucket, Key=key)
        length = int(head.get("ContentLength", -1))
        metadata = {str(k).lower(): str(v) for k, v in (head.get("Metadata") or {}).items()}
        if length != size:
            raise IntegrityViolation(
                f"Uploaded object {key} has {length} bytes, expected {size}."
            )
        if metadata.get(CHECKSUM_METADATA_KEY) != sha256_hex:
            raise IntegrityViolation(f"Uploaded object {key} checksum does not match.")

    def _discard(self, staging_key: str, *, promoted: bool) -> None:
        try:
            self._call("delete_object", Bucket=self.bucket, Key=staging_key)
        except (StorageError, TransientNetworkError) as exc:
            if promoted:
                LOG.warning("could not remove staging object %s: %s", staging_key, exc)
            else:
                LOG.error("abandoned staging object %s could not be removed: %s", staging_key, exc)

    def _withdraw(self, key: str) -> None:
        try:
            self._call("delete_object", Bucket=self.bucket, Key=key)
        except (StorageError, TransientNetworkError) as exc:
            LOG.error("unverified object %s could not be removed: %s", key, exc)

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = getattr(self._client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(operation, exc) from exc
        return dict(response or {})


def _stored_objects(entries: Iterable[dict[str, Any]]) -> list[StoredObject]:
    return [
        StoredObject(
            key=str(entry["Key"]),
            size=int(entry.get("Size", 0)),
            last_modified=entry.get("LastModified"),
        )
        for entry in entries
    ]


def _error_code(exc: ClientError) -> str:
    error = exc.response.get("Error", {}) if hasattr(exc, "response") else {}
    return str(error.get("Code", ""))


def _is_missing(exc: StorageError) -> bool:
    return exc.code in _MISSING_CODES


def _translate(operation: str, exc: Exception) -> Exception:
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return TransientNetworkError(f"S3 {operation} failed: {exc}")
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _INTEGRITY_CODES:
            return IntegrityViolation(f"S3 {operation} rejected the upload checksum ({code}).")
        if code in _TRANSIENT_CODES:
            return TransientNetworkError(f"S3 {operation} failed ({code}): {exc}")
        return StorageError(f"S3 {operation} failed ({code}): {exc}", code=code)
    return StorageError(f"S3 {operation} failed: {exc}")


__all__ = ["CHECKSUM_METADATA_KEY", "ObjectStorage", "S3ObjectStorage", "StoredObject"]
