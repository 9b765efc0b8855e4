"""Object store integration for export artifacts.

This module provides an S3-compatible client wrapper used by the export
worker to store artifacts and manifests, and by the retention worker to
reclaim them. SHA-256 digests are stored in object metadata on upload and
verified on download.

Bucket existence is tracked by an explicit BucketRegistry owned by each
client rather than by module state:
- a bucket is checked (and created if missing) the first time it is used
- a missing-bucket error on upload invalidates that bucket so the next
  attempt re-creates it
- reset() forgets everything (worker shutdown, tests)

Example:
    from exportledger.services.storage import ObjectStoreClient
    from exportledger.core.settings import get_settings

    client = ObjectStoreClient.from_settings(get_settings().s3)
    result = client.put("exports", "org/ledger-exports/1.pdf", pdf, "application/pdf")
    client.remove("exports", [result.key])
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from mypy_boto3_s3 import S3Client

    from exportledger.core.config import S3Settings

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000


@dataclass(frozen=True)
class UploadResult:
    """Result of an upload operation.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        sha256_digest: SHA-256 hex digest of the uploaded content.
        size_bytes: Size of the uploaded content in bytes.
        etag: S3 ETag.
    """

    key: str
    bucket: str
    sha256_digest: str
    size_bytes: int
    etag: str


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class IntegrityError(StorageError):
    """Raised when content integrity verification fails."""


class BucketRegistry:
    """Set of buckets this process has confirmed to exist.

    Lifecycle: empty on construction; a bucket is added after a successful
    head/create; invalidate() drops one bucket after the store reports it
    missing; reset() drops all of them. Safe to share between threads.
    """

    def __init__(self) -> None:
        self._ensured: set[str] = set()
        self._lock = threading.Lock()

    def __contains__(self, bucket: str) -> bool:
        with self._lock:
            return bucket in self._ensured

    def mark_ensured(self, bucket: str) -> None:
        with self._lock:
            self._ensured.add(bucket)

    def invalidate(self, bucket: str) -> None:
        with self._lock:
            self._ensured.discard(bucket)
        logger.info("Bucket cache invalidated: bucket=%s", bucket)

    def reset(self) -> None:
        with self._lock:
            self._ensured.clear()

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ensured)


def endpoint_url_for(settings: S3Settings) -> str:
    """Endpoint URL with its scheme taken from ``secure`` when none is given.

    An explicit http:// endpoint is kept as configured, with a warning when
    ``secure`` asks for HTTPS.
    """
    endpoint = settings.endpoint.rstrip("/")
    if "://" not in endpoint:
        scheme = "https" if settings.secure else "http"
        return f"{scheme}://{endpoint}"
    if settings.secure and endpoint.startswith("http://"):
        logger.warning("S3 endpoint is plain HTTP although secure=true: endpoint=%s", endpoint)
    return endpoint


class ObjectStoreClient:
    """S3-compatible object storage client with integrity verification.

    Uses synchronous boto3 under the hood; calls are short and made one at
    a time from the worker loop.
    """

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
        use_ssl: bool = True,
        registry: BucketRegistry | None = None,
    ) -> None:
        """Initialize the object store client.

        Args:
            endpoint_url: S3-compatible endpoint URL (None for AWS).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
            use_ssl: Use HTTPS when the endpoint does not name a scheme.
            registry: Ensured-bucket registry; a fresh one by default.
        """
        self._endpoint_url = endpoint_url
        self._region = region
        self.buckets = registry if registry is not None else BucketRegistry()

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )

        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            use_ssl=use_ssl,
            config=config,
        )

        logger.debug(
            "Initialized ObjectStoreClient for endpoint=%s region=%s",
            endpoint_url,
            region,
        )

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        """Create client from S3Settings configuration."""
        return cls(
            endpoint_url=endpoint_url_for(settings),
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
            use_ssl=settings.secure,
        )

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get("Error", {}).get("Code", ""))

    def ensure_bucket(self, bucket: str) -> bool:
        """Ensure a bucket exists, creating it if necessary.

        Buckets already in the registry are not checked again.

        Returns:
            True if the bucket was created, False if it already existed.

        Raises:
            StorageError: If the bucket cannot be checked or created.
        """
        if bucket in self.buckets:
            return False

        try:
            self._client.head_bucket(Bucket=bucket)
            logger.debug("Bucket %s already exists", bucket)
            self.buckets.mark_ensured(bucket)
            return False
        except ClientError as e:
            if self._error_code(e) not in ("404", "NoSuchBucket", "NotFound"):
                raise StorageError(
                    f"Failed to check bucket existence: {e}",
                    bucket=bucket,
                    operation="head_bucket",
                ) from e

        try:
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=bucket)
            else:
                self._client.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            # Another worker created it between our head and create
            if self._error_code(e) not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise StorageError(
                    f"Failed to create bucket: {e}",
                    bucket=bucket,
                    operation="create_bucket",
                ) from e
            self.buckets.mark_ensured(bucket)
            return False

        logger.info("Created bucket: %s", bucket)
        self.buckets.mark_ensured(bucket)
        return True

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        *,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        """Upload content, recording its SHA-256 digest in object metadata.

        Raises:
            BucketNotFoundError: If the bucket does not exist. The bucket is
                dropped from the registry so the next attempt re-creates it.
            StorageError: If the upload fails for another reason.
        """
        sha256_digest = hashlib.sha256(data).hexdigest()

        upload_metadata = {"sha256-digest": sha256_digest}
        if metadata:
            upload_metadata.update(metadata)

        try:
            response = self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=upload_metadata,
            )
        except ClientError as e:
            if self._error_code(e) == "NoSuchBucket":
                self.buckets.invalidate(bucket)
                raise BucketNotFoundError(
                    f"Storage upload failed, bucket does not exist: {bucket}",
                    bucket=bucket,
                    key=key,
                    operation="upload",
                ) from e
            raise StorageError(
                f"Storage upload failed: {e}",
                bucket=bucket,
                key=key,
                operation="upload",
            ) from e

        logger.debug(
            "Uploaded %s/%s (%d bytes, sha256=%s)",
            bucket,
            key,
            len(data),
            sha256_digest[:16] + "...",
        )

        return UploadResult(
            key=key,
            bucket=bucket,
            sha256_digest=sha256_digest,
            size_bytes=len(data),
            etag=response.get("ETag", ""),
        )

    def download(
        self,
        bucket: str,
        key: str,
        *,
        verify_integrity: bool = True,
        expected_digest: str | None = None,
    ) -> bytes:
        """Download content, verifying its SHA-256 digest.

        expected_digest, when given, takes precedence over the digest stored
        in object metadata.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            IntegrityError: If digest verification fails.
            StorageError: If the download fails.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = self._error_code(e)
            if code == "NoSuchKey":
                raise ObjectNotFoundError(
                    f"Object does not exist: {bucket}/{key}",
                    bucket=bucket,
                    key=key,
                    operation="download",
                ) from e
            if code == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {bucket}",
                    bucket=bucket,
                    key=key,
                    operation="download",
                ) from e
            raise StorageError(
                f"Download failed: {e}",
                bucket=bucket,
                key=key,
                operation="download",
            ) from e

        data = response["Body"].read()

        if verify_integrity:
            digest_to_check = expected_digest or response.get("Metadata", {}).get("sha256-digest")
            computed = hashlib.sha256(data).hexdigest()
            if digest_to_check and computed != digest_to_check:
                raise IntegrityError(
                    f"Content integrity check failed: expected {digest_to_check[:16]}..., "
                    f"got {computed[:16]}...",
                    bucket=bucket,
                    key=key,
                    operation="download",
                )

        return data

    def remove(self, bucket: str, keys: Iterable[str]) -> int:
        """Delete objects. Deleting a missing object or bucket is a no-op.

        Returns:
            Number of keys submitted for deletion.

        Raises:
            StorageError: If the store rejects the request or any key.
        """
        key_list = [k for k in dict.fromkeys(keys) if k]
        if not key_list:
            return 0

        for start in range(0, len(key_list), DELETE_BATCH_SIZE):
            batch = key_list[start : start + DELETE_BATCH_SIZE]
            try:
                response = self._client.delete_objects(
                    Bucket=bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except ClientError as e:
                if self._error_code(e) == "NoSuchBucket":
                    logger.debug("Remove skipped, bucket does not exist: %s", bucket)
                    return 0
                raise StorageError(
                    f"Delete failed: {e}",
                    bucket=bucket,
                    operation="remove",
                ) from e

            errors = [
                err for err in response.get("Errors", []) if err.get("Code") != "NoSuchKey"
            ]
            if errors:
                first = errors[0]
                raise StorageError(
                    f"Delete failed for {len(errors)} object(s): {first.get('Message', '')}",
                    bucket=bucket,
                    key=first.get("Key"),
                    operation="remove",
                )

        logger.debug("Removed %d object(s) from %s", len(key_list), bucket)
        return len(key_list)

    def exists(self, bucket: str, key: str) -> bool:
        """Check whether an object exists.

        Raises:
            StorageError: If the check fails for reasons other than not found.
        """
        try:
            self._client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if self._error_code(e) in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(
                f"Existence check failed: {e}",
                bucket=bucket,
                key=key,
                operation="exists",
            ) from e
