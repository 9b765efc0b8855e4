"""Tests for object storage integration.

Tests cover:
- Ensured-bucket registry lifecycle (ensure once, invalidate, reset)
- Upload and download with integrity verification
- Batched, idempotent removal
- Error mapping (missing bucket, missing object, integrity failures)

Uses moto for S3 mocking to enable fast unit tests without Docker.
"""

import hashlib
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from exportledger.core.config import S3Settings
from exportledger.services.storage import (
    BucketNotFoundError,
    BucketRegistry,
    IntegrityError,
    ObjectNotFoundError,
    ObjectStoreClient,
    StorageError,
    endpoint_url_for,
)

BUCKET = "exports"


@pytest.fixture
def sample_content():
    return b'{"files": [], "version": "1.0"}'


class TestBucketRegistry:
    """Tests for the in-process ensured-bucket set."""

    def test_lifecycle(self):
        registry = BucketRegistry()
        assert "exports" not in registry

        registry.mark_ensured("exports")
        registry.mark_ensured("archive")
        assert "exports" in registry
        assert registry.snapshot() == frozenset({"exports", "archive"})

        registry.invalidate("exports")
        assert "exports" not in registry
        assert "archive" in registry

        registry.reset()
        assert registry.snapshot() == frozenset()

    def test_invalidate_unknown_bucket_is_noop(self):
        registry = BucketRegistry()
        registry.invalidate("never-seen")
        assert registry.snapshot() == frozenset()


class TestEnsureBucket:
    """Bucket creation is checked once per process."""

    def test_creates_missing_bucket(self, storage):
        assert storage.ensure_bucket(BUCKET) is True
        assert BUCKET in storage.buckets

    def test_existing_bucket_not_created(self, storage):
        storage._client.create_bucket(Bucket=BUCKET)

        assert storage.ensure_bucket(BUCKET) is False
        assert BUCKET in storage.buckets

    def test_registry_skips_remote_check(self, storage):
        storage.ensure_bucket(BUCKET)
        storage._client = MagicMock()

        assert storage.ensure_bucket(BUCKET) is False
        storage._client.head_bucket.assert_not_called()

    def test_head_failure_raises(self, storage):
        storage._client = MagicMock()
        storage._client.head_bucket.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "HeadBucket"
        )

        with pytest.raises(StorageError) as exc_info:
            storage.ensure_bucket(BUCKET)
        assert exc_info.value.operation == "head_bucket"
        assert BUCKET not in storage.buckets

    def test_create_race_tolerated(self, storage):
        storage._client = MagicMock()
        storage._client.head_bucket.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket"
        )
        storage._client.create_bucket.side_effect = ClientError(
            {"Error": {"Code": "BucketAlreadyOwnedByYou", "Message": "mine"}}, "CreateBucket"
        )

        assert storage.ensure_bucket(BUCKET) is False
        assert BUCKET in storage.buckets


class TestPutAndDownload:
    """Upload with digest metadata and verified download."""

    def test_round_trip_verifies_digest(self, storage, sample_content):
        storage.ensure_bucket(BUCKET)

        result = storage.put(BUCKET, "org/manifest.json", sample_content, "application/json")

        assert result.sha256_digest == hashlib.sha256(sample_content).hexdigest()
        assert result.size_bytes == len(sample_content)
        assert storage.download(BUCKET, "org/manifest.json") == sample_content

    def test_expected_digest_mismatch(self, storage, sample_content):
        storage.ensure_bucket(BUCKET)
        storage.put(BUCKET, "a.pdf", sample_content)

        with pytest.raises(IntegrityError):
            storage.download(BUCKET, "a.pdf", expected_digest="0" * 64)

    def test_tampered_object_detected(self, storage, sample_content):
        storage.ensure_bucket(BUCKET)
        storage.put(BUCKET, "a.pdf", sample_content)
        # Overwrite the body but keep the stale digest
        storage._client.put_object(
            Bucket=BUCKET,
            Key="a.pdf",
            Body=b"tampered",
            Metadata={"sha256-digest": hashlib.sha256(sample_content).hexdigest()},
        )

        with pytest.raises(IntegrityError):
            storage.download(BUCKET, "a.pdf")
        assert storage.download(BUCKET, "a.pdf", verify_integrity=False) == b"tampered"

    def test_put_to_missing_bucket_invalidates_registry(self, storage, sample_content):
        # Registry believes the bucket exists but it was deleted underneath us
        storage.buckets.mark_ensured(BUCKET)

        with pytest.raises(BucketNotFoundError, match="bucket does not exist"):
            storage.put(BUCKET, "a.pdf", sample_content)

        assert BUCKET not in storage.buckets
        assert storage.ensure_bucket(BUCKET) is True

    def test_download_missing_object(self, storage):
        storage.ensure_bucket(BUCKET)

        with pytest.raises(ObjectNotFoundError):
            storage.download(BUCKET, "missing.pdf")

    def test_exists(self, storage, sample_content):
        storage.ensure_bucket(BUCKET)
        storage.put(BUCKET, "a.pdf", sample_content)

        assert storage.exists(BUCKET, "a.pdf")
        assert not storage.exists(BUCKET, "b.pdf")


class TestRemove:
    """Deletion is idempotent."""

    def test_removes_objects(self, storage, sample_content):
        storage.ensure_bucket(BUCKET)
        storage.put(BUCKET, "a.pdf", sample_content)
        storage.put(BUCKET, "a-manifest.json", sample_content)

        removed = storage.remove(BUCKET, ["a.pdf", "a-manifest.json", "a.pdf"])

        assert removed == 2
        assert not storage.exists(BUCKET, "a.pdf")
        assert not storage.exists(BUCKET, "a-manifest.json")

    def test_missing_objects_are_noop(self, storage):
        storage.ensure_bucket(BUCKET)

        assert storage.remove(BUCKET, ["never-uploaded.pdf"]) == 1

    def test_missing_bucket_is_noop(self, storage):
        assert storage.remove("no-such-bucket", ["a.pdf"]) == 0

    def test_empty_keys(self, storage):
        storage._client = MagicMock()

        assert storage.remove(BUCKET, [None, ""]) == 0
        storage._client.delete_objects.assert_not_called()

    def test_rejected_key_raises(self, storage):
        storage._client = MagicMock()
        storage._client.delete_objects.return_value = {
            "Errors": [{"Key": "a.pdf", "Code": "AccessDenied", "Message": "denied"}]
        }

        with pytest.raises(StorageError) as exc_info:
            storage.remove(BUCKET, ["a.pdf"])
        assert exc_info.value.key == "a.pdf"


class TestFromSettings:
    """Client construction from S3Settings."""

    @staticmethod
    def s3_settings(**overrides) -> S3Settings:
        return S3Settings(access_key="key", secret_key="secret", **overrides)

    @pytest.mark.parametrize(
        ("endpoint", "secure", "expected"),
        [
            ("minio:9000", True, "https://minio:9000"),
            ("minio:9000", False, "http://minio:9000"),
            ("https://s3.example.com/", False, "https://s3.example.com"),
            ("http://localhost:9000", False, "http://localhost:9000"),
        ],
    )
    def test_endpoint_scheme(self, endpoint, secure, expected):
        assert endpoint_url_for(self.s3_settings(endpoint=endpoint, secure=secure)) == expected

    def test_plain_http_with_secure_warns(self, caplog):
        settings = self.s3_settings(endpoint="http://localhost:9000", secure=True)

        assert endpoint_url_for(settings) == "http://localhost:9000"
        assert "plain HTTP although secure=true" in caplog.text

    def test_secure_flag_reaches_boto3(self):
        settings = self.s3_settings(endpoint="s3.example.com", secure=True, region="eu-west-1")

        with patch("exportledger.services.storage.boto3.client") as client:
            ObjectStoreClient.from_settings(settings)

        kwargs = client.call_args.kwargs
        assert kwargs["endpoint_url"] == "https://s3.example.com"
        assert kwargs["use_ssl"] is True
        assert kwargs["region_name"] == "eu-west-1"
        assert kwargs["aws_secret_access_key"] == "secret"
