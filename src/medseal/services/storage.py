"""S3-compatible object store client for sealed document ciphertext.

Only ciphertext ever reaches the object store: the envelope codec
encrypts before upload, so this module deals purely in opaque bytes and
their SHA-256 digests. Objects are content-addressed, so an object key
is derived from its bytes and a stored object is never overwritten with
different data.

Example:
    from medseal.services.storage import ObjectStoreClient
    from medseal.core.settings import get_settings

    settings = get_settings()
    client = ObjectStoreClient.from_settings(settings.s3)
    client.ensure_bucket(settings.s3.bucket)

    stored = client.upload_content_addressed(
        settings.s3.bucket, ciphertext, prefix=settings.s3.prefix
    )
    data = client.download(settings.s3.bucket, stored.key)
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from medseal.core.config import S3Settings

logger = logging.getLogger(__name__)

# User metadata entry holding the SHA-256 of the object body
DIGEST_METADATA_KEY = "sha256-digest"


@dataclass(frozen=True)
class StoredObject:
    """Result of an upload.

    Attributes:
        bucket: The bucket name.
        key: The object key in the bucket.
        sha256_digest: SHA-256 hex digest of the stored bytes.
        size_bytes: Size of the stored bytes.
        etag: S3 ETag.
    """

    bucket: str
    key: str
    sha256_digest: str
    size_bytes: int
    etag: str


class StorageError(Exception):
    """Base exception for object store operations.

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
    """Raised when downloaded bytes do not match their digest."""


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def sha256_hex(data: bytes) -> str:
    """Lowercase SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


class ObjectStoreClient:
    """Thin boto3 wrapper with digest bookkeeping.

    The client is synchronous; async callers run it in a worker thread
    (see ObjectStoreBlobStore).
    """

    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the object store client.

        Args:
            endpoint_url: S3-compatible endpoint URL (e.g., http://localhost:9000).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            region: Region name (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self._region = region
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": max_retries, "mode": "standard"},
                signature_version="s3v4",
            ),
        )
        logger.debug("Object store client for endpoint=%s region=%s", endpoint_url, region)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        """Create a client from S3Settings configuration."""
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    def ensure_bucket(self, bucket: str) -> bool:
        """Create the bucket if it is missing.

        Returns:
            True if the bucket was created, False if it already existed.

        Raises:
            StorageError: If the check or creation fails.
        """
        try:
            self._client.head_bucket(Bucket=bucket)
            return False
        except BotoCoreError as e:
            raise StorageError(
                f"Failed to reach object store: {e}", bucket=bucket, operation="head_bucket"
            ) from e
        except ClientError as e:
            if _error_code(e) not in ("404", "NoSuchBucket"):
                raise StorageError(
                    f"Failed to check bucket: {e}", bucket=bucket, operation="head_bucket"
                ) from e

        try:
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=bucket)
            else:
                self._client.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Failed to create bucket: {e}", bucket=bucket, operation="create_bucket"
            ) from e
        logger.info("Created bucket: %s", bucket)
        return True

    def upload(self, bucket: str, key: str, data: bytes) -> StoredObject:
        """Store bytes under a key, recording their digest in object metadata.

        Raises:
            BucketNotFoundError: If the bucket does not exist.
            StorageError: If the upload fails.
        """
        digest = sha256_hex(data)
        try:
            response = self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType="application/octet-stream",
                Metadata={DIGEST_METADATA_KEY: digest},
            )
        except ClientError as e:
            if _error_code(e) == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {bucket}", bucket=bucket, key=key, operation="upload"
                ) from e
            raise StorageError(
                f"Upload failed: {e}", bucket=bucket, key=key, operation="upload"
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Upload failed: {e}", bucket=bucket, key=key, operation="upload"
            ) from e

        logger.debug("Uploaded %s/%s (%d bytes, sha256=%s...)", bucket, key, len(data), digest[:16])
        return StoredObject(
            bucket=bucket,
            key=key,
            sha256_digest=digest,
            size_bytes=len(data),
            etag=response.get("ETag", ""),
        )

    def upload_content_addressed(
        self, bucket: str, data: bytes, *, prefix: str = ""
    ) -> StoredObject:
        """Store bytes under `prefix + sha256(data)`.

        An object already present under that key holds the same bytes, so
        the upload is skipped.
        """
        key = f"{prefix}{sha256_hex(data)}"
        if self.exists(bucket, key):
            logger.debug("Content already stored at %s/%s", bucket, key)
            return StoredObject(
                bucket=bucket,
                key=key,
                sha256_digest=key.removeprefix(prefix),
                size_bytes=len(data),
                etag="",
            )
        return self.upload(bucket, key, data)

    def download(
        self,
        bucket: str,
        key: str,
        *,
        expected_digest: str | None = None,
    ) -> bytes:
        """Fetch an object and verify its digest.

        The expected digest, when given, takes precedence over the digest
        recorded in object metadata.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            BucketNotFoundError: If the bucket does not exist.
            IntegrityError: If the bytes do not match the digest.
            StorageError: If the download fails.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            code = _error_code(e)
            if code == "NoSuchKey":
                raise ObjectNotFoundError(
                    f"Object does not exist: {bucket}/{key}",
                    bucket=bucket,
                    key=key,
                    operation="download",
                ) from e
            if code == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {bucket}", bucket=bucket, key=key, operation="download"
                ) from e
            raise StorageError(
                f"Download failed: {e}", bucket=bucket, key=key, operation="download"
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Download failed: {e}", bucket=bucket, key=key, operation="download"
            ) from e

        digest = expected_digest or response.get("Metadata", {}).get(DIGEST_METADATA_KEY)
        actual = sha256_hex(data)
        if digest and actual != digest:
            raise IntegrityError(
                f"Content integrity check failed: expected {digest[:16]}..., got {actual[:16]}...",
                bucket=bucket,
                key=key,
                operation="download",
            )
        logger.debug("Downloaded %s/%s (%d bytes)", bucket, key, len(data))
        return data

    def exists(self, bucket: str, key: str) -> bool:
        """Check whether an object exists.

        Raises:
            StorageError: If the check fails for reasons other than not found.
        """
        try:
            self._client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchKey"):
                return False
            raise StorageError(
                f"Existence check failed: {e}", bucket=bucket, key=key, operation="exists"
            ) from e
