"""Blob store: the consumer view of the content-addressable store.

Blobs are keyed by the SHA-256 hex digest of their bytes (the content
hash) and are immutable once stored. Only envelope ciphertext is put
here; the store never sees plaintext.

Two implementations:
- InMemoryBlobStore: process-local dict, for development and tests
- ObjectStoreBlobStore: S3-compatible bucket via ObjectStoreClient
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from medseal.services.primitives import hash_data, verify_hash
from medseal.services.storage import (
    IntegrityError,
    ObjectNotFoundError,
    ObjectStoreClient,
    StorageError,
)

if TYPE_CHECKING:
    from medseal.core.config import S3Settings

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Base exception for blob store operations.

    Attributes:
        message: Human-readable error description.
        content_ref: Content hash involved (if applicable).
        operation: The operation that failed ('put' or 'get').
        retryable: Whether repeating the same call may succeed.
    """

    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        content_ref: str | None = None,
        operation: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.message = message
        self.content_ref = content_ref
        self.operation = operation
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(message)


class BlobNotFoundError(BlobStoreError):
    """Raised when no blob is stored under a content hash."""

    default_retryable = False


class BlobIntegrityError(BlobStoreError):
    """Raised when stored bytes do not hash to their content hash."""

    default_retryable = False


class BlobStore(ABC):
    """Content-addressed put/get."""

    @abstractmethod
    async def put(self, data: bytes) -> str:
        """Store bytes and return their content hash.

        Storing the same bytes twice returns the same hash.

        Raises:
            BlobStoreError: If the write fails.
        """

    @abstractmethod
    async def get(self, content_ref: str) -> bytes:
        """Fetch the bytes stored under a content hash.

        Raises:
            BlobNotFoundError: If nothing is stored under the hash.
            BlobIntegrityError: If the stored bytes do not match the hash.
            BlobStoreError: If the read fails.
        """


class InMemoryBlobStore(BlobStore):
    """Dict-backed blob store."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def __contains__(self, content_ref: object) -> bool:
        return content_ref in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

    async def put(self, data: bytes) -> str:
        content_ref = hash_data(data)
        self._blobs.setdefault(content_ref, bytes(data))
        return content_ref

    async def get(self, content_ref: str) -> bytes:
        data = self._blobs.get(content_ref)
        if data is None:
            raise BlobNotFoundError(
                f"No blob stored for {content_ref[:16]}...",
                content_ref=content_ref,
                operation="get",
            )
        if not verify_hash(data, content_ref):
            raise BlobIntegrityError(
                f"Stored blob does not match {content_ref[:16]}...",
                content_ref=content_ref,
                operation="get",
            )
        return data


class ObjectStoreBlobStore(BlobStore):
    """Blob store backed by an S3-compatible bucket.

    boto3 is blocking, so each call runs in a worker thread.
    """

    def __init__(self, client: ObjectStoreClient, bucket: str, *, prefix: str = "") -> None:
        """Initialize the blob store.

        Args:
            client: Object store client.
            bucket: Bucket holding the blobs (must exist, see ensure_bucket).
            prefix: Key prefix; the object key is prefix + content hash.
        """
        self._client = client
        self._bucket = bucket
        self._prefix = prefix

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreBlobStore:
        """Create a blob store from S3Settings configuration."""
        return cls(
            ObjectStoreClient.from_settings(settings),
            settings.bucket,
            prefix=settings.prefix,
        )

    async def put(self, data: bytes) -> str:
        try:
            stored = await asyncio.to_thread(
                self._client.upload_content_addressed,
                self._bucket,
                data,
                prefix=self._prefix,
            )
        except StorageError as e:
            logger.error("Blob upload failed: %s", e.message)
            raise BlobStoreError(
                f"Blob upload failed: {e.message}", operation="put"
            ) from e

        logger.debug("Stored blob %s... (%d bytes)", stored.sha256_digest[:16], len(data))
        return stored.sha256_digest

    async def get(self, content_ref: str) -> bytes:
        key = f"{self._prefix}{content_ref}"
        try:
            return await asyncio.to_thread(
                self._client.download,
                self._bucket,
                key,
                expected_digest=content_ref,
            )
        except ObjectNotFoundError as e:
            raise BlobNotFoundError(
                f"No blob stored for {content_ref[:16]}...",
                content_ref=content_ref,
                operation="get",
            ) from e
        except IntegrityError as e:
            raise BlobIntegrityError(
                e.message, content_ref=content_ref, operation="get"
            ) from e
        except StorageError as e:
            logger.error("Blob download failed for %s...: %s", content_ref[:16], e.message)
            raise BlobStoreError(
                f"Blob download failed: {e.message}",
                content_ref=content_ref,
                operation="get",
            ) from e
