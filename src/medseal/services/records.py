"""Record access service: the operations callers use on sealed records.

This module ties the envelope codec, the authorization ledger, the blob
store and the rotation/revocation engines together:
- seal_new: encrypt a new record for its owner and initial recipients
- open: decrypt a record for its owner or a grant holder
- grant: give one more principal access to the current generation
- rotate / resume_rotation / rotate_many: move records to a new DEK
- revoke / revoke_expired: remove grants (ledger access only)

Authorization model:
- Owner: can always open the record with the key it is wrapped for
- Grant holder: can open while the grant is unexpired and wraps the
  record's current generation
- Anyone else: AccessDeniedError

Example:
    from medseal.core.settings import get_settings
    from medseal.services.records import create_record_access_service

    service = create_record_access_service(get_settings())
    sealed = await service.seal_new("rec-1", owner, b"lab results", [doctor])
    plaintext = await service.open("rec-1", "doctor-1", doctor_private_key)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from medseal.services.blob_store import ObjectStoreBlobStore
from medseal.services.envelope import (
    AccessGrant,
    DocumentEnvelope,
    EnvelopeCodec,
    RecordTombstone,
    StaleGrantError,
    build_aad,
)
from medseal.services.ledger import GrantNotFoundError, SqlAuthorizationLedger
from medseal.services.revocation import RevocationEngine
from medseal.services.rotation import (
    DEFAULT_PROPAGATION_CONCURRENCY,
    KeyRotationEngine,
)

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

    from medseal.core.config import Settings
    from medseal.services.blob_store import BlobStore
    from medseal.services.envelope import OwnerCredentials, Recipient
    from medseal.services.ledger import AuthorizationLedger
    from medseal.services.rotation import (
        BulkRotationOutcome,
        PendingPropagation,
        RotationRequest,
        RotationResult,
    )

logger = logging.getLogger(__name__)


class RecordAccessError(Exception):
    """Base exception for access decisions on a record.

    Attributes:
        message: Human-readable error description.
        record_ref: The record involved.
        principal_id: The principal that was refused.
    """

    def __init__(self, message: str, *, record_ref: str, principal_id: str) -> None:
        self.message = message
        self.record_ref = record_ref
        self.principal_id = principal_id
        super().__init__(message)


class AccessDeniedError(RecordAccessError):
    """Raised when a principal is neither the owner nor a grant holder."""


class AccessExpiredError(RecordAccessError):
    """Raised when a principal's grant has passed its expiry."""


@dataclass(frozen=True)
class SealResult:
    """Outcome of seal_new().

    Attributes:
        content_ref: Content hash of the stored ciphertext.
        envelope: Generation 1 envelope committed to the ledger.
        grants: Grants written for the initial recipients.
    """

    content_ref: str
    envelope: DocumentEnvelope
    grants: list[AccessGrant] = field(default_factory=list)


def expiry_for(granted_at: datetime, duration_days: int) -> datetime | None:
    """Expiry of a grant lasting duration_days; 0 means it never expires."""
    if duration_days < 0:
        raise ValueError("duration_days cannot be negative")
    if duration_days == 0:
        return None
    return granted_at + timedelta(days=duration_days)


class RecordAccessService:
    """Caller-facing operations on sealed medical records.

    All collaborators are injected; the service keeps no key material and
    no cached ledger state between calls.
    """

    def __init__(
        self,
        ledger: AuthorizationLedger,
        blob_store: BlobStore,
        codec: EnvelopeCodec,
        *,
        propagation_concurrency: int = DEFAULT_PROPAGATION_CONCURRENCY,
    ) -> None:
        """Initialize the service.

        Args:
            ledger: Authorization ledger view.
            blob_store: Content-addressed ciphertext store.
            codec: Envelope codec.
            propagation_concurrency: Maximum concurrent grant writes in a rotation.
        """
        self._ledger = ledger
        self._blob_store = blob_store
        self._codec = codec
        self._rotation = KeyRotationEngine(
            ledger,
            blob_store,
            codec,
            propagation_concurrency=propagation_concurrency,
        )
        self._revocation = RevocationEngine(ledger)

    @property
    def ledger(self) -> AuthorizationLedger:
        return self._ledger

    @property
    def blob_store(self) -> BlobStore:
        return self._blob_store

    async def seal_new(
        self,
        record_ref: str,
        owner: OwnerCredentials,
        content: bytes,
        recipients: Iterable[Recipient] = (),
        *,
        duration_days: int = 0,
    ) -> SealResult:
        """Encrypt and register a new record.

        The record entry is committed before any grant. If a grant write
        fails the record exists for its owner, and the missing grant can be
        issued again with grant().

        Args:
            record_ref: Ledger reference for the new record.
            owner: Owner principal and private key.
            content: Plaintext document.
            recipients: Secondary principals to grant access to.
            duration_days: Lifetime of those grants in days (0 = no expiry).

        Returns:
            SealResult with the content ref, envelope and grants.

        Raises:
            LedgerConflictError: If the record already exists.
            BlobStoreError, LedgerError, EnvelopeError: If a step fails.
        """
        secondary = [r for r in recipients if r.recipient_id != owner.owner_id]
        granted_at = datetime.now(UTC)
        expires_at = expiry_for(granted_at, duration_days)

        sealed = self._codec.seal(
            content,
            [owner.as_recipient(), *secondary],
            generation=1,
            associated_data=build_aad(record_ref, 1),
        )
        content_ref = await self._blob_store.put(sealed.ciphertext)
        envelope = sealed.to_envelope(
            record_ref=record_ref,
            owner_id=owner.owner_id,
            content_ref=content_ref,
        )
        await self._ledger.commit_record_update(record_ref, envelope)
        logger.info(
            "Sealed record %s for %s (content %s..., %d recipient(s))",
            record_ref,
            owner.owner_id,
            content_ref[:16],
            len(secondary),
        )

        grants = []
        for recipient in secondary:
            grant = AccessGrant(
                record_ref=record_ref,
                recipient_id=recipient.recipient_id,
                wrapped_key=sealed.wrapped_keys[recipient.recipient_id],
                expires_at=expires_at,
                granted_at=granted_at,
            )
            await self._ledger.put_grant(grant)
            grants.append(grant)
        return SealResult(content_ref=content_ref, envelope=envelope, grants=grants)

    async def open(
        self,
        record_ref: str,
        principal_id: str,
        private_key: RSAPrivateKey,
    ) -> bytes:
        """Decrypt a record's current content for a principal.

        The owner and grant holders use the same decryption path; they
        differ only in which wrapped key is read from the ledger.

        Args:
            record_ref: Record to open.
            principal_id: Principal requesting the content.
            private_key: That principal's private key.

        Returns:
            Plaintext content.

        Raises:
            RecordNotFoundError: If the record does not exist.
            AccessDeniedError: If the principal holds no grant.
            AccessExpiredError: If the principal's grant has expired.
            StaleGrantError: If the grant wraps an older generation.
            EnvelopeError: If decryption fails.
        """
        envelope = await self._ledger.get_record_envelope(record_ref)

        if principal_id == envelope.owner_id:
            wrapped_key = envelope.owner_wrapped_key
        else:
            try:
                grant = await self._ledger.get_grant(record_ref, principal_id)
            except GrantNotFoundError as e:
                logger.warning("Access denied: %s has no grant on %s", principal_id, record_ref)
                raise AccessDeniedError(
                    f"{principal_id} is not authorized to open record {record_ref}",
                    record_ref=record_ref,
                    principal_id=principal_id,
                ) from e
            if grant.is_expired():
                logger.warning("Access denied: grant for %s on %s expired", principal_id, record_ref)
                raise AccessExpiredError(
                    f"Grant for {principal_id} on record {record_ref} has expired",
                    record_ref=record_ref,
                    principal_id=principal_id,
                )
            if grant.generation > envelope.generation:
                # A rotation committed between the two reads
                envelope = await self._ledger.get_record_envelope(record_ref)
            if grant.generation != envelope.generation:
                raise StaleGrantError(record_ref, grant.generation, envelope.generation)
            wrapped_key = grant.wrapped_key

        ciphertext = await self._blob_store.get(envelope.content_ref)
        plaintext = self._codec.open(
            ciphertext,
            envelope.iv,
            wrapped_key,
            private_key,
            associated_data=envelope.aad(),
            expected_mac=envelope.content_mac,
        )
        logger.debug(
            "Opened record %s for %s at generation %d",
            record_ref,
            principal_id,
            envelope.generation,
        )
        return plaintext

    async def grant(
        self,
        record_ref: str,
        owner: OwnerCredentials,
        recipient: Recipient,
        *,
        duration_days: int = 0,
    ) -> AccessGrant:
        """Give a principal access to the record's current generation.

        The owner unwraps the current DEK and wraps it for the recipient;
        the DEK exists only inside this call. An existing grant for the
        same recipient is replaced.

        Args:
            record_ref: Record to share.
            owner: Owner principal and private key.
            recipient: Principal receiving access.
            duration_days: Lifetime of the grant in days (0 = no expiry).

        Returns:
            The grant written to the ledger.

        Raises:
            AccessDeniedError: If the caller is not the record owner.
            ValueError: If the recipient is the owner or duration is negative.
        """
        envelope = await self._ledger.get_record_envelope(record_ref)
        if owner.owner_id != envelope.owner_id:
            raise AccessDeniedError(
                f"Only the owner can grant access to record {record_ref}",
                record_ref=record_ref,
                principal_id=owner.owner_id,
            )
        if recipient.recipient_id == owner.owner_id:
            raise ValueError("The owner already has access to its own record")

        granted_at = datetime.now(UTC)
        grant = AccessGrant(
            record_ref=record_ref,
            recipient_id=recipient.recipient_id,
            wrapped_key=self._codec.rewrap(
                envelope.owner_wrapped_key, owner.private_key, recipient
            ),
            expires_at=expiry_for(granted_at, duration_days),
            granted_at=granted_at,
        )
        await self._ledger.put_grant(grant)
        logger.info(
            "Granted %s access to record %s at generation %d (expires %s)",
            recipient.recipient_id,
            record_ref,
            grant.generation,
            grant.expires_at.isoformat() if grant.expires_at else "never",
        )
        return grant

    async def rotate(
        self,
        record_ref: str,
        owner: OwnerCredentials,
        retained: Iterable[Recipient],
        new_content: bytes | None = None,
    ) -> RotationResult:
        """Rotate a record's DEK. See KeyRotationEngine.rotate."""
        return await self._rotation.rotate(record_ref, owner, retained, new_content)

    async def resume_rotation(self, pending: PendingPropagation) -> RotationResult:
        """Finish a partial rotation. See KeyRotationEngine.resume."""
        return await self._rotation.resume(pending)

    async def rotate_many(
        self, requests: Iterable[RotationRequest]
    ) -> dict[str, BulkRotationOutcome]:
        """Rotate several records independently. See KeyRotationEngine.rotate_many."""
        return await self._rotation.rotate_many(requests)

    async def revoke(self, record_ref: str, recipient_id: str) -> bool:
        """Remove a recipient's grant.

        This is ledger access removal, not re-keying: rotate the record
        without the recipient to stop them decrypting ciphertext they
        already hold.
        """
        return await self._revocation.revoke(record_ref, recipient_id)

    async def revoke_expired(self, record_ref: str, now: datetime | None = None) -> list[str]:
        """Remove every expired grant on a record."""
        return await self._revocation.revoke_expired(record_ref, now)

    async def list_grants(self, record_ref: str) -> list[AccessGrant]:
        """Current grants on a record."""
        return await self._ledger.get_grants(record_ref)

    async def record_history(self, record_ref: str) -> list[RecordTombstone]:
        """Tombstones of superseded generations, oldest first.

        Tombstones carry no wrapped key, so no earlier generation can be
        opened from the record entry.
        """
        return await self._ledger.get_record_history(record_ref)


def create_record_access_service(settings: Settings) -> RecordAccessService:
    """Wire a service from settings: SQL ledger, S3 blob store.

    Args:
        settings: Application settings.

    Returns:
        Configured RecordAccessService.
    """
    return RecordAccessService(
        SqlAuthorizationLedger.from_settings(settings.ledger),
        ObjectStoreBlobStore.from_settings(settings.s3),
        EnvelopeCodec(kdf_iterations=settings.crypto.kdf_iterations),
        propagation_concurrency=settings.rotation.propagation_concurrency,
    )
