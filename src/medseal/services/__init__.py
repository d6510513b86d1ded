"""medseal service layer.

- primitives: RSA-OAEP, AES-256-GCM, PBKDF2, HKDF, HMAC and SHA-256 helpers
- EnvelopeCodec: hybrid seal/open/rewrap of documents
- AuthorizationLedger: record and grant entries (in-memory, SQL)
- BlobStore: content-addressed ciphertext (in-memory, S3)
- KeyRotationEngine: owner-first DEK rotation with partial-failure recovery
- RevocationEngine: grant removal
- RecordAccessService: caller-facing facade over all of the above
"""

from medseal.services.blob_store import (
    BlobIntegrityError,
    BlobNotFoundError,
    BlobStore,
    BlobStoreError,
    InMemoryBlobStore,
    ObjectStoreBlobStore,
)
from medseal.services.envelope import (
    AccessGrant,
    CipherAlgorithm,
    DocumentEnvelope,
    EnvelopeCodec,
    EnvelopeError,
    OwnerCredentials,
    Recipient,
    RecordTombstone,
    SealedDocument,
    StaleGrantError,
    WrappedKey,
)
from medseal.services.ledger import (
    AuthorizationLedger,
    GrantNotFoundError,
    InMemoryAuthorizationLedger,
    LedgerConflictError,
    LedgerError,
    RecordNotFoundError,
    SqlAuthorizationLedger,
)
from medseal.services.records import (
    AccessDeniedError,
    AccessExpiredError,
    RecordAccessService,
    SealResult,
    create_record_access_service,
)
from medseal.services.revocation import RevocationEngine
from medseal.services.rotation import (
    BulkRotationOutcome,
    BulkRotationStatus,
    KeyRotationEngine,
    PartialRotationError,
    PendingPropagation,
    RotationError,
    RotationPreconditionError,
    RotationRequest,
    RotationResult,
    RotationStage,
    RotationStatus,
)

__all__ = [
    "AccessDeniedError",
    "AccessExpiredError",
    "AccessGrant",
    "AuthorizationLedger",
    "BlobIntegrityError",
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "BulkRotationOutcome",
    "BulkRotationStatus",
    "CipherAlgorithm",
    "DocumentEnvelope",
    "EnvelopeCodec",
    "EnvelopeError",
    "GrantNotFoundError",
    "InMemoryAuthorizationLedger",
    "InMemoryBlobStore",
    "KeyRotationEngine",
    "LedgerConflictError",
    "LedgerError",
    "ObjectStoreBlobStore",
    "OwnerCredentials",
    "PartialRotationError",
    "PendingPropagation",
    "Recipient",
    "RecordAccessService",
    "RecordNotFoundError",
    "RecordTombstone",
    "RevocationEngine",
    "RotationError",
    "RotationPreconditionError",
    "RotationRequest",
    "RotationResult",
    "RotationStage",
    "RotationStatus",
    "SealResult",
    "SealedDocument",
    "SqlAuthorizationLedger",
    "StaleGrantError",
    "WrappedKey",
    "create_record_access_service",
]
