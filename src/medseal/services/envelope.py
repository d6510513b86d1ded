"""Hybrid envelope codec and the record data model.

A document is encrypted once under a per-document symmetric key (DEK) with
AES-256-GCM; the DEK is then wrapped separately under each authorized
principal's RSA public key:

    content --AES-256-GCM(DEK, nonce, aad)--> ciphertext      (blob store)
    DEK --RSA-OAEP(owner public key)------> owner WrappedKey  (record entry)
    DEK --RSA-OAEP(recipient public key)--> WrappedKey        (grant entry)

Invariant: every WrappedKey of one generation decrypts to the same DEK, and
that DEK decrypts exactly the ciphertext at the envelope's content_ref. The
DEK itself is never returned from this module; its only durable forms are
its wrapped forms.

The envelope names its plaintext only through content_mac, an HMAC keyed
by a subkey of the DEK: ledger readers without a wrap of that generation
cannot test guesses against it.

There is a single decryption path, EnvelopeCodec.open(), used by the owner
and by every secondary principal alike.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from medseal.services.primitives import (
    PBKDF2_ITERATIONS,
    CryptoError,
    constant_time_compare,
    decrypt_asymmetric,
    decrypt_symmetric,
    derive_subkey,
    encrypt_asymmetric,
    encrypt_symmetric,
    generate_symmetric_key,
    hash_data,
    key_id_for,
    keyed_digest,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

logger = logging.getLogger(__name__)

ENVELOPE_FORMAT_VERSION = "1.1"
# HKDF label of the DEK subkey that authenticates plaintext identity
CONTENT_MAC_INFO = b"medseal content-mac v1"


class CipherAlgorithm(str, Enum):
    """Content cipher recorded on each envelope."""

    AES_256_GCM = "aes_256_gcm"


class EnvelopeError(Exception):
    """Raised when sealing or opening an envelope fails.

    The underlying primitive failure is available as __cause__.
    """

    pass


class StaleGrantError(EnvelopeError):
    """Raised when a wrapped key belongs to an older DEK generation."""

    def __init__(self, record_ref: str, held: int, current: int) -> None:
        super().__init__(
            f"Wrapped key for record {record_ref} is generation {held}; "
            f"record is at generation {current}"
        )
        self.record_ref = record_ref
        self.held_generation = held
        self.current_generation = current


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"))


def _content_mac(dek: bytes, content: bytes) -> str:
    return keyed_digest(derive_subkey(dek, CONTENT_MAC_INFO), content)


def build_aad(record_ref: str, generation: int) -> bytes:
    """Build the associated data binding a ciphertext to one record generation.

    Args:
        record_ref: Ledger reference of the record.
        generation: DEK generation the ciphertext belongs to.

    Returns:
        AAD bytes.
    """
    return f"medseal|{record_ref}|{generation}".encode()


@dataclass(frozen=True, slots=True)
class WrappedKey:
    """A DEK encrypted under one recipient's public key.

    Attributes:
        recipient_key_id: Key id of the public key used to wrap.
        ciphertext: RSA-OAEP ciphertext of the DEK.
        generation: DEK generation this wrap belongs to.
    """

    recipient_key_id: str
    ciphertext: bytes
    generation: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the ledger wire form."""
        return {
            "recipient_key_id": self.recipient_key_id,
            "ciphertext": _b64e(self.ciphertext),
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WrappedKey:
        """Reconstruct from the ledger wire form."""
        return cls(
            recipient_key_id=data["recipient_key_id"],
            ciphertext=_b64d(data["ciphertext"]),
            generation=int(data["generation"]),
        )


@dataclass(frozen=True, slots=True)
class Recipient:
    """A principal named by id together with its public key.

    Attributes:
        recipient_id: Principal identifier (wallet address, user id, ...).
        public_key: RSA public key the DEK is wrapped under.
    """

    recipient_id: str
    public_key: RSAPublicKey = field(repr=False, compare=False)

    @property
    def key_id(self) -> str:
        """Key id of the recipient's public key."""
        return key_id_for(self.public_key)


@dataclass(frozen=True, slots=True)
class OwnerCredentials:
    """The resolved owner principal for operations that need plaintext.

    Built by the caller from the owner's local key store; the core never
    persists it.

    Attributes:
        owner_id: Owner principal identifier.
        private_key: Owner RSA private key.
    """

    owner_id: str
    private_key: RSAPrivateKey = field(repr=False, compare=False)

    @property
    def public_key(self) -> RSAPublicKey:
        """Public half of the owner key."""
        return self.private_key.public_key()

    def as_recipient(self) -> Recipient:
        """The owner viewed as a recipient of its own documents."""
        return Recipient(recipient_id=self.owner_id, public_key=self.public_key)


@dataclass(frozen=True, slots=True)
class DocumentEnvelope:
    """Ledger record entry describing how to recover one document generation.

    Envelopes are never mutated in place: every rotation produces a new
    envelope whose `predecessor` is the fingerprint of the one it
    supersedes. A superseded envelope survives only as a RecordTombstone,
    which keeps no wrapped key or nonce.

    Attributes:
        record_ref: Ledger reference of the record.
        owner_id: Owning principal.
        content_ref: Content hash of the ciphertext in the blob store.
        owner_wrapped_key: DEK wrapped for the owner.
        iv: AES-GCM nonce of the ciphertext.
        generation: DEK generation, starting at 1.
        content_mac: HMAC-SHA256 of the plaintext under a DEK subkey.
        cipher_algorithm: Content cipher.
        predecessor: Fingerprint of the superseded envelope, if any.
        created_at: When this generation was sealed.
    """

    record_ref: str
    owner_id: str
    content_ref: str
    owner_wrapped_key: WrappedKey
    iv: bytes
    generation: int
    content_mac: str
    cipher_algorithm: CipherAlgorithm = CipherAlgorithm.AES_256_GCM
    predecessor: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the ledger wire form."""
        return {
            "version": ENVELOPE_FORMAT_VERSION,
            "record_ref": self.record_ref,
            "owner_id": self.owner_id,
            "content_ref": self.content_ref,
            "owner_wrapped_key": self.owner_wrapped_key.to_dict(),
            "iv": _b64e(self.iv),
            "generation": self.generation,
            "content_mac": self.content_mac,
            "cipher_algorithm": self.cipher_algorithm.value,
            "predecessor": self.predecessor,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentEnvelope:
        """Reconstruct from the ledger wire form."""
        return cls(
            record_ref=data["record_ref"],
            owner_id=data["owner_id"],
            content_ref=data["content_ref"],
            owner_wrapped_key=WrappedKey.from_dict(data["owner_wrapped_key"]),
            iv=_b64d(data["iv"]),
            generation=int(data["generation"]),
            content_mac=data["content_mac"],
            cipher_algorithm=CipherAlgorithm(data["cipher_algorithm"]),
            predecessor=data.get("predecessor"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hash_data(canonical.encode("utf-8"))

    def aad(self) -> bytes:
        """Associated data the ciphertext of this generation is bound to."""
        return build_aad(self.record_ref, self.generation)

    def tombstone(self) -> RecordTombstone:
        """Audit form of this envelope once it has been superseded."""
        return RecordTombstone(
            record_ref=self.record_ref,
            owner_id=self.owner_id,
            generation=self.generation,
            content_ref=self.content_ref,
            fingerprint=self.fingerprint(),
            predecessor=self.predecessor,
            created_at=self.created_at,
        )


@dataclass(frozen=True, slots=True)
class RecordTombstone:
    """Audit trace of a superseded record generation.

    Keeps the fingerprint chain and the content reference, but no wrapped
    key, nonce or content MAC: once its envelope is replaced, the DEK of
    that generation no longer exists in the record entry.

    Attributes:
        record_ref: Ledger reference of the record.
        owner_id: Owning principal.
        generation: DEK generation that was superseded.
        content_ref: Content hash of that generation's ciphertext.
        fingerprint: Fingerprint of the full envelope, as named by its successor.
        predecessor: Fingerprint of the envelope before it, if any.
        created_at: When that generation was sealed.
    """

    record_ref: str
    owner_id: str
    generation: int
    content_ref: str
    fingerprint: str
    predecessor: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the ledger wire form."""
        return {
            "version": ENVELOPE_FORMAT_VERSION,
            "tombstone": True,
            "record_ref": self.record_ref,
            "owner_id": self.owner_id,
            "generation": self.generation,
            "content_ref": self.content_ref,
            "fingerprint": self.fingerprint,
            "predecessor": self.predecessor,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordTombstone:
        """Reconstruct from the ledger wire form."""
        return cls(
            record_ref=data["record_ref"],
            owner_id=data["owner_id"],
            generation=int(data["generation"]),
            content_ref=data["content_ref"],
            fingerprint=data["fingerprint"],
            predecessor=data.get("predecessor"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True, slots=True)
class AccessGrant:
    """Ledger grant entry giving one secondary principal access to a record.

    Attributes:
        record_ref: Ledger reference of the record.
        recipient_id: Principal holding the grant.
        wrapped_key: DEK wrapped for this principal.
        expires_at: End of validity; None means no expiry.
        granted_at: When the grant was created.
    """

    record_ref: str
    recipient_id: str
    wrapped_key: WrappedKey
    expires_at: datetime | None = None
    granted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def generation(self) -> int:
        """DEK generation of the wrapped key held by this grant."""
        return self.wrapped_key.generation

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the grant has passed its expiry."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to the ledger wire form."""
        return {
            "record_ref": self.record_ref,
            "recipient_id": self.recipient_id,
            "wrapped_key": self.wrapped_key.to_dict(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "granted_at": self.granted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessGrant:
        """Reconstruct from the ledger wire form."""
        expires_at = data.get("expires_at")
        return cls(
            record_ref=data["record_ref"],
            recipient_id=data["recipient_id"],
            wrapped_key=WrappedKey.from_dict(data["wrapped_key"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            granted_at=datetime.fromisoformat(data["granted_at"]),
        )


@dataclass(frozen=True, slots=True)
class SealedDocument:
    """Output of EnvelopeCodec.seal().

    Holds everything needed to publish one generation, but never the DEK.

    Attributes:
        ciphertext: AES-GCM ciphertext with appended tag.
        nonce: Nonce used for the ciphertext.
        content_mac: HMAC-SHA256 of the plaintext under a DEK subkey.
        generation: DEK generation the wraps belong to.
        wrapped_keys: Recipient id to WrappedKey.
        cipher_algorithm: Content cipher.
    """

    ciphertext: bytes
    nonce: bytes
    content_mac: str
    generation: int
    wrapped_keys: dict[str, WrappedKey]
    cipher_algorithm: CipherAlgorithm = CipherAlgorithm.AES_256_GCM

    def to_envelope(
        self,
        *,
        record_ref: str,
        owner_id: str,
        content_ref: str,
        predecessor: str | None = None,
    ) -> DocumentEnvelope:
        """Build the record entry once the ciphertext has a content reference.

        Args:
            record_ref: Ledger reference of the record.
            owner_id: Owner principal; must be one of the sealed recipients.
            content_ref: Content hash returned by the blob store.
            predecessor: Fingerprint of the envelope being superseded.

        Returns:
            DocumentEnvelope for this generation.

        Raises:
            EnvelopeError: If the owner was not among the sealed recipients.
        """
        owner_wrap = self.wrapped_keys.get(owner_id)
        if owner_wrap is None:
            raise EnvelopeError(f"Owner {owner_id} was not sealed as a recipient")
        return DocumentEnvelope(
            record_ref=record_ref,
            owner_id=owner_id,
            content_ref=content_ref,
            owner_wrapped_key=owner_wrap,
            iv=self.nonce,
            generation=self.generation,
            content_mac=self.content_mac,
            cipher_algorithm=self.cipher_algorithm,
            predecessor=predecessor,
        )


class EnvelopeCodec:
    """Builds and opens hybrid envelopes.

    Example:
        codec = EnvelopeCodec()
        sealed = codec.seal(b"lab results", [owner.as_recipient(), doctor])
        plaintext = codec.open(
            sealed.ciphertext,
            sealed.nonce,
            sealed.wrapped_keys[doctor.recipient_id],
            doctor_private_key,
        )
    """

    def __init__(self, *, kdf_iterations: int = PBKDF2_ITERATIONS) -> None:
        """Initialize the codec.

        Args:
            kdf_iterations: PBKDF2 iteration count used for each new DEK.
        """
        self._kdf_iterations = kdf_iterations

    @property
    def kdf_iterations(self) -> int:
        """PBKDF2 iteration count used for each new DEK."""
        return self._kdf_iterations

    def seal(
        self,
        content: bytes,
        recipients: Iterable[Recipient],
        *,
        generation: int = 1,
        associated_data: bytes | None = None,
    ) -> SealedDocument:
        """Encrypt content under a fresh DEK and wrap the DEK per recipient.

        Args:
            content: Plaintext document.
            recipients: Principals to wrap the DEK for (ids must be unique).
            generation: DEK generation recorded on every wrap.
            associated_data: Optional AAD bound into the ciphertext.

        Returns:
            SealedDocument with ciphertext, nonce and one wrap per recipient.

        Raises:
            ValueError: If there are no recipients or an id repeats.
            EnvelopeError: If a primitive fails.
        """
        recipient_list = list(recipients)
        if not recipient_list:
            raise ValueError("At least one recipient is required to seal content")
        ids = [r.recipient_id for r in recipient_list]
        if len(set(ids)) != len(ids):
            raise ValueError("Recipient ids must be unique")

        try:
            dek, _salt = generate_symmetric_key(self._kdf_iterations)
            try:
                ciphertext, nonce = encrypt_symmetric(
                    dek, content, associated_data=associated_data
                )
                wrapped_keys = {
                    r.recipient_id: WrappedKey(
                        recipient_key_id=r.key_id,
                        ciphertext=encrypt_asymmetric(r.public_key, dek),
                        generation=generation,
                    )
                    for r in recipient_list
                }
                content_mac = _content_mac(dek, content)
            finally:
                del dek
        except CryptoError as e:
            logger.error("Sealing failed: %s", str(e))
            raise EnvelopeError(f"Failed to seal content: {e}") from e

        logger.debug(
            "Sealed content: size=%d, generation=%d, recipients=%d",
            len(content),
            generation,
            len(wrapped_keys),
        )
        return SealedDocument(
            ciphertext=ciphertext,
            nonce=nonce,
            content_mac=content_mac,
            generation=generation,
            wrapped_keys=wrapped_keys,
        )

    def open(
        self,
        ciphertext: bytes,
        nonce: bytes,
        wrapped_key: WrappedKey,
        private_key: RSAPrivateKey,
        *,
        associated_data: bytes | None = None,
        expected_mac: str | None = None,
    ) -> bytes:
        """Recover the DEK from a wrapped key, then decrypt the content.

        Args:
            ciphertext: AES-GCM ciphertext with appended tag.
            nonce: Nonce of the ciphertext.
            wrapped_key: The caller's wrapped DEK.
            private_key: The caller's private key.
            associated_data: AAD used when sealing.
            expected_mac: Content MAC recorded at sealing, when known.

        Returns:
            Plaintext content.

        Raises:
            EnvelopeError: If unwrapping, decryption or the MAC check fails.
        """
        try:
            dek = decrypt_asymmetric(private_key, wrapped_key.ciphertext)
            try:
                plaintext = decrypt_symmetric(
                    dek, ciphertext, nonce, associated_data=associated_data
                )
                mac_ok = expected_mac is None or constant_time_compare(
                    _content_mac(dek, plaintext), expected_mac
                )
            finally:
                del dek
        except CryptoError as e:
            logger.warning(
                "Envelope open failed: key_id=%s..., generation=%d",
                wrapped_key.recipient_key_id[:16],
                wrapped_key.generation,
            )
            raise EnvelopeError(f"Failed to open envelope: {e}") from e

        if not mac_ok:
            raise EnvelopeError("Content MAC mismatch")
        return plaintext

    def content_matches(
        self,
        content: bytes,
        wrapped_key: WrappedKey,
        private_key: RSAPrivateKey,
        content_mac: str,
    ) -> bool:
        """Check whether content is the plaintext a generation was sealed over.

        Only a holder of a wrap of that generation can answer this; the
        ciphertext is not needed.

        Args:
            content: Candidate plaintext.
            wrapped_key: The caller's wrap of the generation.
            private_key: The caller's private key.
            content_mac: Content MAC of the generation.

        Returns:
            True if the content matches.

        Raises:
            EnvelopeError: If the wrapped key cannot be opened.
        """
        try:
            dek = decrypt_asymmetric(private_key, wrapped_key.ciphertext)
            try:
                return constant_time_compare(_content_mac(dek, content), content_mac)
            finally:
                del dek
        except CryptoError as e:
            raise EnvelopeError(f"Failed to unwrap key: {e}") from e

    def rewrap(
        self,
        wrapped_key: WrappedKey,
        private_key: RSAPrivateKey,
        recipient: Recipient,
    ) -> WrappedKey:
        """Wrap an existing DEK generation for another recipient.

        The DEK is unwrapped with the holder's private key and immediately
        wrapped for the recipient; it is not returned.

        Args:
            wrapped_key: A wrap the caller can open.
            private_key: The caller's private key.
            recipient: Principal to wrap for.

        Returns:
            WrappedKey of the same generation for the recipient.

        Raises:
            EnvelopeError: If unwrapping or wrapping fails.
        """
        try:
            dek = decrypt_asymmetric(private_key, wrapped_key.ciphertext)
            try:
                ciphertext = encrypt_asymmetric(recipient.public_key, dek)
            finally:
                del dek
        except CryptoError as e:
            raise EnvelopeError(f"Failed to rewrap key for {recipient.recipient_id}: {e}") from e

        return WrappedKey(
            recipient_key_id=recipient.key_id,
            ciphertext=ciphertext,
            generation=wrapped_key.generation,
        )
