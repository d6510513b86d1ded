"""Cipher primitives for document sealing.

Thin, stateless wrappers over the `cryptography` library (pyca/cryptography):
- Asymmetric: RSA-OAEP with MGF1/SHA-256, used only to wrap DEKs
- Symmetric: AES-256-GCM with a fresh 96-bit random nonce per call
- KDF: PBKDF2-HMAC-SHA256 with a 16-byte salt
- Hash: SHA-256, compared in constant time
- MAC: HMAC-SHA256 under HKDF-SHA256 subkeys of a DEK

Nothing in this module performs I/O or suspends. Every failure is
deterministic for a given input and is raised immediately; callers must not
retry with weaker parameters or fall back to an unauthenticated mode.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
    load_pem_public_key,
)

logger = logging.getLogger(__name__)

# RSA modulus for new principal key pairs; 2048 is the accepted floor
RSA_KEY_BITS = 3072
MIN_RSA_KEY_BITS = 2048
RSA_PUBLIC_EXPONENT = 65537
# SHA-256 digest size, used for the OAEP overhead bound
OAEP_HASH_SIZE_BYTES = 32

# AES-256 requires 32-byte key
DEK_SIZE_BYTES = 32
# GCM nonce should be 12 bytes per NIST recommendations
GCM_NONCE_SIZE_BYTES = 12
# GCM tag is 16 bytes (128 bits)
GCM_TAG_SIZE_BYTES = 16

SALT_SIZE_BYTES = 16
SEED_SIZE_BYTES = 32
# OWASP recommendation 2023 for PBKDF2-HMAC-SHA256
PBKDF2_ITERATIONS = 600_000
SUBKEY_SIZE_BYTES = 32


class CryptoError(Exception):
    """Base exception for cipher primitive failures."""

    pass


class KeyGenError(CryptoError):
    """Raised when key generation fails (entropy or parameters)."""

    pass


class DerivationError(CryptoError):
    """Raised when password-based key derivation fails."""

    pass


class AsymmetricCryptoError(CryptoError):
    """Raised when RSA-OAEP encryption or decryption fails.

    Decryption failures carry one fixed message whatever the cause, so a
    padding failure is indistinguishable from any other rejection.
    """

    pass


class AuthenticationError(CryptoError):
    """Raised when an AES-GCM tag does not verify.

    This is always a hard failure; no partial plaintext is ever returned.
    """

    pass


@dataclass(frozen=True, slots=True)
class KeyPair:
    """An RSA key pair belonging to one principal.

    Attributes:
        public_key: Public half, shared with anyone granting access.
        private_key: Private half, never leaves the principal's context.
    """

    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey

    @property
    def key_id(self) -> str:
        """Stable identifier of the public key."""
        return key_id_for(self.public_key)

    def public_pem(self) -> bytes:
        """Serialize the public key as PEM SubjectPublicKeyInfo."""
        return self.public_key.public_bytes(
            encoding=Encoding.PEM,
            format=PublicFormat.SubjectPublicKeyInfo,
        )

    def private_pem(self, password: bytes | None = None) -> bytes:
        """Serialize the private key as PKCS#8 PEM.

        Args:
            password: Encrypts the PEM when given.

        Returns:
            PEM bytes.
        """
        encryption = BestAvailableEncryption(password) if password else NoEncryption()
        return self.private_key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _pbkdf2(secret: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=DEK_SIZE_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


def max_wrap_size(public_key: rsa.RSAPublicKey) -> int:
    """Largest plaintext RSA-OAEP/SHA-256 accepts for this key.

    Args:
        public_key: Recipient public key.

    Returns:
        Modulus size in bytes minus the OAEP padding overhead.
    """
    return public_key.key_size // 8 - 2 * OAEP_HASH_SIZE_BYTES - 2


def generate_asymmetric_key_pair(key_size: int = RSA_KEY_BITS) -> KeyPair:
    """Generate an RSA key pair for OAEP key wrapping.

    Args:
        key_size: Modulus size in bits (at least MIN_RSA_KEY_BITS).

    Returns:
        New KeyPair.

    Raises:
        KeyGenError: If the parameters are rejected or generation fails.
    """
    if key_size < MIN_RSA_KEY_BITS:
        raise KeyGenError(f"RSA key size must be at least {MIN_RSA_KEY_BITS} bits, got {key_size}")

    try:
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=key_size,
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenError(f"RSA key generation failed: {e}") from e

    key_pair = KeyPair(public_key=private_key.public_key(), private_key=private_key)
    logger.debug("Generated RSA-%d key pair: key_id=%s...", key_size, key_pair.key_id[:16])
    return key_pair


def generate_symmetric_key(iterations: int = PBKDF2_ITERATIONS) -> tuple[bytes, bytes]:
    """Generate a fresh AES-256 key.

    A random seed is passed through PBKDF2 with a fresh salt, the same
    derivation used for password-derived keys.

    Args:
        iterations: PBKDF2 iteration count.

    Returns:
        Tuple of (key, salt).

    Raises:
        KeyGenError: If derivation of the new key fails.
    """
    salt = os.urandom(SALT_SIZE_BYTES)
    try:
        key = _pbkdf2(os.urandom(SEED_SIZE_BYTES), salt, iterations)
    except ValueError as e:
        raise KeyGenError(f"Symmetric key generation failed: {e}") from e
    return key, salt


def derive_key_from_password(
    password: str | bytes,
    salt: bytes | str,
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """Derive an AES-256 key from a password.

    Deterministic: the same (password, salt, iterations) always yields the
    same key.

    Args:
        password: Password text or bytes.
        salt: Raw 16-byte salt, or its base64 text form.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte key.

    Raises:
        DerivationError: If the salt is malformed or derivation fails.
    """
    if isinstance(salt, str):
        try:
            salt = base64.b64decode(salt, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DerivationError("Salt is not valid base64") from e
    if not isinstance(salt, bytes | bytearray) or len(salt) != SALT_SIZE_BYTES:
        raise DerivationError(f"Salt must be exactly {SALT_SIZE_BYTES} bytes")
    if isinstance(password, str):
        password = password.encode("utf-8")

    try:
        return _pbkdf2(password, bytes(salt), iterations)
    except ValueError as e:
        raise DerivationError(f"Key derivation failed: {e}") from e


def encrypt_asymmetric(public_key: rsa.RSAPublicKey, plaintext: bytes) -> bytes:
    """Encrypt a short payload (a DEK) with RSA-OAEP.

    Args:
        public_key: Recipient public key.
        plaintext: Payload, at most max_wrap_size(public_key) bytes.

    Returns:
        Ciphertext of modulus length.

    Raises:
        AsymmetricCryptoError: If the key is malformed or the payload too large.
    """
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise AsymmetricCryptoError("Public key must be an RSA public key")
    limit = max_wrap_size(public_key)
    if len(plaintext) > limit:
        raise AsymmetricCryptoError(
            f"Payload of {len(plaintext)} bytes exceeds the {limit}-byte OAEP bound"
        )

    try:
        return public_key.encrypt(plaintext, _oaep())
    except ValueError as e:
        raise AsymmetricCryptoError(f"Asymmetric encryption failed: {e}") from e


def decrypt_asymmetric(private_key: rsa.RSAPrivateKey, ciphertext: bytes) -> bytes:
    """Decrypt an RSA-OAEP ciphertext.

    Args:
        private_key: Recipient private key.
        ciphertext: Wrapped payload.

    Returns:
        The payload.

    Raises:
        AsymmetricCryptoError: On any rejection, with one fixed message.
    """
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise AsymmetricCryptoError("Private key must be an RSA private key")

    try:
        return private_key.decrypt(ciphertext, _oaep())
    except ValueError as e:
        raise AsymmetricCryptoError("Asymmetric decryption failed") from e


def encrypt_symmetric(
    key: bytes,
    plaintext: bytes,
    *,
    associated_data: bytes | None = None,
) -> tuple[bytes, bytes]:
    """Encrypt with AES-256-GCM under a fresh random nonce.

    Args:
        key: 32-byte key.
        plaintext: Content to encrypt.
        associated_data: Optional AAD (authenticated, not encrypted).

    Returns:
        Tuple of (ciphertext with appended tag, nonce).

    Raises:
        CryptoError: If the key is not a valid AES-256 key.
    """
    if len(key) != DEK_SIZE_BYTES:
        raise CryptoError(f"Symmetric key must be {DEK_SIZE_BYTES} bytes")

    nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return ciphertext, nonce


def decrypt_symmetric(
    key: bytes,
    ciphertext: bytes,
    nonce: bytes,
    *,
    associated_data: bytes | None = None,
) -> bytes:
    """Decrypt and authenticate an AES-256-GCM ciphertext.

    Args:
        key: 32-byte key.
        ciphertext: Ciphertext with appended tag.
        nonce: Nonce used at encryption.
        associated_data: AAD used at encryption (must match).

    Returns:
        The plaintext.

    Raises:
        AuthenticationError: If the tag does not verify or inputs are malformed.
    """
    if len(nonce) != GCM_NONCE_SIZE_BYTES:
        raise AuthenticationError(f"Nonce must be {GCM_NONCE_SIZE_BYTES} bytes")
    if len(ciphertext) < GCM_TAG_SIZE_BYTES:
        raise AuthenticationError("Ciphertext is shorter than the authentication tag")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as e:
        raise AuthenticationError("Authentication tag mismatch") from e
    except ValueError as e:
        raise AuthenticationError(f"Symmetric decryption failed: {e}") from e


def hash_data(data: bytes) -> str:
    """Compute the SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


def constant_time_compare(a: str | bytes, b: str | bytes) -> bool:
    """Compare two values without early exit.

    Only the lengths may leak through timing.
    """
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def verify_hash(data: bytes, digest: str) -> bool:
    """Check data against a SHA-256 hex digest in constant time."""
    return constant_time_compare(hash_data(data), digest.lower())


def derive_subkey(key: bytes, info: bytes) -> bytes:
    """Derive a purpose-bound subkey from a symmetric key with HKDF-SHA256.

    Args:
        key: Input key material (a DEK).
        info: Purpose label; different labels give independent subkeys.

    Returns:
        32-byte subkey.

    Raises:
        DerivationError: If the key material is empty.
    """
    if not key:
        raise DerivationError("Cannot derive a subkey from empty key material")
    return HKDF(
        algorithm=hashes.SHA256(),
        length=SUBKEY_SIZE_BYTES,
        salt=None,
        info=info,
    ).derive(key)


def keyed_digest(key: bytes, data: bytes) -> str:
    """Compute the HMAC-SHA256 hex digest of data under key."""
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def key_id_for(public_key: rsa.RSAPublicKey) -> str:
    """SHA-256 hex of the DER SubjectPublicKeyInfo of a public key."""
    der = public_key.public_bytes(
        encoding=Encoding.DER,
        format=PublicFormat.SubjectPublicKeyInfo,
    )
    return hash_data(der)


def load_public_key(pem: bytes) -> rsa.RSAPublicKey:
    """Load an RSA public key from PEM.

    Raises:
        AsymmetricCryptoError: If the PEM is malformed or not RSA.
    """
    try:
        key = load_pem_public_key(pem)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise AsymmetricCryptoError(f"Malformed public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise AsymmetricCryptoError("Public key must be an RSA public key")
    return key


def load_private_key(pem: bytes, password: bytes | None = None) -> rsa.RSAPrivateKey:
    """Load an RSA private key from PKCS#8 PEM.

    Raises:
        AsymmetricCryptoError: If the PEM is malformed, the password wrong, or not RSA.
    """
    try:
        key = load_pem_private_key(pem, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise AsymmetricCryptoError(f"Malformed private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise AsymmetricCryptoError("Private key must be an RSA private key")
    return key
