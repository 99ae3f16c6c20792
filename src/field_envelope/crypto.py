"""
Cryptographic primitives for field-level envelope encryption.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- EncryptedField: Per-field ciphertext, nonce and tag (hex) plus optional search hash
- FieldCipher: AES-256-GCM encryption/decryption of a single string field
- generate_dek / create_hash helpers
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionError, ErrorCode, FieldDecryptionError, ValidationError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 16  # 128 bits, fresh per field per call
TAG_SIZE: int = 16  # 128 bits (authentication tag)

# Sibling record fields holding per-field encryption metadata
NONCE_SUFFIX = "_iv"
TAG_SUFFIX = "_auth_tag"
HASH_SUFFIX = "_hash"
LEGACY_SUFFIXES = ("_dek", "_encrypted")


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise ValidationError("Key must be bytes or bytearray", ErrorCode.INVALID_DEK)
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls, length: int = AES_256_KEY_SIZE) -> SecureKey:
        """Generate a cryptographically secure random key."""
        return cls(secrets.token_bytes(length))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


def generate_dek(length: int = AES_256_KEY_SIZE) -> SecureKey:
    """Generate a fresh Data Encryption Key."""
    if length <= 0:
        raise ValidationError(f"Invalid DEK length: {length}", ErrorCode.INVALID_DEK)
    return SecureKey.generate(length)


def create_hash(value: str) -> str:
    """
    Deterministic search hash of a plaintext value (SHA-256, hex).

    Independent of any DEK, so equal plaintexts hash equally across records.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class EncryptedField:
    """
    Encrypted field bundle.

    All binary values are lowercase hex strings, stored as sibling record
    fields: ``<name>``, ``<name>_iv``, ``<name>_auth_tag`` and optionally
    ``<name>_hash``.
    """

    name: str
    ciphertext: str
    nonce: str
    auth_tag: str
    search_hash: Optional[str] = None

    def to_record_fields(self) -> Dict[str, str]:
        """Render as the sibling fields merged into an encrypted record."""
        fields = {
            self.name: self.ciphertext,
            f"{self.name}{NONCE_SUFFIX}": self.nonce,
            f"{self.name}{TAG_SUFFIX}": self.auth_tag,
        }
        if self.search_hash is not None:
            fields[f"{self.name}{HASH_SUFFIX}"] = self.search_hash
        return fields

    @classmethod
    def from_record(cls, name: str, record: Mapping[str, Any]) -> Optional[EncryptedField]:
        """
        Read a field bundle back out of a record.

        Returns None when the record holds no ciphertext for ``name``.

        Raises:
            FieldDecryptionError: If ciphertext is present without nonce or tag
        """
        ciphertext = record.get(name)
        if not ciphertext:
            return None
        nonce = record.get(f"{name}{NONCE_SUFFIX}")
        auth_tag = record.get(f"{name}{TAG_SUFFIX}")
        if not nonce or not auth_tag:
            raise FieldDecryptionError(f"Field {name} is missing its nonce or auth tag")
        return cls(
            name=name,
            ciphertext=ciphertext,
            nonce=nonce,
            auth_tag=auth_tag,
            search_hash=record.get(f"{name}{HASH_SUFFIX}"),
        )


def _key_bytes(dek: Union[SecureKey, bytes]) -> bytes:
    key = dek.as_bytes() if isinstance(dek, SecureKey) else bytes(dek)
    if len(key) != AES_256_KEY_SIZE:
        raise ValidationError(
            f"Invalid DEK size: expected {AES_256_KEY_SIZE}, got {len(key)}",
            ErrorCode.INVALID_DEK,
        )
    return key


class FieldCipher:
    """
    AES-256-GCM authenticated encryption of single string fields.

    The field name is bound as associated data, so a ciphertext copied into
    another field does not authenticate.
    """

    @staticmethod
    def encrypt_field(
        name: str,
        plaintext: Optional[str],
        dek: Union[SecureKey, bytes],
    ) -> Optional[EncryptedField]:
        """
        Encrypt one field value.

        Args:
            name: Field name (bound as AAD)
            plaintext: Value to encrypt; empty or None is a no-op
            dek: 32-byte Data Encryption Key

        Returns:
            EncryptedField, or None for empty input

        Raises:
            ValidationError: If the value is not a string or the key size is invalid
        """
        if plaintext is None or plaintext == "":
            return None
        if not isinstance(plaintext, str):
            raise ValidationError(f"Field {name} must be a string, got {type(plaintext).__name__}")

        aesgcm = AESGCM(_key_bytes(dek))
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), name.encode("utf-8"))

        return EncryptedField(
            name=name,
            ciphertext=sealed[:-TAG_SIZE].hex(),
            nonce=nonce.hex(),
            auth_tag=sealed[-TAG_SIZE:].hex(),
        )

    @staticmethod
    def decrypt_field(
        name: str,
        bundle: EncryptedField,
        dek: Union[SecureKey, bytes],
    ) -> str:
        """
        Decrypt one field value.

        Raises:
            DecryptionError: If the tag does not verify or the bundle is malformed
            ValidationError: If the key size is invalid
        """
        aesgcm = AESGCM(_key_bytes(dek))

        try:
            nonce = bytes.fromhex(bundle.nonce)
            sealed = bytes.fromhex(bundle.ciphertext) + bytes.fromhex(bundle.auth_tag)
        except ValueError:
            raise DecryptionError(f"Decryption failed for field {name}")

        if len(nonce) != NONCE_SIZE or len(sealed) < TAG_SIZE:
            raise DecryptionError(f"Decryption failed for field {name}")

        try:
            plaintext = aesgcm.decrypt(nonce, sealed, name.encode("utf-8"))
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise DecryptionError(f"Decryption failed for field {name}")

        return plaintext.decode("utf-8")
