"""
Exception classes for field envelope encryption.

Every error carries a stable ``code`` naming the stage that failed, so the
HTTP layer can map it to a response without parsing messages:

- ConfigurationError: deployment config is missing or invalid (fatal)
- ValidationError: caller supplied a bad parameter (4xx)
- EncryptionError and subtypes: a named stage of the envelope protocol failed

ResourceExistsError and ResourceNotFoundError are the contract errors raised
by KMS / secret-store provider implementations; the clients translate them.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Stable error codes exposed to callers."""

    MISSING_CONFIG = "CONFIGURATION_MISSING_CONFIG"
    MISSING_ENV_VAR = "CONFIGURATION_MISSING_ENV_VAR"
    INVALID_CONFIG = "CONFIGURATION_INVALID_CONFIG"

    MISSING_REQUIRED_FIELD = "VALIDATION_MISSING_REQUIRED_FIELD"
    INVALID_DEK = "VALIDATION_INVALID_DEK"

    FIELD_ENCRYPTION_ERROR = "ENCRYPTION_FIELD_ENCRYPTION_ERROR"
    FIELD_DECRYPTION_ERROR = "ENCRYPTION_FIELD_DECRYPTION_ERROR"
    DEK_RESOLUTION_ERROR = "ENCRYPTION_DEK_RESOLUTION_ERROR"
    DEK_ENCRYPTION_ERROR = "ENCRYPTION_DEK_ENCRYPTION_ERROR"
    DEK_DECRYPTION_ERROR = "ENCRYPTION_DEK_DECRYPTION_ERROR"
    DEK_INTEGRITY_ERROR = "ENCRYPTION_DEK_INTEGRITY_ERROR"
    SECRET_RETRIEVAL_ERROR = "ENCRYPTION_SECRET_RETRIEVAL_ERROR"
    SECRET_NOT_FOUND = "ENCRYPTION_SECRET_NOT_FOUND"
    KEY_CREATION_ERROR = "ENCRYPTION_KEY_CREATION_ERROR"
    STORAGE_ERROR = "ENCRYPTION_STORAGE_ERROR"

    RESOURCE_EXISTS = "PROVIDER_RESOURCE_EXISTS"
    RESOURCE_NOT_FOUND = "PROVIDER_RESOURCE_NOT_FOUND"

    def __str__(self) -> str:
        return self.value


class EnvelopeError(Exception):
    """Base exception for all field envelope operations."""

    default_code: ErrorCode = ErrorCode.DEK_RESOLUTION_ERROR
    http_status: int = 500

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class ConfigurationError(EnvelopeError):
    """Missing or invalid field-encryption configuration."""

    default_code = ErrorCode.MISSING_CONFIG


class ValidationError(EnvelopeError):
    """Missing required parameter or malformed key material."""

    default_code = ErrorCode.MISSING_REQUIRED_FIELD
    http_status = 400


class EncryptionError(EnvelopeError):
    """A stage of the envelope encryption protocol failed."""

    pass


class FieldEncryptionError(EncryptionError):
    """Encrypting a single record field failed."""

    default_code = ErrorCode.FIELD_ENCRYPTION_ERROR


class FieldDecryptionError(EncryptionError):
    """Decrypting a single record field failed."""

    default_code = ErrorCode.FIELD_DECRYPTION_ERROR


class DecryptionError(FieldDecryptionError):
    """Authentication tag did not verify (tampered data, wrong key or nonce)."""

    pass


class DEKResolutionError(EncryptionError):
    """No usable DEK could be resolved for an entity."""

    default_code = ErrorCode.DEK_RESOLUTION_ERROR


class DEKWrapError(EncryptionError):
    """Wrapping a DEK under the remote master key failed."""

    default_code = ErrorCode.DEK_ENCRYPTION_ERROR


class DEKUnwrapError(EncryptionError):
    """Unwrapping a DEK with the remote master key failed."""

    default_code = ErrorCode.DEK_DECRYPTION_ERROR


class DEKIntegrityError(DEKUnwrapError):
    """Unwrapped DEK does not have the expected length."""

    default_code = ErrorCode.DEK_INTEGRITY_ERROR


class SecretRetrievalError(EncryptionError):
    """Reading or writing the wrapped DEK in the secret store failed."""

    default_code = ErrorCode.SECRET_RETRIEVAL_ERROR


class SecretNotFoundError(SecretRetrievalError):
    """The secret has no accessible version."""

    default_code = ErrorCode.SECRET_NOT_FOUND


class KeyCreationError(EncryptionError):
    """Provisioning a key ring or master key failed."""

    default_code = ErrorCode.KEY_CREATION_ERROR


class StorageError(EncryptionError):
    """Durable key-metadata storage failed."""

    default_code = ErrorCode.STORAGE_ERROR


class ResourceExistsError(EnvelopeError):
    """Provider resource (key ring, key, secret) already exists."""

    default_code = ErrorCode.RESOURCE_EXISTS


class ResourceNotFoundError(EnvelopeError):
    """Provider resource does not exist."""

    default_code = ErrorCode.RESOURCE_NOT_FOUND
