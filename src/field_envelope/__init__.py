"""
Field Envelope Encryption Library

Field-level envelope encryption for application records, with one data key
per entity wrapped by a remote KMS and stored in a remote secret store.

Overview
--------
- **Data Encryption Keys (DEKs)** are per-entity AES-256-GCM keys that
  encrypt the configured fields of a record
- **Master keys** live in a remote KMS and wrap the DEKs
- **Secret store** holds each wrapped DEK as an opaque versioned secret
- **KeyMetadata** is persisted next to the record so the exact master-key
  version and secret can be found again after a restart

Quick Start
-----------
```python
import asyncio
from field_envelope import (
    EncryptionService,
    EntityKeyContext,
    EntityKeyName,
    FieldEncryptionConfig,
    InMemoryKeyMetadataStore,
    InMemoryKeyWrappingProvider,
    InMemorySecretStore,
    Settings,
)

async def main():
    service = EncryptionService.from_settings(
        Settings(project_id="my-project"),
        InMemoryKeyWrappingProvider(),
        InMemorySecretStore(),
        config=FieldEncryptionConfig.from_dict(
            {"User": {"email": {"encrypt": True, "decrypt": True, "shouldHash": True}}}
        ),
    )
    context = EntityKeyContext(
        key_name=EntityKeyName.for_user("alice"),
        entity_id=42,
        store=InMemoryKeyMetadataStore(),
    )

    encrypted = await service.encrypt_object("User", {"email": "a@x.com"}, context)
    decrypted = await service.decrypt_object("User", encrypted.encrypted_record, context)

asyncio.run(main())
```

Modules
-------
- `crypto`: AES-256-GCM field cipher and key primitives
- `models`: Entity key names, key/secret addresses, KeyMetadata
- `providers`: Contracts for the KMS, secret store and metadata store
- `kms` / `secret_store`: Clients wrapping the providers
- `cache`: Process-local key metadata cache
- `resolver`: CACHED / METADATA_ONLY / ABSENT key resolution
- `service`: encrypt_object / decrypt_object
- `config`: Field configuration and runtime settings
- `memory`: In-memory providers for development and testing
- `postgres`: PostgreSQL-backed KeyMetadata store
- `errors`: Error types and codes
"""

__version__ = "0.1.0"

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    EncryptedField,
    FieldCipher,
    SecureKey,
    create_hash,
    generate_dek,
)

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    ConfigurationError,
    DecryptionError,
    DEKIntegrityError,
    DEKResolutionError,
    DEKUnwrapError,
    DEKWrapError,
    EncryptionError,
    EnvelopeError,
    ErrorCode,
    FieldDecryptionError,
    FieldEncryptionError,
    KeyCreationError,
    ResourceExistsError,
    ResourceNotFoundError,
    SecretNotFoundError,
    SecretRetrievalError,
    StorageError,
    ValidationError,
)

# ============================================================================
# Model Exports
# ============================================================================

from .models import (
    EntityKeyContext,
    EntityKeyName,
    KeyAddress,
    KeyMetadata,
    ResolutionState,
    ResolvedKey,
    SecretAddress,
)

# ============================================================================
# Provider Exports
# ============================================================================

from .providers import (
    EntityKeyMetadataStore,
    KeyWrappingProvider,
    MasterKeyRef,
    SecretStoreProvider,
)

from .memory import (
    InMemoryKeyMetadataStore,
    InMemoryKeyWrappingProvider,
    InMemorySecretStore,
)

from .postgres import PostgresKeyMetadataStore

# ============================================================================
# Engine Exports (Primary API)
# ============================================================================

from .cache import CacheEntry, KeyMetadataCache
from .config import (
    FieldEncryptionConfig,
    FieldFailurePolicy,
    FieldPolicy,
    ModelConfig,
    Settings,
)
from .kms import KeyWrappingClient, WrapResult
from .resolver import KeyResolver
from .secret_store import SecretStoreClient
from .service import DecryptedObjectResult, EncryptedObjectResult, EncryptionService

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "EncryptedField",
    "FieldCipher",
    "SecureKey",
    "create_hash",
    "generate_dek",
    # Errors
    "ErrorCode",
    "EnvelopeError",
    "ConfigurationError",
    "ValidationError",
    "EncryptionError",
    "FieldEncryptionError",
    "FieldDecryptionError",
    "DecryptionError",
    "DEKResolutionError",
    "DEKWrapError",
    "DEKUnwrapError",
    "DEKIntegrityError",
    "SecretRetrievalError",
    "SecretNotFoundError",
    "KeyCreationError",
    "StorageError",
    "ResourceExistsError",
    "ResourceNotFoundError",
    # Models
    "EntityKeyName",
    "EntityKeyContext",
    "KeyAddress",
    "SecretAddress",
    "KeyMetadata",
    "ResolutionState",
    "ResolvedKey",
    # Providers
    "KeyWrappingProvider",
    "SecretStoreProvider",
    "EntityKeyMetadataStore",
    "MasterKeyRef",
    "InMemoryKeyWrappingProvider",
    "InMemorySecretStore",
    "InMemoryKeyMetadataStore",
    "PostgresKeyMetadataStore",
    # Engine (Primary API)
    "KeyMetadataCache",
    "CacheEntry",
    "FieldEncryptionConfig",
    "FieldFailurePolicy",
    "FieldPolicy",
    "ModelConfig",
    "Settings",
    "KeyWrappingClient",
    "WrapResult",
    "SecretStoreClient",
    "KeyResolver",
    "EncryptionService",
    "EncryptedObjectResult",
    "DecryptedObjectResult",
]
