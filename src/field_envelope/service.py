"""
Object-level envelope encryption service.

This module provides:
- EncryptionService: encrypt_object / decrypt_object over configured fields
- EncryptedObjectResult / DecryptedObjectResult: Operation results

Flow:
1. Resolve the entity's DEK once per record (KeyResolver)
2. Encrypt/decrypt every configured field with that single DEK
3. encrypt: merge ciphertext, nonce, tag and optional search hash into the record
4. decrypt: restore plaintext and strip the nonce/tag side-fields

The persistence layer calls these explicitly before every write and after
every read; there is no implicit hook interception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .cache import KeyMetadataCache
from .config import FieldEncryptionConfig, FieldFailurePolicy, ModelConfig, Settings
from .crypto import (
    LEGACY_SUFFIXES,
    NONCE_SUFFIX,
    TAG_SUFFIX,
    EncryptedField,
    FieldCipher,
    SecureKey,
    create_hash,
)
from .errors import (
    ConfigurationError,
    DecryptionError,
    DEKResolutionError,
    EnvelopeError,
    ErrorCode,
    FieldDecryptionError,
    FieldEncryptionError,
    ValidationError,
)
from .kms import KeyWrappingClient
from .models import EntityKeyContext, EntityKeyName, KeyMetadata, ResolutionState, ResolvedKey
from .providers import KeyWrappingProvider, SecretStoreProvider
from .resolver import KeyResolver
from .secret_store import SecretStoreClient

logger = logging.getLogger(__name__)

_METADATA_SUFFIXES = (NONCE_SUFFIX, TAG_SUFFIX) + LEGACY_SUFFIXES


@dataclass
class EncryptedObjectResult:
    """Result of encrypt_object."""

    encrypted_record: Dict[str, Any]
    key_metadata: KeyMetadata
    state: ResolutionState

    @property
    def created(self) -> bool:
        """True when a new DEK was minted for this record."""
        return self.state is ResolutionState.ABSENT


@dataclass
class DecryptedObjectResult:
    """Result of decrypt_object."""

    decrypted_record: Dict[str, Any]
    key_metadata: KeyMetadata
    wrapped_dek: Optional[bytes]
    state: ResolutionState


class EncryptionService:
    """
    Envelope encryption of configured record fields.

    One DEK encrypts all configured fields of one record version.
    """

    def __init__(
        self,
        config: FieldEncryptionConfig,
        resolver: KeyResolver,
        field_failure_policy: FieldFailurePolicy = FieldFailurePolicy.STRICT,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._policy = field_failure_policy

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        kms_provider: KeyWrappingProvider,
        secret_provider: SecretStoreProvider,
        config: Optional[FieldEncryptionConfig] = None,
    ) -> EncryptionService:
        """
        Wire clients, cache and resolver from runtime settings.

        Args:
            settings: Runtime settings
            kms_provider: Remote KMS implementation
            secret_provider: Remote secret store implementation
            config: Field configuration (loaded from settings.config_path if omitted)
        """
        cache = KeyMetadataCache(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            cache_deks=settings.cache_deks,
        )
        resolver = KeyResolver(
            kms=KeyWrappingClient(kms_provider, settings.project_id, settings.location_id),
            secret_store=SecretStoreClient(secret_provider, settings.project_id),
            cache=cache,
        )
        return cls(
            config=config if config is not None else settings.load_field_config(),
            resolver=resolver,
            field_failure_policy=settings.field_failure_policy,
        )

    @property
    def resolver(self) -> KeyResolver:
        return self._resolver

    @property
    def field_failure_policy(self) -> FieldFailurePolicy:
        return self._policy

    async def encrypt_object(
        self,
        model_name: str,
        record: Mapping[str, Any],
        context: EntityKeyContext,
    ) -> EncryptedObjectResult:
        """
        Encrypt the configured fields of a record.

        Args:
            model_name: Model whose field configuration applies
            record: Plaintext record; unconfigured fields pass through
            context: Entity identity and durable metadata access

        Returns:
            EncryptedObjectResult with the encrypted record and the KeyMetadata
            the caller must persist alongside it

        Raises:
            ConfigurationError: If the model is not configured
            ValidationError: If the record is not a mapping
            DEKResolutionError (and other EncryptionError subtypes): If no DEK
            FieldEncryptionError: If a field fails under the strict policy
        """
        model = self._config.model(model_name)
        _check_record(record)

        resolved = await self._resolve(context, create=True)
        encrypted = dict(record)

        for policy in model.encrypt_fields:
            value = record.get(policy.name)
            if value is None or value == "":
                continue
            try:
                bundle = FieldCipher.encrypt_field(policy.name, value, resolved.dek)
                if bundle is None:
                    continue
                if policy.should_hash:
                    bundle.search_hash = create_hash(value)
                encrypted.update(bundle.to_record_fields())
            except Exception as e:
                if self._policy is FieldFailurePolicy.STRICT:
                    raise FieldEncryptionError(
                        f"Failed to encrypt field {policy.name} of {model_name}: {e}"
                    ) from e
                logger.warning(
                    "Field %s of %s stored UNENCRYPTED after encryption failure: %s",
                    policy.name,
                    model_name,
                    e,
                )
                encrypted[policy.name] = value

        logger.debug("Encrypted %s record for %s (%s)", model_name, context.key_name, resolved.state)
        return EncryptedObjectResult(
            encrypted_record=encrypted,
            key_metadata=resolved.metadata,
            state=resolved.state,
        )

    async def decrypt_object(
        self,
        model_name: str,
        record: Mapping[str, Any],
        context: EntityKeyContext,
    ) -> DecryptedObjectResult:
        """
        Decrypt the configured fields of a record.

        A record whose key came from the cache and fails to authenticate is
        retried once with the cache entry evicted, provided the entity has
        durable metadata to resolve the key from again.

        Returns:
            DecryptedObjectResult with plaintext fields (nonce/tag side-fields
            stripped) and the wrapped DEK for cache hydration

        Raises:
            ConfigurationError: If the model is not configured
            DEKResolutionError: If the entity has no key metadata
            FieldDecryptionError: If a field fails under the strict policy
        """
        model = self._config.model(model_name)
        _check_record(record)

        resolved = await self._resolve(context, create=False)
        decrypted, failures = _decrypt_fields(model, record, resolved.dek)

        # Without durable metadata the cache entry is the only route to the
        # key, so it is kept and the failures are reported as they are
        if (
            resolved.state is ResolutionState.CACHED
            and any(isinstance(e, DecryptionError) for e in failures.values())
            and await context.durable_metadata() is not None
        ):
            logger.warning(
                "Cached DEK for %s did not authenticate %s fields, re-resolving",
                context.key_name,
                model_name,
            )
            self._resolver.invalidate(context.key_name)
            resolved = await self._resolve(context, create=False)
            decrypted, failures = _decrypt_fields(model, record, resolved.dek)

        for name, error in failures.items():
            if self._policy is FieldFailurePolicy.STRICT:
                if isinstance(error, FieldDecryptionError):
                    raise error
                raise FieldDecryptionError(
                    f"Failed to decrypt field {name} of {model_name}: {error}"
                ) from error
            logger.warning(
                "Field %s of %s returned still encrypted after decryption failure: %s",
                name,
                model_name,
                error,
            )

        return DecryptedObjectResult(
            decrypted_record=decrypted,
            key_metadata=resolved.metadata,
            wrapped_dek=resolved.wrapped_dek or None,
            state=resolved.state,
        )

    def search_hash(self, model_name: str, field_name: str, value: str) -> str:
        """
        Hash to look up records by the plaintext of a hashed field.

        Raises:
            ConfigurationError: If the field is not configured with shouldHash
        """
        policy = self._config.model(model_name).fields.get(field_name)
        if policy is None or not policy.should_hash:
            raise ConfigurationError(
                f"Field {field_name} of {model_name} is not configured for hashing",
                ErrorCode.INVALID_CONFIG,
            )
        return create_hash(value)

    def prime_cache(
        self,
        key_name: EntityKeyName,
        metadata: KeyMetadata,
        wrapped_dek: Optional[bytes] = None,
    ) -> None:
        """Hydrate the cache from a previous decrypt (batch-then-cache reads)."""
        self._resolver.cache.set(key_name, metadata, wrapped_dek)

    def invalidate(self, key_name: EntityKeyName) -> bool:
        """Drop cached key material for an entity after a key-affecting update."""
        return self._resolver.invalidate(key_name)

    async def _resolve(self, context: EntityKeyContext, create: bool) -> ResolvedKey:
        try:
            return await self._resolver.resolve(context, create=create)
        except EnvelopeError:
            raise
        except Exception as e:
            raise DEKResolutionError(f"Failed to resolve DEK for {context.key_name}: {e}") from e


def _check_record(record: Any) -> None:
    if not isinstance(record, Mapping):
        raise ValidationError(f"Record must be a mapping, got {type(record).__name__}")


def _decrypt_fields(
    model: ModelConfig,
    record: Mapping[str, Any],
    dek: SecureKey,
) -> Tuple[Dict[str, Any], Dict[str, Exception]]:
    """Decrypt every configured field present; failed fields are left as-is."""
    decrypted = dict(record)
    failures: Dict[str, Exception] = {}

    for policy in model.decrypt_fields:
        try:
            bundle = EncryptedField.from_record(policy.name, record)
            if bundle is None:
                continue
            decrypted[policy.name] = FieldCipher.decrypt_field(policy.name, bundle, dek)
        except Exception as e:
            failures[policy.name] = e
            continue

        for suffix in _METADATA_SUFFIXES:
            decrypted.pop(f"{policy.name}{suffix}", None)

    return decrypted, failures
