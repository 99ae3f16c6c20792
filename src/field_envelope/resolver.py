"""
Key resolution protocol.

Given an entity, produce a ready-to-use DEK plus the metadata needed to
resolve it again later.

State machine per call:
1. CACHED: KeyAddress + wrapped DEK cached -> reuse the cached DEK, or
   unwrap without touching the secret store
2. METADATA_ONLY: durable KeyMetadata known -> fetch wrapped DEK, unwrap, cache it
3. ABSENT: no metadata -> mint DEK, provision master key, wrap, store secret, cache

Rules:
- Cached material is revalidated by a successful unwrap; an unwrap failure
  falls back to durable metadata instead of failing the call.
- A cache entry disagreeing with the caller's durable metadata (handed in,
  or loaded from the caller's store) is evicted.
- Creation only happens when the caller allows it (encrypt); decryption
  never mints a key, since a new key cannot decrypt existing data.
- METADATA_ONLY and ABSENT run under a per-entity asyncio.Lock so concurrent
  first use of an entity provisions remote resources once. A lock is dropped
  as soon as nobody holds or awaits it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .cache import CacheEntry, KeyMetadataCache
from .crypto import AES_256_KEY_SIZE, SecureKey, generate_dek
from .errors import DEKResolutionError, DEKUnwrapError, EncryptionError
from .kms import KeyWrappingClient
from .models import (
    EntityKeyContext,
    EntityKeyName,
    KeyMetadata,
    ResolutionState,
    ResolvedKey,
)
from .secret_store import SecretStoreClient, secret_id_for

logger = logging.getLogger(__name__)


class KeyResolver:
    """
    Resolve per-entity DEKs through cache, durable metadata and remote services.
    """

    def __init__(
        self,
        kms: KeyWrappingClient,
        secret_store: SecretStoreClient,
        cache: KeyMetadataCache,
        dek_length: int = AES_256_KEY_SIZE,
    ) -> None:
        self._kms = kms
        self._secret_store = secret_store
        self._cache = cache
        self._dek_length = dek_length
        self._locks: Dict[EntityKeyName, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()

    @property
    def cache(self) -> KeyMetadataCache:
        return self._cache

    async def resolve(self, context: EntityKeyContext, create: bool = True) -> ResolvedKey:
        """
        Resolve the entity's DEK.

        Args:
            context: Entity identity and access to its durable metadata
            create: Whether an entity without metadata gets a new DEK

        Returns:
            ResolvedKey with the DEK, its metadata, wrapped bytes and state

        Raises:
            DEKResolutionError: If no DEK exists and creation is not allowed
            SecretNotFoundError, DEKIntegrityError, DEKUnwrapError: If durable
                metadata points at material that cannot be recovered
            KeyCreationError, DEKWrapError, SecretRetrievalError: If creation fails
        """
        key_name = context.key_name

        resolved = await self._from_cache(context)
        if resolved is not None:
            return resolved

        async with self._entity_lock(key_name):
            # Another task may have resolved or created the key meanwhile
            resolved = await self._from_cache(context)
            if resolved is not None:
                return resolved

            metadata = await context.durable_metadata()
            if metadata is None:
                entry = self._cache.get(key_name)
                if entry is not None and not entry.has_wrapped_dek:
                    metadata = entry.metadata

            if metadata is not None:
                return await self._from_metadata(key_name, metadata)

            if not create:
                raise DEKResolutionError(f"No key metadata found for {key_name}")

            return await self._create(context)

    def invalidate(self, key_name: EntityKeyName) -> bool:
        """Drop cached material for an entity."""
        return self._cache.delete(key_name)

    @property
    def active_locks(self) -> int:
        """Number of entities with a resolution in progress or waiting."""
        return len(self._locks)

    @asynccontextmanager
    async def _entity_lock(self, key_name: EntityKeyName) -> AsyncIterator[None]:
        # Locks live only while someone holds or awaits them
        lock = self._locks.get(key_name)
        if lock is None:
            lock = self._locks[key_name] = asyncio.Lock()
        self._lock_users[key_name] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key_name] -= 1
            if self._lock_users[key_name] <= 0:
                del self._lock_users[key_name]
                del self._locks[key_name]

    async def _from_cache(self, context: EntityKeyContext) -> Optional[ResolvedKey]:
        key_name = context.key_name
        entry = self._cache.get(key_name)
        if entry is None or not entry.has_wrapped_dek:
            return None

        # Loads from the caller's store when metadata was not handed in
        durable = await context.durable_metadata()
        if durable is not None and durable != entry.metadata:
            logger.warning(
                "Cached key metadata for %s disagrees with durable metadata, evicting",
                key_name,
            )
            self._cache.delete(key_name)
            return None

        if entry.dek is not None:
            dek = SecureKey(entry.dek.as_bytes())
        else:
            try:
                dek = await self._kms.unwrap(_wrapped(entry), entry.metadata.key_address)
            except DEKUnwrapError as e:
                logger.warning("Cached DEK for %s failed to unwrap, falling back: %s", key_name, e)
                self._cache.delete(key_name)
                return None
            self._cache.set(key_name, entry.metadata, entry.wrapped_dek, dek)

        logger.debug("Resolved DEK for %s from cache", key_name)
        return ResolvedKey(
            dek=dek,
            metadata=entry.metadata,
            wrapped_dek=_wrapped(entry),
            state=ResolutionState.CACHED,
        )

    async def _from_metadata(self, key_name: EntityKeyName, metadata: KeyMetadata) -> ResolvedKey:
        wrapped_dek = await self._secret_store.get_secret(metadata.secret_address)
        dek = await self._kms.unwrap(wrapped_dek, metadata.key_address)
        self._cache.set(key_name, metadata, wrapped_dek, dek)

        logger.debug("Resolved DEK for %s from durable metadata", key_name)
        return ResolvedKey(
            dek=dek,
            metadata=metadata,
            wrapped_dek=wrapped_dek,
            state=ResolutionState.METADATA_ONLY,
        )

    async def _create(self, context: EntityKeyContext) -> ResolvedKey:
        key_name = context.key_name

        dek = generate_dek(self._dek_length)
        wrap = await self._kms.wrap(dek, key_name)
        secret_address = await self._secret_store.create_secret(
            secret_id_for(key_name), wrap.wrapped_dek
        )
        metadata = KeyMetadata(key_address=wrap.key_address, secret_address=secret_address)

        try:
            durable = await context.persist(metadata)
        except EncryptionError:
            raise
        except Exception as e:
            raise DEKResolutionError(f"Failed to persist key metadata for {key_name}: {e}") from e

        if durable != metadata:
            logger.warning(
                "Lost key creation race for %s; orphaned key %s and secret %s",
                key_name,
                metadata.key_address.key_id,
                metadata.secret_id,
            )
            return await self._from_metadata(key_name, durable)

        self._cache.set(key_name, metadata, wrap.wrapped_dek, dek)
        logger.info("Created DEK for %s (key ring %s)", key_name, metadata.key_ring_id)
        return ResolvedKey(
            dek=dek,
            metadata=metadata,
            wrapped_dek=wrap.wrapped_dek,
            state=ResolutionState.ABSENT,
        )


def _wrapped(entry: CacheEntry) -> bytes:
    return bytes(entry.wrapped_dek or b"")
