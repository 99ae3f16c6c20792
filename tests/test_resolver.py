"""
Tests for the key resolution state machine.
"""

from __future__ import annotations

import asyncio
import os
from typing import Optional

import pytest

from conftest import PROJECT_ID, remote_calls

from field_envelope import (
    DEKIntegrityError,
    DEKResolutionError,
    EntityKeyContext,
    EntityKeyName,
    InMemoryKeyMetadataStore,
    InMemoryKeyWrappingProvider,
    KeyAddress,
    KeyMetadata,
    KeyMetadataCache,
    KeyResolver,
    KeyWrappingClient,
    ResolutionState,
    SecretAddress,
    SecretNotFoundError,
    SecretStoreClient,
    generate_dek,
)

ALICE = EntityKeyName.for_user("alice")


class ShortPlaintextProvider(InMemoryKeyWrappingProvider):
    async def unwrap(self, master_key_version_name: str, ciphertext: bytes) -> bytes:
        plaintext = await super().unwrap(master_key_version_name, ciphertext)
        return plaintext[:16]


class RacingStore(InMemoryKeyMetadataStore):
    """Store whose lookup misses a row another process has already created."""

    async def find_by_entity_id(self, entity_id: str) -> Optional[KeyMetadata]:
        return None


async def test_new_entity_is_created(resolver, make_context, metadata_store):
    resolved = await resolver.resolve(make_context())

    assert resolved.state is ResolutionState.ABSENT
    assert resolved.created
    assert len(resolved.dek) == 32
    assert resolved.wrapped_dek
    assert resolved.metadata.key_ring_id == "kr-user-alice"
    assert resolved.metadata.secret_id == "secret-user-alice"
    assert await metadata_store.find_by_entity_id("1") == resolved.metadata


async def test_cache_hit_makes_no_remote_calls(
    resolver, make_context, kms_provider, secret_provider
):
    created = await resolver.resolve(make_context())
    before = remote_calls(kms_provider, secret_provider)

    cached = await resolver.resolve(make_context())

    assert cached.state is ResolutionState.CACHED
    assert cached.dek.as_bytes() == created.dek.as_bytes()
    assert cached.wrapped_dek == created.wrapped_dek
    assert remote_calls(kms_provider, secret_provider) == before


async def test_cache_hit_without_dek_caching_unwraps_only(
    kms_client, secret_client, make_context, kms_provider, secret_provider
):
    resolver = KeyResolver(kms_client, secret_client, KeyMetadataCache(cache_deks=False))
    created = await resolver.resolve(make_context())
    kms_before = kms_provider.calls["unwrap"]
    secrets_before = remote_calls(secret_provider)

    cached = await resolver.resolve(make_context())

    assert cached.state is ResolutionState.CACHED
    assert cached.dek.as_bytes() == created.dek.as_bytes()
    assert kms_provider.calls["unwrap"] == kms_before + 1
    assert remote_calls(secret_provider) == secrets_before


async def test_durable_metadata_after_cache_clear(resolver, make_context, secret_provider):
    created = await resolver.resolve(make_context())
    resolver.cache.clear()

    resolved = await resolver.resolve(make_context(), create=False)

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.metadata == created.metadata
    assert resolved.dek.as_bytes() == created.dek.as_bytes()
    assert secret_provider.calls["access_version"] == 1


async def test_explicit_metadata_without_store(resolver, make_context):
    created = await resolver.resolve(make_context())
    resolver.cache.clear()

    context = EntityKeyContext(key_name=ALICE, metadata=created.metadata)
    resolved = await resolver.resolve(context, create=False)

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.dek.as_bytes() == created.dek.as_bytes()


async def test_metadata_only_cache_entry(resolver, make_context):
    created = await resolver.resolve(make_context())
    resolver.cache.set(ALICE, created.metadata)

    resolved = await resolver.resolve(EntityKeyContext(key_name=ALICE), create=False)

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.dek.as_bytes() == created.dek.as_bytes()


async def test_cache_disagreeing_with_durable_metadata_is_evicted(resolver, make_context):
    created = await resolver.resolve(make_context())
    stale = KeyMetadata(
        key_address=KeyAddress("global", "kr-old", "key-old", "1"),
        secret_address=SecretAddress("secret-old", "1"),
    )
    resolver.cache.set(ALICE, stale, b"stale-wrapped-dek")

    resolved = await resolver.resolve(make_context(metadata=created.metadata), create=False)

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.metadata == created.metadata
    assert resolved.dek.as_bytes() == created.dek.as_bytes()


async def test_cache_disagreeing_with_stored_metadata_is_evicted(resolver, make_context):
    created = await resolver.resolve(make_context())
    stale = KeyMetadata(
        key_address=KeyAddress("global", "kr-old", "key-old", "1"),
        secret_address=SecretAddress("secret-old", "1"),
    )
    resolver.cache.set(ALICE, stale, b"stale-wrapped-dek", generate_dek())

    # Metadata is not handed in, only reachable through the store
    resolved = await resolver.resolve(make_context(), create=False)

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.metadata == created.metadata
    assert resolved.dek.as_bytes() == created.dek.as_bytes()


async def test_cached_unwrap_failure_falls_back(resolver, make_context):
    created = await resolver.resolve(make_context())
    resolver.cache.set(ALICE, created.metadata, os.urandom(60))

    resolved = await resolver.resolve(make_context(), create=False)

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.dek.as_bytes() == created.dek.as_bytes()


async def test_cached_unwrap_failure_without_metadata_on_decrypt(resolver, make_context):
    created = await resolver.resolve(make_context())
    resolver.cache.set(ALICE, created.metadata, os.urandom(60))

    with pytest.raises(DEKResolutionError):
        await resolver.resolve(EntityKeyContext(key_name=ALICE), create=False)


async def test_decrypt_never_creates(resolver, make_context, kms_provider):
    with pytest.raises(DEKResolutionError):
        await resolver.resolve(make_context(), create=False)
    assert kms_provider.key_names == []


async def test_missing_secret_propagates(resolver, make_context, secret_provider):
    created = await resolver.resolve(make_context())
    resolver.cache.clear()
    await secret_provider.delete_secret(created.metadata.secret_address.secret_name(PROJECT_ID))

    with pytest.raises(SecretNotFoundError):
        await resolver.resolve(make_context(), create=False)


async def test_wrong_length_dek_propagates(secret_client, make_context):
    kms = KeyWrappingClient(ShortPlaintextProvider(), PROJECT_ID)
    resolver = KeyResolver(kms, secret_client, KeyMetadataCache())
    await resolver.resolve(make_context())
    resolver.cache.clear()

    with pytest.raises(DEKIntegrityError):
        await resolver.resolve(make_context(), create=False)


async def test_entities_get_distinct_keys(resolver, make_context):
    alice = await resolver.resolve(make_context("alice", 1))
    bob = await resolver.resolve(make_context("bob", 2))

    assert alice.dek.as_bytes() != bob.dek.as_bytes()
    assert alice.metadata.key_ring_id != bob.metadata.key_ring_id


async def test_concurrent_first_use_provisions_once(resolver, make_context, kms_provider):
    results = await asyncio.gather(*(resolver.resolve(make_context()) for _ in range(10)))

    assert kms_provider.calls["create_master_key"] == 1
    assert len({r.dek.as_bytes() for r in results}) == 1
    assert sum(r.state is ResolutionState.ABSENT for r in results) == 1


async def test_losing_creation_race_uses_winner(resolver, make_context, secret_provider):
    winner = await resolver.resolve(make_context())
    resolver.cache.clear()

    store = RacingStore()
    await store.create("1", winner.metadata)
    resolved = await resolver.resolve(make_context(store=store))

    assert resolved.state is ResolutionState.METADATA_ONLY
    assert resolved.metadata == winner.metadata
    assert resolved.dek.as_bytes() == winner.dek.as_bytes()
    # The loser's secret was still written before the race was detected
    assert len(secret_provider.secret_names) == 2


async def test_invalidate(resolver, make_context):
    await resolver.resolve(make_context())
    assert resolver.invalidate(ALICE) is True
    assert ALICE not in resolver.cache


async def test_locks_are_released_for_many_entities(resolver):
    for i in range(250):
        key_name = EntityKeyName.for_user(f"user{i}")
        await resolver.resolve(EntityKeyContext(key_name))
        resolver.invalidate(key_name)

    assert len(resolver.cache) == 0
    assert resolver.active_locks == 0


async def test_locks_are_released_after_contention_and_failure(resolver, make_context):
    await asyncio.gather(*(resolver.resolve(make_context()) for _ in range(10)))
    assert resolver.active_locks == 0

    with pytest.raises(DEKResolutionError):
        await resolver.resolve(make_context("bob", 2), create=False)
    assert resolver.active_locks == 0
