"""
Tests for the PostgreSQL key metadata store.

Skipped unless DATABASE_URL is set (directly or in the project .env).
"""

from __future__ import annotations

import asyncio

from field_envelope import (
    EncryptionService,
    EntityKeyContext,
    EntityKeyName,
    FieldEncryptionConfig,
    KeyAddress,
    KeyMetadata,
    PostgresKeyMetadataStore,
    ResolutionState,
    SecretAddress,
)

from conftest import USER_CONFIG


def _metadata(suffix: str = "alice") -> KeyMetadata:
    return KeyMetadata(
        key_address=KeyAddress("global", f"kr-user-{suffix}", f"key-user-{suffix}", "1"),
        secret_address=SecretAddress(f"secret-user-{suffix}", "1"),
    )


async def test_create_and_find(postgres_store: PostgresKeyMetadataStore):
    assert await postgres_store.find_by_entity_id("1") is None

    stored = await postgres_store.create("1", _metadata())

    assert stored == _metadata()
    assert await postgres_store.find_by_entity_id("1") == _metadata()


async def test_create_if_absent_returns_first_row(postgres_store: PostgresKeyMetadataStore):
    await postgres_store.create("1", _metadata("alice"))
    stored = await postgres_store.create("1", _metadata("other"))

    assert stored == _metadata("alice")


async def test_concurrent_create_agrees(postgres_store: PostgresKeyMetadataStore):
    results = await asyncio.gather(
        *(postgres_store.create("1", _metadata(f"racer{i}")) for i in range(5))
    )
    assert len(set(results)) == 1


async def test_delete(postgres_store: PostgresKeyMetadataStore):
    await postgres_store.create("1", _metadata())

    assert await postgres_store.delete("1") is True
    assert await postgres_store.delete("1") is False
    assert await postgres_store.find_by_entity_id("1") is None


async def test_service_round_trip(postgres_store, resolver):
    service = EncryptionService(FieldEncryptionConfig.from_dict(USER_CONFIG), resolver)
    context = EntityKeyContext(EntityKeyName.for_user("alice"), 1, store=postgres_store)

    result = await service.encrypt_object("User", {"email": "a@x.com"}, context)
    service.resolver.cache.clear()

    fresh = EntityKeyContext(EntityKeyName.for_user("alice"), 1, store=postgres_store)
    decrypted = await service.decrypt_object("User", result.encrypted_record, fresh)

    assert decrypted.state is ResolutionState.METADATA_ONLY
    assert decrypted.decrypted_record["email"] == "a@x.com"
