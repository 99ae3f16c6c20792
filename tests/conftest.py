"""
Pytest configuration and fixtures for field envelope encryption tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Callable

import asyncpg
import pytest
from dotenv import load_dotenv

from field_envelope import (
    EncryptionService,
    EntityKeyContext,
    EntityKeyName,
    FieldEncryptionConfig,
    InMemoryKeyMetadataStore,
    InMemoryKeyWrappingProvider,
    InMemorySecretStore,
    KeyMetadataCache,
    KeyResolver,
    KeyWrappingClient,
    PostgresKeyMetadataStore,
    SecretStoreClient,
)

PROJECT_ID = "test-project"

USER_CONFIG = {
    "User": {
        "email": {"encrypt": True, "decrypt": True, "shouldHash": True},
        "password": {"encrypt": True, "decrypt": True},
    }
}


class FakeClock:
    """Manually advanced clock for cache TTL tests."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def remote_calls(*providers) -> int:
    """Total remote calls recorded by in-memory providers."""
    return sum(sum(p.calls.values()) for p in providers)


@pytest.fixture
def kms_provider() -> InMemoryKeyWrappingProvider:
    return InMemoryKeyWrappingProvider()


@pytest.fixture
def secret_provider() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def metadata_store() -> InMemoryKeyMetadataStore:
    return InMemoryKeyMetadataStore()


@pytest.fixture
def kms_client(kms_provider: InMemoryKeyWrappingProvider) -> KeyWrappingClient:
    return KeyWrappingClient(kms_provider, PROJECT_ID)


@pytest.fixture
def secret_client(secret_provider: InMemorySecretStore) -> SecretStoreClient:
    return SecretStoreClient(secret_provider, PROJECT_ID)


@pytest.fixture
def cache() -> KeyMetadataCache:
    return KeyMetadataCache()


@pytest.fixture
def resolver(
    kms_client: KeyWrappingClient,
    secret_client: SecretStoreClient,
    cache: KeyMetadataCache,
) -> KeyResolver:
    return KeyResolver(kms=kms_client, secret_store=secret_client, cache=cache)


@pytest.fixture
def field_config() -> FieldEncryptionConfig:
    return FieldEncryptionConfig.from_dict(USER_CONFIG)


@pytest.fixture
def service(field_config: FieldEncryptionConfig, resolver: KeyResolver) -> EncryptionService:
    """Create an encryption service over in-memory providers."""
    return EncryptionService(config=field_config, resolver=resolver)


@pytest.fixture
def make_context(
    metadata_store: InMemoryKeyMetadataStore,
) -> Callable[..., EntityKeyContext]:
    """Build an EntityKeyContext for a user backed by the in-memory store."""

    def _make(username: str = "alice", entity_id: object = 1, **kwargs) -> EntityKeyContext:
        return EntityKeyContext(
            key_name=EntityKeyName.for_user(username),
            entity_id=entity_id,
            store=kwargs.pop("store", metadata_store),
            **kwargs,
        )

    return _make


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_store(pg_pool: asyncpg.Pool) -> PostgresKeyMetadataStore:
    """Create a PostgreSQL metadata store with an empty table."""
    store = PostgresKeyMetadataStore(pg_pool)
    await store.ensure_schema()
    await pg_pool.execute("TRUNCATE TABLE entity_key_metadata")
    return store
