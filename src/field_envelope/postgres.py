"""
PostgreSQL-backed durable key metadata.

This module provides:
- PostgresKeyMetadataStore: EntityKeyMetadataStore over an asyncpg pool
- SCHEMA: DDL for the ``entity_key_metadata`` side table

Architecture:
- **Database**: one row per entity holding its versioned KeyMetadata
  (KMS key address + secret address). No key material is stored here.
- **Secret store**: holds the wrapped DEK the row points at.

Creation is create-if-absent (``INSERT ... ON CONFLICT DO NOTHING``), so two
processes racing to create an entity's key agree on a single row.
"""

from __future__ import annotations

from typing import Optional

import asyncpg

from .errors import StorageError
from .models import KeyAddress, KeyMetadata, SecretAddress
from .providers import EntityKeyMetadataStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS entity_key_metadata (
    entity_id       TEXT PRIMARY KEY,
    schema_version  INTEGER NOT NULL DEFAULT 1,
    location_id     TEXT NOT NULL,
    key_ring_id     TEXT NOT NULL,
    key_id          TEXT NOT NULL,
    key_version     TEXT NOT NULL,
    secret_id       TEXT NOT NULL,
    secret_version  TEXT NOT NULL DEFAULT 'latest',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_COLUMNS = """
    entity_id, schema_version, location_id, key_ring_id, key_id,
    key_version, secret_id, secret_version
"""


class PostgresKeyMetadataStore(EntityKeyMetadataStore):
    """
    PostgreSQL storage backend for per-entity KeyMetadata.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def ensure_schema(self) -> None:
        """Create the side table if it does not exist."""
        try:
            await self._pool.execute(SCHEMA)
        except Exception as e:
            raise StorageError(f"Failed to create key metadata table: {e}") from e

    async def find_by_entity_id(self, entity_id: str) -> Optional[KeyMetadata]:
        """
        Get an entity's key metadata.

        Args:
            entity_id: Record/owner id (text)

        Returns:
            KeyMetadata if found, None otherwise
        """
        query = f"SELECT {_COLUMNS} FROM entity_key_metadata WHERE entity_id = $1"
        try:
            row = await self._pool.fetchrow(query, entity_id)
        except Exception as e:
            raise StorageError(f"Failed to get key metadata: {e}") from e
        if row is None:
            return None
        return self._row_to_metadata(row)

    async def create(self, entity_id: str, metadata: KeyMetadata) -> KeyMetadata:
        """
        Store metadata unless the entity already has a row.

        Returns:
            The row that is stored after the call (possibly a concurrent winner's)
        """
        insert = f"""
            INSERT INTO entity_key_metadata ({_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (entity_id) DO NOTHING
            RETURNING {_COLUMNS}
        """
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        insert,
                        entity_id,
                        metadata.schema_version,
                        metadata.key_address.location_id,
                        metadata.key_address.key_ring_id,
                        metadata.key_address.key_id,
                        metadata.key_address.key_version,
                        metadata.secret_address.secret_id,
                        metadata.secret_address.version,
                    )
                    if row is None:
                        row = await conn.fetchrow(
                            f"SELECT {_COLUMNS} FROM entity_key_metadata WHERE entity_id = $1",
                            entity_id,
                        )
        except Exception as e:
            raise StorageError(f"Failed to store key metadata: {e}") from e

        if row is None:
            raise StorageError(f"Key metadata for {entity_id} vanished during create")
        return self._row_to_metadata(row)

    async def delete(self, entity_id: str) -> bool:
        """
        Delete an entity's key metadata.

        Returns:
            True if a row was deleted
        """
        try:
            result = await self._pool.execute(
                "DELETE FROM entity_key_metadata WHERE entity_id = $1", entity_id
            )
        except Exception as e:
            raise StorageError(f"Failed to delete key metadata: {e}") from e
        return result.endswith(" 1")

    @staticmethod
    def _row_to_metadata(row: asyncpg.Record) -> KeyMetadata:
        """Convert database row to KeyMetadata."""
        return KeyMetadata(
            key_address=KeyAddress(
                location_id=row["location_id"],
                key_ring_id=row["key_ring_id"],
                key_id=row["key_id"],
                key_version=row["key_version"],
            ),
            secret_address=SecretAddress(
                secret_id=row["secret_id"],
                version=row["secret_version"],
            ),
            schema_version=row["schema_version"],
        )
