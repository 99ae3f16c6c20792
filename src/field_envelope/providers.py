"""
Contracts for the external collaborators of the envelope engine.

This module provides:
- KeyWrappingProvider: Remote KMS (key rings, master keys, wrap/unwrap)
- SecretStoreProvider: Remote versioned secret store
- EntityKeyMetadataStore: Durable per-entity KeyMetadata (e.g. a DB side table)
- MasterKeyRef: Master key created by a KeyWrappingProvider

Providers raise ResourceExistsError / ResourceNotFoundError for the
conditions named below; anything else they raise is treated as a failure of
the remote call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .models import KeyMetadata


@dataclass(frozen=True)
class MasterKeyRef:
    """Master key resource name and its primary version id."""

    name: str
    primary_version: str

    @property
    def version_name(self) -> str:
        return f"{self.name}/cryptoKeyVersions/{self.primary_version}"


class KeyWrappingProvider(ABC):
    """
    Remote key management service.

    All methods are async; resource names follow the
    ``projects/<p>/locations/<l>/keyRings/<r>/cryptoKeys/<k>`` scheme.
    """

    @abstractmethod
    async def create_key_ring(self, location_name: str, key_ring_id: str) -> str:
        """Create a key ring; ResourceExistsError if it already exists."""
        ...

    @abstractmethod
    async def create_master_key(self, key_ring_name: str, key_id: str) -> MasterKeyRef:
        """Create a symmetric master key; ResourceExistsError if it already exists."""
        ...

    @abstractmethod
    async def wrap(self, master_key_name: str, plaintext: bytes) -> bytes:
        """Encrypt with the master key's primary version."""
        ...

    @abstractmethod
    async def unwrap(self, master_key_version_name: str, ciphertext: bytes) -> bytes:
        """Decrypt with exactly the named master key version."""
        ...


class SecretStoreProvider(ABC):
    """Remote versioned secret store."""

    @abstractmethod
    async def create_secret(self, parent: str, secret_id: str) -> str:
        """Create an empty secret; ResourceExistsError if it already exists."""
        ...

    @abstractmethod
    async def add_version(self, secret_name: str, payload: bytes) -> str:
        """Add a version and return its resource name."""
        ...

    @abstractmethod
    async def access_version(self, version_name: str) -> bytes:
        """
        Read a secret version (``.../versions/latest`` for the newest).

        ResourceNotFoundError if the secret or version does not exist.
        """
        ...


class EntityKeyMetadataStore(ABC):
    """Durable KeyMetadata keyed by entity id."""

    @abstractmethod
    async def find_by_entity_id(self, entity_id: str) -> Optional[KeyMetadata]:
        """Get the entity's metadata, or None."""
        ...

    @abstractmethod
    async def create(self, entity_id: str, metadata: KeyMetadata) -> KeyMetadata:
        """
        Create-if-absent.

        Returns the stored metadata: ``metadata`` itself, or the row a
        concurrent creator persisted first.
        """
        ...

    @abstractmethod
    async def delete(self, entity_id: str) -> bool:
        """Delete the entity's metadata (re-encryption/rotation only)."""
        ...
