"""
In-memory provider implementations for development and testing.

This module provides:
- InMemoryKeyWrappingProvider: Local stand-in for a remote KMS (AES-256-GCM KEKs)
- InMemorySecretStore: Local versioned secret store
- InMemoryKeyMetadataStore: Local durable-metadata side table

Each provider counts calls per operation in ``calls`` and uses asyncio.Lock
for safe concurrent access.
"""

from __future__ import annotations

import asyncio
import secrets
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .crypto import AES_256_KEY_SIZE
from .errors import ResourceExistsError, ResourceNotFoundError
from .models import KeyMetadata
from .providers import (
    EntityKeyMetadataStore,
    KeyWrappingProvider,
    MasterKeyRef,
    SecretStoreProvider,
)

_WRAP_NONCE_SIZE = 12
_VERSION_SEGMENT = "/cryptoKeyVersions/"
_SECRET_VERSION_SEGMENT = "/versions/"


@dataclass
class _MasterKey:
    versions: Dict[str, bytes] = field(default_factory=dict)
    primary: str = "1"


class InMemoryKeyWrappingProvider(KeyWrappingProvider):
    """
    In-memory KMS.

    Master keys are random 32-byte AES-256-GCM keys with numbered versions;
    wrapped blobs are ``nonce(12) || ciphertext || tag(16)``.
    """

    def __init__(self) -> None:
        self._key_rings: Set[str] = set()
        self._keys: Dict[str, _MasterKey] = {}
        self._lock = asyncio.Lock()
        self.calls: Counter = Counter()

    async def create_key_ring(self, location_name: str, key_ring_id: str) -> str:
        """Create a key ring."""
        self.calls["create_key_ring"] += 1
        name = f"{location_name}/keyRings/{key_ring_id}"
        async with self._lock:
            if name in self._key_rings:
                raise ResourceExistsError(f"Key ring {name} already exists")
            self._key_rings.add(name)
        return name

    async def create_master_key(self, key_ring_name: str, key_id: str) -> MasterKeyRef:
        """Create a master key with a single primary version."""
        self.calls["create_master_key"] += 1
        name = f"{key_ring_name}/cryptoKeys/{key_id}"
        async with self._lock:
            if key_ring_name not in self._key_rings:
                raise ResourceNotFoundError(f"Key ring {key_ring_name} not found")
            if name in self._keys:
                raise ResourceExistsError(f"Crypto key {name} already exists")
            self._keys[name] = _MasterKey(
                versions={"1": secrets.token_bytes(AES_256_KEY_SIZE)}
            )
        return MasterKeyRef(name=name, primary_version="1")

    async def rotate(self, master_key_name: str) -> str:
        """Add a new primary version to a master key and return its id."""
        async with self._lock:
            key = self._get_key(master_key_name)
            version = str(len(key.versions) + 1)
            key.versions[version] = secrets.token_bytes(AES_256_KEY_SIZE)
            key.primary = version
            return version

    async def wrap(self, master_key_name: str, plaintext: bytes) -> bytes:
        """Encrypt under the primary version."""
        self.calls["wrap"] += 1
        async with self._lock:
            key = self._get_key(master_key_name)
            kek = key.versions[key.primary]
        nonce = secrets.token_bytes(_WRAP_NONCE_SIZE)
        return nonce + AESGCM(kek).encrypt(nonce, plaintext, None)

    async def unwrap(self, master_key_version_name: str, ciphertext: bytes) -> bytes:
        """Decrypt with exactly the named version."""
        self.calls["unwrap"] += 1
        key_name, _, version = master_key_version_name.partition(_VERSION_SEGMENT)
        async with self._lock:
            key = self._get_key(key_name)
            kek = key.versions.get(version)
        if kek is None:
            raise ResourceNotFoundError(f"Key version {master_key_version_name} not found")
        return AESGCM(kek).decrypt(
            ciphertext[:_WRAP_NONCE_SIZE], ciphertext[_WRAP_NONCE_SIZE:], None
        )

    @property
    def key_names(self) -> List[str]:
        return sorted(self._keys)

    def _get_key(self, name: str) -> _MasterKey:
        key = self._keys.get(name)
        if key is None:
            raise ResourceNotFoundError(f"Crypto key {name} not found")
        return key


class InMemorySecretStore(SecretStoreProvider):
    """In-memory versioned secret store."""

    def __init__(self) -> None:
        self._secrets: Dict[str, List[bytes]] = {}
        self._lock = asyncio.Lock()
        self.calls: Counter = Counter()

    async def create_secret(self, parent: str, secret_id: str) -> str:
        """Create an empty secret."""
        self.calls["create_secret"] += 1
        name = f"{parent}/secrets/{secret_id}"
        async with self._lock:
            if name in self._secrets:
                raise ResourceExistsError(f"Secret {name} already exists")
            self._secrets[name] = []
        return name

    async def add_version(self, secret_name: str, payload: bytes) -> str:
        """Append a version (versions are numbered from 1)."""
        self.calls["add_version"] += 1
        async with self._lock:
            versions = self._secrets.get(secret_name)
            if versions is None:
                raise ResourceNotFoundError(f"Secret {secret_name} not found")
            versions.append(bytes(payload))
            return f"{secret_name}{_SECRET_VERSION_SEGMENT}{len(versions)}"

    async def access_version(self, version_name: str) -> bytes:
        """Read a version, ``latest`` resolving to the newest."""
        self.calls["access_version"] += 1
        secret_name, _, version = version_name.rpartition(_SECRET_VERSION_SEGMENT)
        async with self._lock:
            versions = self._secrets.get(secret_name)
            if not versions:
                raise ResourceNotFoundError(f"Secret {secret_name} has no versions")
            if version == "latest":
                return versions[-1]
            try:
                index = int(version)
            except ValueError:
                raise ResourceNotFoundError(f"Secret version {version_name} not found")
            if not 1 <= index <= len(versions):
                raise ResourceNotFoundError(f"Secret version {version_name} not found")
            return versions[index - 1]

    async def delete_secret(self, secret_name: str) -> bool:
        """Delete a secret and all its versions."""
        async with self._lock:
            return self._secrets.pop(secret_name, None) is not None

    @property
    def secret_names(self) -> List[str]:
        return sorted(self._secrets)


class InMemoryKeyMetadataStore(EntityKeyMetadataStore):
    """In-memory durable metadata side table."""

    def __init__(self) -> None:
        self._rows: Dict[str, KeyMetadata] = {}
        self._lock = asyncio.Lock()

    async def find_by_entity_id(self, entity_id: str) -> Optional[KeyMetadata]:
        async with self._lock:
            return self._rows.get(entity_id)

    async def create(self, entity_id: str, metadata: KeyMetadata) -> KeyMetadata:
        async with self._lock:
            return self._rows.setdefault(entity_id, metadata)

    async def delete(self, entity_id: str) -> bool:
        async with self._lock:
            return self._rows.pop(entity_id, None) is not None
