"""
Data model for field envelope encryption.

This module provides:
- EntityKeyName: Strongly-typed identity of the entity owning a DEK
- KeyAddress: Exact remote master-key version that wrapped a DEK
- SecretAddress: Secret-store entry holding the wrapped DEK
- KeyMetadata: Durable, versioned {KeyAddress, SecretAddress} bundle
- ResolutionState / ResolvedKey: Outcome of one key resolution
- EntityKeyContext: Caller-supplied access to an entity's durable metadata
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union
from uuid import UUID, uuid4

from .crypto import SecureKey
from .errors import ErrorCode, ValidationError

if TYPE_CHECKING:
    from .providers import EntityKeyMetadataStore

KEY_METADATA_SCHEMA_VERSION = 1

EntityId = Union[str, int, UUID]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_MAX_SLUG_LENGTH = 48
_KEY_VERSION_NAME = re.compile(
    r"^projects/(?P<project>[^/]+)/locations/(?P<location>[^/]+)"
    r"/keyRings/(?P<ring>[^/]+)/cryptoKeys/(?P<key>[^/]+)"
    r"(?:/cryptoKeyVersions/(?P<version>[^/]+))?$"
)


# =============================================================================
# Entity identity
# =============================================================================


@dataclass(frozen=True)
class EntityKeyName:
    """
    Stable per-entity key identity (e.g. a username or client id).

    Deliberately not the mutable record id. The namespace keeps names from
    different sources apart: ``user:alice`` and ``client:alice`` never share
    a cache entry or remote resource.
    """

    namespace: str
    name: str
    stable: bool = field(default=True, compare=False)

    def __post_init__(self) -> None:
        if not self.namespace or not self.name:
            raise ValidationError("Entity key name requires a namespace and a name")

    @classmethod
    def for_user(cls, username: str) -> EntityKeyName:
        return cls("user", username)

    @classmethod
    def for_client(cls, client_id: str) -> EntityKeyName:
        return cls("client", client_id)

    @classmethod
    def ephemeral(cls, namespace: str = "entity") -> EntityKeyName:
        """Unique name for an entity without a stable identity yet."""
        return cls(namespace, uuid4().hex, stable=False)

    @property
    def slug(self) -> str:
        """
        Identifier safe for KMS and secret-store resource ids.

        Restricted to ``[A-Za-z0-9_-]``; when sanitising or truncating changed
        the name, a digest of the original is appended so distinct names never
        collide.
        """
        raw = f"{self.namespace}-{self.name}"
        safe = _UNSAFE_CHARS.sub("_", raw)
        if safe == raw and len(safe) <= _MAX_SLUG_LENGTH:
            return safe
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
        return f"{safe[:_MAX_SLUG_LENGTH - 9]}-{digest}"

    def __str__(self) -> str:
        return f"{self.namespace}:{self.name}"


# =============================================================================
# Addresses and metadata
# =============================================================================


@dataclass(frozen=True)
class KeyAddress:
    """Remote master-key version used to wrap a DEK."""

    location_id: str
    key_ring_id: str
    key_id: str
    key_version: str

    def key_ring_name(self, project_id: str) -> str:
        return f"projects/{project_id}/locations/{self.location_id}/keyRings/{self.key_ring_id}"

    def key_name(self, project_id: str) -> str:
        return f"{self.key_ring_name(project_id)}/cryptoKeys/{self.key_id}"

    def version_name(self, project_id: str) -> str:
        return f"{self.key_name(project_id)}/cryptoKeyVersions/{self.key_version}"

    @classmethod
    def from_resource_name(cls, name: str, default_version: str = "1") -> KeyAddress:
        """
        Parse a crypto key (version) resource name.

        Raises:
            ValidationError: If the name is not a crypto key resource name
        """
        match = _KEY_VERSION_NAME.match(name or "")
        if match is None:
            raise ValidationError(f"Not a crypto key resource name: {name!r}")
        return cls(
            location_id=match["location"],
            key_ring_id=match["ring"],
            key_id=match["key"],
            key_version=match["version"] or default_version,
        )


@dataclass(frozen=True)
class SecretAddress:
    """Secret-store entry holding a wrapped DEK, pinned to a version."""

    secret_id: str
    version: str = "latest"

    def secret_name(self, project_id: str) -> str:
        return f"projects/{project_id}/secrets/{self.secret_id}"

    def version_name(self, project_id: str) -> str:
        return f"{self.secret_name(project_id)}/versions/{self.version}"


def _pick(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


@dataclass(frozen=True)
class KeyMetadata:
    """
    Durable key metadata persisted alongside a record.

    Immutable for the record's lifetime unless it is explicitly re-encrypted.
    """

    key_address: KeyAddress
    secret_address: SecretAddress
    schema_version: int = KEY_METADATA_SCHEMA_VERSION

    @property
    def location_id(self) -> str:
        return self.key_address.location_id

    @property
    def key_ring_id(self) -> str:
        return self.key_address.key_ring_id

    @property
    def key_id(self) -> str:
        return self.key_address.key_id

    @property
    def secret_id(self) -> str:
        return self.secret_address.secret_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "locationId": self.key_address.location_id,
            "keyRingId": self.key_address.key_ring_id,
            "keyId": self.key_address.key_id,
            "keyVersion": self.key_address.key_version,
            "secretId": self.secret_address.secret_id,
            "secretVersion": self.secret_address.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KeyMetadata:
        """
        Parse persisted metadata.

        Accepts camelCase and snake_case keys, and the older layout that
        stored a ``kmsPath`` resource name instead of separate key fields.

        Raises:
            ValidationError: If required fields are missing or the schema is unknown
        """
        raw_version = _pick(data, "schemaVersion", "schema_version") or 1
        try:
            schema_version = int(raw_version)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Invalid key metadata schema version: {raw_version!r}",
                ErrorCode.MISSING_REQUIRED_FIELD,
            )
        if schema_version > KEY_METADATA_SCHEMA_VERSION:
            raise ValidationError(f"Unsupported key metadata schema version: {schema_version}")

        secret_id = _pick(data, "secretId", "secret_id")
        if secret_id is None:
            raise ValidationError(
                "Key metadata is missing secretId", ErrorCode.MISSING_REQUIRED_FIELD
            )
        secret_address = SecretAddress(
            secret_id=str(secret_id),
            version=str(_pick(data, "secretVersion", "secret_version") or "latest"),
        )

        kms_path = _pick(data, "kmsPath", "kms_path")
        if kms_path is not None:
            key_address = KeyAddress.from_resource_name(str(kms_path))
        else:
            location_id = _pick(data, "locationId", "location_id")
            key_ring_id = _pick(data, "keyRingId", "key_ring_id")
            key_id = _pick(data, "keyId", "key_id")
            if location_id is None or key_ring_id is None or key_id is None:
                raise ValidationError(
                    "Key metadata requires locationId, keyRingId and keyId",
                    ErrorCode.MISSING_REQUIRED_FIELD,
                )
            key_address = KeyAddress(
                location_id=str(location_id),
                key_ring_id=str(key_ring_id),
                key_id=str(key_id),
                key_version=str(_pick(data, "keyVersion", "key_version") or "1"),
            )

        return cls(
            key_address=key_address,
            secret_address=secret_address,
            schema_version=schema_version,
        )


# =============================================================================
# Resolution results
# =============================================================================


class ResolutionState(Enum):
    """Where a resolution found the entity's key."""

    CACHED = "CACHED"  # KeyAddress + wrapped DEK cached in process
    METADATA_ONLY = "METADATA_ONLY"  # Durable metadata known, wrapped DEK fetched remotely
    ABSENT = "ABSENT"  # Brand-new entity, DEK minted

    def __str__(self) -> str:
        return self.value


@dataclass
class ResolvedKey:
    """Ready-to-use DEK plus the metadata needed to resolve it again."""

    dek: SecureKey
    metadata: KeyMetadata
    wrapped_dek: bytes
    state: ResolutionState

    @property
    def created(self) -> bool:
        return self.state is ResolutionState.ABSENT


@dataclass
class EntityKeyContext:
    """
    Caller-supplied view of an entity's durable key metadata.

    The engine never touches persistence directly: it reads metadata given
    here, or looks it up and records new metadata through ``store``.
    """

    key_name: EntityKeyName
    entity_id: Optional[EntityId] = None
    metadata: Optional[KeyMetadata] = None
    store: Optional["EntityKeyMetadataStore"] = None

    @property
    def normalized_entity_id(self) -> Optional[str]:
        return None if self.entity_id is None else str(self.entity_id)

    async def durable_metadata(self) -> Optional[KeyMetadata]:
        """Durable metadata for the entity, if any is known."""
        if self.metadata is not None:
            return self.metadata
        entity_id = self.normalized_entity_id
        if self.store is None or entity_id is None:
            return None
        self.metadata = await self.store.find_by_entity_id(entity_id)
        return self.metadata

    async def persist(self, metadata: KeyMetadata) -> KeyMetadata:
        """
        Record freshly created metadata (create-if-absent).

        Returns the metadata that is durable afterwards, which differs from
        ``metadata`` when a concurrent creator won.
        """
        entity_id = self.normalized_entity_id
        if self.store is not None and entity_id is not None:
            metadata = await self.store.create(entity_id, metadata)
        self.metadata = metadata
        return metadata
