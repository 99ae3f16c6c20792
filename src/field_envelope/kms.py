"""
Key-wrapping client on top of a remote KMS.

Wraps DEKs under a per-entity master key and unwraps them with the exact
master-key version recorded at wrap time.

Provisioning layout (one key ring per entity):
    projects/<project>/locations/<location>/keyRings/kr-<slug>/cryptoKeys/key-<slug>
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Tuple

from .crypto import AES_256_KEY_SIZE, SecureKey
from .errors import (
    DEKIntegrityError,
    DEKUnwrapError,
    DEKWrapError,
    ErrorCode,
    KeyCreationError,
    ResourceExistsError,
    ValidationError,
)
from .models import EntityKeyName, KeyAddress
from .providers import KeyWrappingProvider, MasterKeyRef

logger = logging.getLogger(__name__)


@dataclass
class WrapResult:
    """Wrapped DEK and the address of the master-key version that wrapped it."""

    wrapped_dek: bytes
    key_address: KeyAddress


def key_resource_ids(key_name: EntityKeyName) -> Tuple[str, str]:
    """Key ring id and crypto key id for an entity."""
    return f"kr-{key_name.slug}", f"key-{key_name.slug}"


class KeyWrappingClient:
    """
    DEK wrap/unwrap against a KeyWrappingProvider.

    Provisioning a master key is remote, slow and not idempotent; callers
    must make sure it happens at most once per entity.
    """

    def __init__(
        self,
        provider: KeyWrappingProvider,
        project_id: str,
        location_id: str = "global",
        dek_length: int = AES_256_KEY_SIZE,
    ) -> None:
        self._provider = provider
        self._project_id = project_id
        self._location_id = location_id
        self._dek_length = dek_length

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def location_id(self) -> str:
        return self._location_id

    async def wrap(self, dek: SecureKey, key_name: EntityKeyName) -> WrapResult:
        """
        Provision a master key for the entity and wrap the DEK with it.

        Raises:
            ValidationError: If the DEK has the wrong length
            KeyCreationError: If the key ring or master key cannot be created
            DEKWrapError: If the wrap call fails
        """
        if len(dek) != self._dek_length:
            raise ValidationError(
                f"Invalid DEK: must be {self._dek_length} bytes",
                ErrorCode.INVALID_DEK,
            )

        master_key = await self._provision_master_key(key_name)

        try:
            wrapped = await self._provider.wrap(master_key.name, dek.as_bytes())
        except Exception as e:
            raise DEKWrapError(f"Failed to wrap DEK for {key_name}: {e}") from e

        key_ring_id = master_key.name.split("/keyRings/", 1)[1].split("/", 1)[0]
        key_id = master_key.name.rsplit("/cryptoKeys/", 1)[1]
        return WrapResult(
            wrapped_dek=wrapped,
            key_address=KeyAddress(
                location_id=self._location_id,
                key_ring_id=key_ring_id,
                key_id=key_id,
                key_version=master_key.primary_version,
            ),
        )

    async def unwrap(self, wrapped_dek: bytes, key_address: KeyAddress) -> SecureKey:
        """
        Unwrap a DEK with the recorded master-key version.

        Raises:
            ValidationError: If the wrapped DEK is empty
            DEKUnwrapError: If the provider call fails
            DEKIntegrityError: If the unwrapped key has the wrong length
        """
        if not wrapped_dek:
            raise ValidationError("Wrapped DEK data is required")

        version_name = key_address.version_name(self._project_id)
        try:
            plaintext = await self._provider.unwrap(version_name, bytes(wrapped_dek))
        except Exception as e:
            raise DEKUnwrapError(f"Failed to unwrap DEK with {version_name}: {e}") from e

        if len(plaintext) != self._dek_length:
            raise DEKIntegrityError(
                f"Invalid DEK length: {len(plaintext)} bytes. "
                f"Expected {self._dek_length} bytes for AES-256-GCM"
            )
        return SecureKey(plaintext)

    async def _provision_master_key(self, key_name: EntityKeyName) -> MasterKeyRef:
        key_ring_id, key_id = key_resource_ids(key_name)
        location_name = f"projects/{self._project_id}/locations/{self._location_id}"

        try:
            try:
                key_ring_name = await self._provider.create_key_ring(location_name, key_ring_id)
            except ResourceExistsError:
                key_ring_name = f"{location_name}/keyRings/{key_ring_id}"
                logger.info("Reusing existing key ring %s", key_ring_name)

            try:
                master_key = await self._provider.create_master_key(key_ring_name, key_id)
            except ResourceExistsError:
                # Never reuse a master key another wrap may already depend on
                unique_id = f"{key_id}-{secrets.token_hex(4)}"
                logger.warning(
                    "Crypto key %s already exists in %s, provisioning %s instead",
                    key_id,
                    key_ring_name,
                    unique_id,
                )
                master_key = await self._provider.create_master_key(key_ring_name, unique_id)
        except Exception as e:
            raise KeyCreationError(f"Failed to create key ring and key: {e}") from e

        if not master_key.primary_version:
            raise KeyCreationError(
                f"Failed to retrieve primary key version for {master_key.name}",
            )

        logger.info("Provisioned master key %s for %s", master_key.name, key_name)
        return master_key
