"""
Secret-store client persisting wrapped DEKs as opaque versioned secrets.
"""

from __future__ import annotations

import logging
import secrets

from .errors import (
    ResourceExistsError,
    ResourceNotFoundError,
    SecretNotFoundError,
    SecretRetrievalError,
    ValidationError,
)
from .models import EntityKeyName, SecretAddress
from .providers import SecretStoreProvider

logger = logging.getLogger(__name__)


def secret_id_for(key_name: EntityKeyName) -> str:
    """Deterministic secret id for an entity."""
    return f"secret-{key_name.slug}"


class SecretStoreClient:
    """Create and read wrapped-DEK secrets through a SecretStoreProvider."""

    def __init__(self, provider: SecretStoreProvider, project_id: str) -> None:
        self._provider = provider
        self._project_id = project_id

    async def create_secret(self, secret_id: str, payload: bytes) -> SecretAddress:
        """
        Store ``payload`` as the first version of a new secret.

        An existing secret under ``secret_id`` is never given a new version;
        a unique id derived from it is used instead.

        Returns:
            SecretAddress pinned to the created version

        Raises:
            ValidationError: If secret_id or payload is empty
            SecretRetrievalError: If the secret cannot be written
        """
        if not secret_id:
            raise ValidationError("Secret id is required")
        if not payload:
            raise ValidationError("Secret payload is required")

        parent = f"projects/{self._project_id}"
        try:
            try:
                secret_name = await self._provider.create_secret(parent, secret_id)
            except ResourceExistsError:
                unique_id = f"{secret_id}-{secrets.token_hex(4)}"
                logger.warning("Secret %s already exists, using %s", secret_id, unique_id)
                secret_id = unique_id
                secret_name = await self._provider.create_secret(parent, secret_id)

            version_name = await self._provider.add_version(secret_name, bytes(payload))
        except Exception as e:
            raise SecretRetrievalError(f"Failed to create secret {secret_id}: {e}") from e

        version = version_name.rsplit("/versions/", 1)[-1]
        logger.info("Stored wrapped DEK in secret %s (version %s)", secret_id, version)
        return SecretAddress(secret_id=secret_id, version=version)

    async def get_secret(self, address: SecretAddress) -> bytes:
        """
        Read the wrapped DEK stored at ``address``.

        Raises:
            SecretNotFoundError: If the secret has no accessible version
            SecretRetrievalError: If the read fails otherwise
        """
        version_name = address.version_name(self._project_id)
        try:
            payload = await self._provider.access_version(version_name)
        except ResourceNotFoundError as e:
            raise SecretNotFoundError(f"No accessible version for secret {address.secret_id}") from e
        except Exception as e:
            raise SecretRetrievalError(f"Failed to access secret {address.secret_id}: {e}") from e

        if not payload:
            raise SecretNotFoundError(f"No payload data found in secret {address.secret_id}")
        return bytes(payload)
