"""
Tests for the KMS key-wrapping client and the secret-store client.
"""

from __future__ import annotations

import pytest

from conftest import PROJECT_ID

from field_envelope import (
    DEKIntegrityError,
    DEKUnwrapError,
    DEKWrapError,
    EntityKeyName,
    InMemoryKeyWrappingProvider,
    InMemorySecretStore,
    KeyAddress,
    KeyCreationError,
    KeyWrappingClient,
    SecretAddress,
    SecretNotFoundError,
    SecretRetrievalError,
    SecretStoreClient,
    SecureKey,
    ValidationError,
    generate_dek,
)

ALICE = EntityKeyName.for_user("alice")


class ShortPlaintextProvider(InMemoryKeyWrappingProvider):
    """KMS that returns a truncated plaintext on unwrap."""

    async def unwrap(self, master_key_version_name: str, ciphertext: bytes) -> bytes:
        plaintext = await super().unwrap(master_key_version_name, ciphertext)
        return plaintext[:16]


class FailingWrapProvider(InMemoryKeyWrappingProvider):
    async def wrap(self, master_key_name: str, plaintext: bytes) -> bytes:
        raise RuntimeError("kms unavailable")


class FailingKeyRingProvider(InMemoryKeyWrappingProvider):
    async def create_key_ring(self, location_name: str, key_ring_id: str) -> str:
        raise RuntimeError("permission denied")


class TestKeyWrappingClient:
    async def test_wrap_and_unwrap(self, kms_client, kms_provider):
        dek = generate_dek()
        result = await kms_client.wrap(dek, ALICE)

        assert result.key_address == KeyAddress("global", "kr-user-alice", "key-user-alice", "1")
        assert result.wrapped_dek != dek.as_bytes()
        assert kms_provider.key_names == [result.key_address.key_name(PROJECT_ID)]

        unwrapped = await kms_client.unwrap(result.wrapped_dek, result.key_address)
        assert unwrapped.as_bytes() == dek.as_bytes()

    async def test_unwrap_uses_recorded_version_after_rotation(self, kms_client, kms_provider):
        dek = generate_dek()
        result = await kms_client.wrap(dek, ALICE)
        await kms_provider.rotate(result.key_address.key_name(PROJECT_ID))

        unwrapped = await kms_client.unwrap(result.wrapped_dek, result.key_address)
        assert unwrapped.as_bytes() == dek.as_bytes()

    async def test_rejects_wrong_dek_length(self, kms_client):
        with pytest.raises(ValidationError):
            await kms_client.wrap(SecureKey.generate(16), ALICE)

    async def test_reuses_existing_key_ring_and_suffixes_existing_key(self, kms_client):
        first = await kms_client.wrap(generate_dek(), ALICE)
        second = await kms_client.wrap(generate_dek(), ALICE)

        assert second.key_address.key_ring_id == first.key_address.key_ring_id
        assert second.key_address.key_id != first.key_address.key_id
        assert second.key_address.key_id.startswith("key-user-alice-")

    async def test_key_ring_failure(self):
        client = KeyWrappingClient(FailingKeyRingProvider(), PROJECT_ID)
        with pytest.raises(KeyCreationError):
            await client.wrap(generate_dek(), ALICE)

    async def test_wrap_failure(self):
        client = KeyWrappingClient(FailingWrapProvider(), PROJECT_ID)
        with pytest.raises(DEKWrapError):
            await client.wrap(generate_dek(), ALICE)

    async def test_unwrap_tampered_blob(self, kms_client):
        result = await kms_client.wrap(generate_dek(), ALICE)
        tampered = bytearray(result.wrapped_dek)
        tampered[-1] ^= 0x01

        with pytest.raises(DEKUnwrapError):
            await kms_client.unwrap(bytes(tampered), result.key_address)

    async def test_unwrap_unknown_version(self, kms_client):
        result = await kms_client.wrap(generate_dek(), ALICE)
        address = KeyAddress("global", "kr-user-alice", "key-user-alice", "9")

        with pytest.raises(DEKUnwrapError):
            await kms_client.unwrap(result.wrapped_dek, address)

    async def test_unwrap_empty(self, kms_client):
        with pytest.raises(ValidationError):
            await kms_client.unwrap(b"", KeyAddress("global", "kr", "k", "1"))

    async def test_short_plaintext_is_integrity_error(self):
        client = KeyWrappingClient(ShortPlaintextProvider(), PROJECT_ID)
        result = await client.wrap(generate_dek(), ALICE)

        with pytest.raises(DEKIntegrityError):
            await client.unwrap(result.wrapped_dek, result.key_address)


class FailingSecretStore(InMemorySecretStore):
    async def add_version(self, secret_name: str, payload: bytes) -> str:
        raise RuntimeError("quota exceeded")


class EmptyPayloadStore(InMemorySecretStore):
    async def access_version(self, version_name: str) -> bytes:
        return b""


class TestSecretStoreClient:
    async def test_create_and_get(self, secret_client, secret_provider):
        address = await secret_client.create_secret("secret-user-alice", b"wrapped")

        assert address == SecretAddress("secret-user-alice", "1")
        assert secret_provider.secret_names == [f"projects/{PROJECT_ID}/secrets/secret-user-alice"]
        assert await secret_client.get_secret(address) == b"wrapped"
        assert await secret_client.get_secret(SecretAddress("secret-user-alice")) == b"wrapped"

    async def test_existing_secret_gets_unique_id(self, secret_client):
        first = await secret_client.create_secret("secret-user-alice", b"one")
        second = await secret_client.create_secret("secret-user-alice", b"two")

        assert second.secret_id != first.secret_id
        assert second.secret_id.startswith("secret-user-alice-")
        assert await secret_client.get_secret(first) == b"one"
        assert await secret_client.get_secret(second) == b"two"

    @pytest.mark.parametrize("secret_id, payload", [("", b"x"), ("secret-x", b"")])
    async def test_create_requires_id_and_payload(self, secret_client, secret_id, payload):
        with pytest.raises(ValidationError):
            await secret_client.create_secret(secret_id, payload)

    async def test_create_failure(self):
        client = SecretStoreClient(FailingSecretStore(), PROJECT_ID)
        with pytest.raises(SecretRetrievalError):
            await client.create_secret("secret-user-alice", b"wrapped")

    async def test_missing_secret(self, secret_client):
        with pytest.raises(SecretNotFoundError):
            await secret_client.get_secret(SecretAddress("secret-nobody"))

    async def test_deleted_secret(self, secret_client, secret_provider):
        address = await secret_client.create_secret("secret-user-alice", b"wrapped")
        await secret_provider.delete_secret(address.secret_name(PROJECT_ID))

        with pytest.raises(SecretNotFoundError):
            await secret_client.get_secret(address)

    async def test_empty_payload(self):
        client = SecretStoreClient(EmptyPayloadStore(), PROJECT_ID)
        with pytest.raises(SecretNotFoundError):
            await client.get_secret(SecretAddress("secret-user-alice"))
