"""
Field Envelope Encryption Benchmark CLI.

Usage:
    field-envelope-benchmark [--entities N]

Or run directly:
    python -m field_envelope.benchmark

Runs the full engine against the in-memory KMS and secret store, so the
timings measure the protocol and cipher, not network round trips.
"""

from __future__ import annotations

import argparse
import asyncio
import time
from typing import Dict, List, Optional, Sequence

from field_envelope.config import FieldEncryptionConfig, Settings
from field_envelope.memory import (
    InMemoryKeyMetadataStore,
    InMemoryKeyWrappingProvider,
    InMemorySecretStore,
)
from field_envelope.models import EntityKeyContext, EntityKeyName, KeyMetadata
from field_envelope.service import EncryptionService

BENCHMARK_CONFIG = {
    "User": {
        "email": {"encrypt": True, "decrypt": True, "shouldHash": True},
        "password": {"encrypt": True, "decrypt": True},
        "firstName": {"encrypt": True, "decrypt": True},
        "lastName": {"encrypt": True, "decrypt": True},
    }
}


def _banner(title: str) -> None:
    print("+" + "-" * 68 + "+")
    print(f"|  {title}".ljust(69) + "|")
    print("+" + "-" * 68 + "+")


def _record(index: int) -> Dict[str, str]:
    return {
        "username": f"user{index}",
        "email": f"user{index}@example.com",
        "password": f"secret-{index}",
        "firstName": "Ada",
        "lastName": "Lovelace",
    }


async def run_benchmark(entities: int = 125) -> Dict[str, float]:
    """
    Run the envelope encryption benchmark.

    Returns:
        Operation rates (ops/sec) keyed by phase
    """
    print("=== Field Envelope Encryption Benchmark ===\n")
    print(f"Testing with {entities} entities\n")

    kms = InMemoryKeyWrappingProvider()
    secret_store = InMemorySecretStore()
    metadata_store = InMemoryKeyMetadataStore()
    service = EncryptionService.from_settings(
        Settings(project_id="benchmark"),
        kms,
        secret_store,
        config=FieldEncryptionConfig.from_dict(BENCHMARK_CONFIG),
    )

    def context(index: int) -> EntityKeyContext:
        return EntityKeyContext(
            key_name=EntityKeyName.for_user(f"user{index}"),
            entity_id=index,
            store=metadata_store,
        )

    print("=" * 70)
    print("                    BENCHMARK START")
    print("=" * 70 + "\n")

    # ========================================================================
    # Demo 1: New entities (DEK minted, master key provisioned)
    # ========================================================================
    _banner(f"Demo 1: Create {entities} Entities with DEKs")

    encrypted: List[Dict[str, object]] = []
    metadata: List[KeyMetadata] = []

    demo1_start = time.perf_counter()
    for i in range(entities):
        result = await service.encrypt_object("User", _record(i), context(i))
        encrypted.append(result.encrypted_record)
        metadata.append(result.key_metadata)
    demo1_duration = time.perf_counter() - demo1_start

    print(f"[OK] Created {entities} entities with wrapped DEKs")
    print(f"[PERF] Time: {demo1_duration * 1000:.3f}ms | Rate: {entities / demo1_duration:.2f} ops/sec\n")

    # ========================================================================
    # Demo 2: Cached encryption (no remote calls)
    # ========================================================================
    _banner("Demo 2: Cached Encryption")

    calls_before = sum(kms.calls.values()) + sum(secret_store.calls.values())
    demo2_start = time.perf_counter()
    for i in range(entities):
        await service.encrypt_object("User", _record(i), context(i))
    demo2_duration = time.perf_counter() - demo2_start
    remote_calls = sum(kms.calls.values()) + sum(secret_store.calls.values()) - calls_before

    print(f"[OK] Re-encrypted {entities} records from cache")
    print(f"[PERF] Time: {demo2_duration * 1000:.3f}ms | Rate: {entities / demo2_duration:.2f} ops/sec")
    print(f"[DEBUG] Remote calls: {remote_calls}\n")

    # ========================================================================
    # Demo 3: Decryption after cache clear (durable metadata path)
    # ========================================================================
    _banner("Demo 3: Decryption from Durable Metadata")

    service.resolver.cache.clear()
    demo3_start = time.perf_counter()
    for i in range(entities):
        ctx = context(i)
        ctx.metadata = metadata[i]
        await service.decrypt_object("User", encrypted[i], ctx)
    demo3_duration = time.perf_counter() - demo3_start

    print(f"[OK] Decrypted {entities} records via secret store + unwrap")
    print(f"[PERF] Time: {demo3_duration * 1000:.3f}ms | Rate: {entities / demo3_duration:.2f} ops/sec\n")

    # ========================================================================
    # Demo 4: Cached decryption
    # ========================================================================
    _banner("Demo 4: Cached Decryption")

    demo4_start = time.perf_counter()
    for i in range(entities):
        await service.decrypt_object("User", encrypted[i], context(i))
    demo4_duration = time.perf_counter() - demo4_start

    print(f"[OK] Decrypted {entities} records from cache")
    print(f"[PERF] Time: {demo4_duration * 1000:.3f}ms | Rate: {entities / demo4_duration:.2f} ops/sec\n")

    # ========================================================================
    # Summary
    # ========================================================================
    rates = {
        "create": entities / demo1_duration,
        "cached_encrypt": entities / demo2_duration,
        "metadata_decrypt": entities / demo3_duration,
        "cached_decrypt": entities / demo4_duration,
    }

    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")

    print("Remote Calls:")
    for name, count in sorted((kms.calls + secret_store.calls).items()):
        print(f"  - {name}: {count}")

    print("\n+- Performance Summary ---------------------------------------------+")
    for label, key in (
        ("Create:", "create"),
        ("Cached Encrypt:", "cached_encrypt"),
        ("Metadata Decrypt:", "metadata_decrypt"),
        ("Cached Decrypt:", "cached_decrypt"),
    ):
        print(f"|  {label:<19}{rates[key]:.2f} ops/sec".ljust(68) + "|")
    print("+-------------------------------------------------------------------+")

    print("\n" + "=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")

    return rates


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point for field-envelope-benchmark command."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--entities", type=int, default=125, help="number of entities (default: 125)")
    args = parser.parse_args(argv)
    if args.entities < 1:
        parser.error("--entities must be at least 1")
    asyncio.run(run_benchmark(args.entities))


if __name__ == "__main__":
    main()
