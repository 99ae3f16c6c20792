"""
Process-local cache of resolved key material.

Not a source of truth: a miss always falls back to durable metadata, and
cached material that fails to unwrap or decrypt is evicted and re-resolved.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .crypto import SecureKey
from .models import EntityKeyName, KeyMetadata


@dataclass(frozen=True)
class CacheEntry:
    """
    Cached material for one entity.

    ``wrapped_dek`` lets a hit skip the secret store; ``dek`` (when DEK
    caching is enabled) lets it skip the KMS unwrap as well.
    """

    metadata: KeyMetadata
    wrapped_dek: Optional[bytes] = None
    dek: Optional[SecureKey] = None
    inserted_at: float = 0.0

    @property
    def has_wrapped_dek(self) -> bool:
        return bool(self.wrapped_dek)


class KeyMetadataCache:
    """
    In-memory mapping from EntityKeyName to CacheEntry.

    Optional time-to-live (seconds) and a bound on the number of entries,
    evicting the oldest insertion first. The cache is the sole mutator of its
    entries; it is shared by all concurrent operations in the process.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        cache_deks: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: OrderedDict[EntityKeyName, CacheEntry] = OrderedDict()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._cache_deks = cache_deks
        self._clock = clock
        self.hits = 0
        self.misses = 0

    @property
    def caches_deks(self) -> bool:
        return self._cache_deks

    def get(self, key_name: EntityKeyName) -> Optional[CacheEntry]:
        """Get a live entry; expired entries are dropped."""
        entry = self._entries.get(key_name)
        if entry is not None and self._expired(entry):
            del self._entries[key_name]
            entry = None
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def set(
        self,
        key_name: EntityKeyName,
        metadata: KeyMetadata,
        wrapped_dek: Optional[bytes] = None,
        dek: Optional[SecureKey] = None,
    ) -> CacheEntry:
        """Insert or refresh an entry."""
        entry = CacheEntry(
            metadata=metadata,
            wrapped_dek=bytes(wrapped_dek) if wrapped_dek else None,
            dek=SecureKey(dek.as_bytes()) if dek is not None and self._cache_deks else None,
            inserted_at=self._clock(),
        )
        self._entries.pop(key_name, None)
        self._entries[key_name] = entry
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return entry

    def delete(self, key_name: EntityKeyName) -> bool:
        """Drop an entry (e.g. after a key-affecting update)."""
        return self._entries.pop(key_name, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key_name: object) -> bool:
        entry = self._entries.get(key_name)  # type: ignore[arg-type]
        return entry is not None and not self._expired(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry) -> bool:
        return self._ttl is not None and self._clock() - entry.inserted_at >= self._ttl
