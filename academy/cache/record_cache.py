"""TTL cache for normalized Airtable collections."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

DEFAULT_TTL_MS = 30000


def _normalize_key(key: str) -> str:
    normalized = key.strip()
    if not normalized:
        raise ValueError("Cache key cannot be empty.")
    return normalized


@dataclass
class _CacheEntry:
    data: Any
    cached_at_ms: float


class RecordCache:
    """Process-local read-through cache keyed by collection name.

    Entries expire ``ttl_ms`` after insertion and are evicted on the next read.
    The key space is the fixed set of table names, so nothing else is evicted.
    """

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._ttl_ms = ttl_ms
        self._clock = clock or (lambda: time.time() * 1000)
        self._entries: Dict[str, _CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def get(self, key: str) -> Optional[Any]:
        normalized = _normalize_key(key)
        entry = self._entries.get(normalized)
        if entry is None:
            return None
        if self._clock() - entry.cached_at_ms >= self._ttl_ms:
            self._entries.pop(normalized, None)
            return None
        return copy.deepcopy(entry.data)

    def generation(self, key: str) -> int:
        """Counter that changes whenever ``key`` is invalidated or the cache is cleared."""
        return self._epoch + self._generations.get(_normalize_key(key), 0)

    def put(self, key: str, data: Any, *, generation: Optional[int] = None) -> bool:
        """Store ``data`` unless ``key`` was invalidated after ``generation`` was read."""
        normalized = _normalize_key(key)
        if generation is not None and generation != self.generation(normalized):
            return False
        self._entries[normalized] = _CacheEntry(data=copy.deepcopy(data), cached_at_ms=self._clock())
        return True

    def invalidate(self, key: str) -> None:
        normalized = _normalize_key(key)
        self._entries.pop(normalized, None)
        self._generations[normalized] = self._generations.get(normalized, 0) + 1

    def clear(self) -> None:
        self._entries.clear()
        self._epoch += 1

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["DEFAULT_TTL_MS", "RecordCache"]
