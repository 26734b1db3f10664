"""Read-through access to Airtable tables."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..airtable import AirtableClient
from ..cache import RecordCache
from ..models import RemoteRecord
from ..normalizer import map_records

logger = logging.getLogger(__name__)

T = TypeVar("T")


def cache_key(table: str) -> str:
    return f"table_{table}"


class RecordRepository:
    """Combines the Airtable client, the normalizer and the TTL cache."""

    def __init__(self, client: AirtableClient, cache: RecordCache) -> None:
        self._client = client
        self._cache = cache

    @property
    def client(self) -> AirtableClient:
        return self._client

    @property
    def cache(self) -> RecordCache:
        return self._cache

    async def fetch_table(
        self,
        table: str,
        mapper: Callable[[RemoteRecord], T],
        *,
        use_cache: bool = True,
    ) -> List[T]:
        key = cache_key(table)
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Using cached data for %s", table)
                return cached

        generation = self._cache.generation(key)
        records = await self._client.fetch_collection(table)
        mapped = map_records(records, mapper, table)
        # Empty results look the same as a failed fetch at this boundary; never cache them.
        if mapped:
            if not self._cache.put(key, mapped, generation=generation):
                logger.debug("%s was written while it was being read; not caching the read", table)
            logger.info("Airtable: loaded %s records from %s", len(mapped), table)
        return mapped

    async def upsert_record(self, table: str, field: str, value: Any, fields: Dict[str, Any]) -> Optional[str]:
        try:
            return await self._client.upsert(table, field, value, fields)
        finally:
            self._cache.invalidate(cache_key(table))

    def invalidate(self, table: str) -> None:
        self._cache.invalidate(cache_key(table))

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Airtable cache cleared")


__all__ = ["RecordRepository", "cache_key"]
