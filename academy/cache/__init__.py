"""In-memory caches owned by the sync services."""

from .record_cache import DEFAULT_TTL_MS, RecordCache

__all__ = ["DEFAULT_TTL_MS", "RecordCache"]
