from __future__ import annotations

import pytest

from academy.cache import RecordCache

from conftest import FakeClock


def test_get_within_ttl_returns_copy() -> None:
    clock = FakeClock()
    cache = RecordCache(30000, clock=clock)
    cache.put("table_Modules", [{"id": "m1"}])

    clock.advance(29999)
    cached = cache.get("table_Modules")

    assert cached == [{"id": "m1"}]
    cached.append({"id": "mutated"})
    assert cache.get("table_Modules") == [{"id": "m1"}]


def test_entry_expires_at_ttl_and_is_evicted() -> None:
    clock = FakeClock()
    cache = RecordCache(30000, clock=clock)
    cache.put("table_Modules", ["a"])

    clock.advance(30000)

    assert cache.get("table_Modules") is None
    assert len(cache) == 0


def test_invalidate_and_clear() -> None:
    cache = RecordCache(30000, clock=FakeClock())
    cache.put("table_Modules", ["a"])
    cache.put("table_Lessons", ["b"])

    cache.invalidate("table_Modules")
    assert "table_Modules" not in cache
    assert "table_Lessons" in cache

    cache.clear()
    assert cache.get("table_Lessons") is None


def test_empty_key_is_rejected() -> None:
    cache = RecordCache()
    with pytest.raises(ValueError):
        cache.put("  ", [])


def test_put_is_refused_after_invalidation_since_read_began() -> None:
    cache = RecordCache(30000, clock=FakeClock())
    before_write = cache.generation("table_Materials")

    cache.invalidate("table_Materials")

    assert cache.put("table_Materials", ["stale"], generation=before_write) is False
    assert cache.get("table_Materials") is None
    assert cache.put("table_Materials", ["fresh"], generation=cache.generation("table_Materials")) is True
    assert cache.get("table_Materials") == ["fresh"]


def test_clear_also_refuses_reads_started_before_it() -> None:
    cache = RecordCache(30000, clock=FakeClock())
    before_clear = cache.generation("table_Streams")

    cache.clear()

    assert cache.put("table_Streams", ["stale"], generation=before_clear) is False
    assert "table_Streams" not in cache
