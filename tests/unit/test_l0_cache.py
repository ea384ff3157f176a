"""Unit tests for the L0 LRU cache."""

from datetime import datetime, timedelta

import pytest

from ctxmem.context.models import ContextRecord
from ctxmem.context.tier_loader import L0Cache, estimate_size

NOW = datetime(2025, 3, 1, 12, 0, 0)


def record(context_id: str, at: datetime = NOW, payload: str = "payload", **metadata) -> ContextRecord:
    return ContextRecord(
        id=context_id,
        project_key="proj-A",
        compressed_payload=payload,
        algorithm="whitespace",
        strategy="conservative",
        metadata=metadata,
        created_at=at,
        last_accessed_at=at,
    )


class TestL0Cache:
    """LRU cache tests."""

    def setup_method(self):
        self.cache = L0Cache(max_entries=3, max_bytes=1024 * 1024)

    def test_put_and_get(self):
        assert self.cache.put(record("a")) is True
        assert self.cache.get("a").id == "a"
        assert "a" in self.cache
        assert len(self.cache) == 1

    def test_miss(self):
        assert self.cache.get("missing") is None
        assert self.cache.misses == 1

    def test_inserting_n_plus_one_evicts_least_recently_accessed(self):
        for context_id in ("a", "b", "c", "d"):
            self.cache.put(record(context_id))
        assert self.cache.ids() == ["b", "c", "d"]
        assert self.cache.evictions == 1

    def test_get_refreshes_recency(self):
        for context_id in ("a", "b", "c"):
            self.cache.put(record(context_id))
        self.cache.get("a")
        self.cache.put(record("d"))
        assert "a" in self.cache
        assert "b" not in self.cache

    def test_victim_is_oldest_last_access(self):
        self.cache.put(record("fresh-1"))
        self.cache.put(record("stale", at=NOW - timedelta(hours=5)))
        self.cache.put(record("fresh-2"))
        self.cache.put(record("fresh-3"))
        assert "stale" not in self.cache
        assert len(self.cache) == 3

    def test_new_entry_is_never_its_own_victim(self):
        for context_id in ("a", "b", "c"):
            self.cache.put(record(context_id))
        self.cache.put(record("old", at=NOW - timedelta(days=10)))
        assert "old" in self.cache
        assert "a" not in self.cache

    def test_byte_budget(self):
        item_size = estimate_size(record("a", payload="x" * 100))
        cache = L0Cache(max_entries=10, max_bytes=item_size * 2)
        for context_id in ("a", "b", "c"):
            cache.put(record(context_id, payload="x" * 100))
        assert cache.ids() == ["b", "c"]
        assert cache.size_bytes == item_size * 2

    def test_oversized_record_not_admitted(self):
        cache = L0Cache(max_entries=10, max_bytes=500)
        assert cache.put(record("big", payload="x" * 1000)) is False
        assert "big" not in cache
        assert cache.rejections == 1

    def test_put_without_eviction(self):
        for context_id in ("a", "b", "c"):
            self.cache.put(record(context_id))
        assert self.cache.put(record("d"), evict=False) is False
        assert self.cache.ids() == ["a", "b", "c"]

    def test_replace_keeps_position_and_size(self):
        self.cache.put(record("a"))
        self.cache.put(record("b"))
        self.cache.replace(record("a", payload="longer payload"))
        assert self.cache.ids() == ["a", "b"]
        assert self.cache.peek("a").compressed_payload == "longer payload"
        assert self.cache.size_bytes == estimate_size(record("a", payload="longer payload")) + estimate_size(record("b"))

    def test_remove_and_clear(self):
        self.cache.put(record("a"))
        self.cache.put(record("b"))
        assert self.cache.remove("a") is True
        assert self.cache.remove("a") is False
        assert self.cache.clear() == 1
        assert self.cache.size_bytes == 0

    def test_stats(self):
        self.cache.put(record("a"))
        self.cache.get("a")
        self.cache.get("missing")
        stats = self.cache.get_stats()
        assert stats["entries"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

    def test_estimate_size_counts_metadata(self):
        assert estimate_size(record("a", topic="storage")) > estimate_size(record("a"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
