"""Hierarchical tier loader.

Reads are mediated through three tiers:

- L0 (hot): bounded in-process LRU cache
- L1 (warm): records outside L0 accessed within ``warm_threshold``,
  served by an indexed store query
- L2 (cold): everything older, served only page by page through
  ``lazy_cold_contexts``

Tier membership is computed from timestamps at read time. L1 and L2 queries
exclude whatever L0 holds, so a record is never reported in two tiers at once.
"""

import json
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable

from ..config.models import TierConfig
from ..services.context_store import ContextStore
from ..utils.logger import get_logger
from .models import ContextRecord, ContextTier, MigrationResult

logger = get_logger(__name__)


def estimate_size(record: ContextRecord) -> int:
    """Rough in-memory footprint of a cached record, in bytes."""
    metadata_length = len(json.dumps(record.metadata, default=str)) if record.metadata else 0
    return len(record.compressed_payload) * 2 + metadata_length * 2 + 200


class L0Cache:
    """Bounded LRU cache of context records.

    Capacity is limited both by entry count and by estimated size. When
    either limit is exceeded the entry with the oldest ``last_accessed_at``
    is evicted; ties go to the least recently used entry.
    """

    def __init__(self, max_entries: int, max_bytes: int):
        """Initialize cache.

        Args:
            max_entries: Maximum number of records
            max_bytes: Maximum estimated size of all records
        """
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries: OrderedDict[str, ContextRecord] = OrderedDict()
        self._sizes: dict[str, int] = {}
        self.size_bytes = 0

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.rejections = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._entries

    def get(self, context_id: str) -> ContextRecord | None:
        """Look up a record and mark it most recently used."""
        record = self._entries.get(context_id)
        if record is None:
            self.misses += 1
            return None
        self._entries.move_to_end(context_id)
        self.hits += 1
        return record

    def peek(self, context_id: str) -> ContextRecord | None:
        """Look up a record without touching recency or counters."""
        return self._entries.get(context_id)

    def put(self, record: ContextRecord, evict: bool = True) -> bool:
        """Insert or replace a record.

        Args:
            record: Record to cache
            evict: Make room by evicting; when False the record is only
                admitted if it fits as is

        Returns:
            True if the record is now cached
        """
        size = estimate_size(record)
        if size > self.max_bytes or self.max_entries <= 0:
            self.rejections += 1
            self.remove(record.id)
            return False

        previous = self._sizes.get(record.id, 0)
        is_new = record.id not in self._entries
        if not evict:
            over_count = is_new and len(self._entries) >= self.max_entries
            over_size = self.size_bytes - previous + size > self.max_bytes
            if over_count or over_size:
                return False

        self._entries[record.id] = record
        self._entries.move_to_end(record.id)
        self._sizes[record.id] = size
        self.size_bytes += size - previous

        while len(self._entries) > self.max_entries or self.size_bytes > self.max_bytes:
            self._evict(exclude=record.id)
        return True

    def replace(self, record: ContextRecord) -> None:
        """Swap in a fresher copy of a cached record, keeping its position."""
        if record.id not in self._entries:
            return
        size = estimate_size(record)
        self.size_bytes += size - self._sizes[record.id]
        self._sizes[record.id] = size
        self._entries[record.id] = record

    def remove(self, context_id: str) -> bool:
        if context_id not in self._entries:
            return False
        del self._entries[context_id]
        self.size_bytes -= self._sizes.pop(context_id)
        return True

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._sizes.clear()
        self.size_bytes = 0
        return count

    def ids(self) -> list[str]:
        return list(self._entries)

    def values(self) -> list[ContextRecord]:
        """Cached records, least recently used first."""
        return list(self._entries.values())

    def get_stats(self) -> dict[str, Any]:
        total_requests = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "size_bytes": self.size_bytes,
            "max_entries": self.max_entries,
            "max_bytes": self.max_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total_requests, 4) if total_requests else 0.0,
            "evictions": self.evictions,
            "rejections": self.rejections,
        }

    def _evict(self, exclude: str) -> None:
        candidates = [r for r in self._entries.values() if r.id != exclude]
        if not candidates:
            return
        victim = min(candidates, key=lambda r: r.last_accessed_at)
        self.remove(victim.id)
        self.evictions += 1
        logger.debug("L0 eviction", extra={"context_id": victim.id})


class HierarchicalTierLoader:
    """Serves context reads through the L0/L1/L2 tiers."""

    def __init__(
        self,
        store: ContextStore,
        config: TierConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize loader.

        Args:
            store: Durable context store
            config: Tier thresholds and L0 capacity
            clock: Source of "now", injectable for tests
        """
        self.store = store
        self.config = config or TierConfig()
        self.clock = clock
        self.cache = L0Cache(self.config.l0_max_entries, self.config.l0_max_bytes)

        self.warm_hits = 0
        self.cold_hits = 0
        self.promotions = 0
        self.demotions = 0

    def age_tier(self, record: ContextRecord, now: datetime | None = None) -> ContextTier:
        """Tier a record belongs to by the age of its last access alone."""
        age = (now or self.clock()) - record.last_accessed_at
        if age <= self.config.hot_threshold:
            return ContextTier.HOT
        if age <= self.config.warm_threshold:
            return ContextTier.WARM
        return ContextTier.COLD

    def classify(self, record: ContextRecord, now: datetime | None = None) -> ContextTier:
        """Tier a record is currently served from."""
        if record.id in self.cache:
            return ContextTier.HOT
        age = (now or self.clock()) - record.last_accessed_at
        return ContextTier.WARM if age <= self.config.warm_threshold else ContextTier.COLD

    def should_promote(self, tier: ContextTier, access_count: int) -> bool:
        """Whether a record of this age tier and read count belongs in L0."""
        return tier == ContextTier.HOT or access_count > self.config.promotion_threshold

    async def warm_up(self, project_key: str | None = None) -> int:
        """Fill L0 with the most recently accessed hot-aged records."""
        now = self.clock()
        records = await self.store.query_by_access(
            project_key=project_key,
            accessed_after=now - self.config.hot_threshold,
            exclude_ids=self.cache.ids(),
            order_by="last_accessed_at",
            descending=True,
            limit=self.config.l0_max_entries,
        )
        loaded = 0
        for record in reversed(records):
            if self.cache.put(record, evict=False):
                loaded += 1

        logger.info("L0 cache warmed up", extra={"loaded": loaded, "project_key": project_key})
        return loaded

    def admit(self, record: ContextRecord) -> bool:
        """Put a freshly written or promoted record into L0."""
        return self.cache.put(record)

    async def get(self, context_id: str) -> ContextRecord | None:
        """Get a record, walking L0 then the store.

        Access statistics are written through on every successful read.
        """
        now = self.clock()
        cached = self.cache.get(context_id)
        if cached is not None:
            updated = await self.store.update_access(context_id, now)
            if updated is None:
                self.cache.remove(context_id)
                return None
            self.cache.replace(updated)
            logger.debug("L0 hit", extra={"context_id": context_id})
            return updated

        record = await self.store.get(context_id)
        if record is None:
            logger.debug("Context not found", extra={"context_id": context_id})
            return None

        tier = self.age_tier(record, now)
        if tier == ContextTier.COLD:
            self.cold_hits += 1
        else:
            self.warm_hits += 1

        updated = await self.store.update_access(context_id, now)
        if updated is None:
            return None

        if self.should_promote(tier, updated.access_count):
            if self.cache.put(updated):
                self.promotions += 1
                logger.debug(
                    "Context promoted to L0",
                    extra={"context_id": context_id, "from_tier": tier.value},
                )
        return updated

    def list_hot(self, project_key: str | None = None) -> list[ContextRecord]:
        """L0 contents, most recently used first."""
        records = reversed(self.cache.values())
        return [r for r in records if not project_key or r.project_key == project_key]

    async def list_warm(
        self,
        limit: int = 50,
        project_key: str | None = None,
        offset: int = 0,
    ) -> list[ContextRecord]:
        """L1 page: records outside L0 accessed within the warm threshold."""
        now = self.clock()
        return await self.store.query_by_access(
            project_key=project_key,
            accessed_after=now - self.config.warm_threshold,
            exclude_ids=self.cache.ids(),
            order_by="last_accessed_at",
            descending=True,
            limit=limit,
            offset=offset,
        )

    async def lazy_cold_contexts(
        self,
        offset: int = 0,
        limit: int = 50,
        project_key: str | None = None,
    ) -> list[ContextRecord]:
        """L2 page: one bounded query per call, nothing retained between calls."""
        now = self.clock()
        return await self.store.query_by_access(
            project_key=project_key,
            accessed_before=now - self.config.warm_threshold,
            exclude_ids=self.cache.ids(),
            order_by="last_accessed_at",
            descending=True,
            limit=limit,
            offset=offset,
        )

    async def migrate_tiers(self) -> MigrationResult:
        """Demote stale L0 entries and promote frequently accessed records.

        Entries whose last access is older than ``hot_threshold`` leave L0
        unless their access count exceeds the promotion threshold. Records
        outside L0 with such an access count are then admitted into free
        L0 capacity, most accessed first. Records are never deleted.
        """
        now = self.clock()
        hot_cutoff = now - self.config.hot_threshold
        threshold = self.config.promotion_threshold

        demoted = 0
        for record in self.cache.values():
            if not self.should_promote(self.age_tier(record, now), record.access_count):
                self.cache.remove(record.id)
                demoted += 1

        promoted = 0
        room = self.config.l0_max_entries - len(self.cache)
        if room > 0:
            candidates = await self.store.query_by_access(
                accessed_before=hot_cutoff,
                min_access_count=threshold + 1,
                exclude_ids=self.cache.ids(),
                order_by="access_count",
                descending=True,
                limit=room,
            )
            for record in candidates:
                if not self.should_promote(self.age_tier(record, now), record.access_count):
                    continue
                if self.cache.put(record, evict=False):
                    promoted += 1

        self.promotions += promoted
        self.demotions += demoted
        logger.info("Tier migration completed", extra={"promoted": promoted, "demoted": demoted})
        return MigrationResult(promoted=promoted, demoted=demoted)

    def invalidate(self, context_id: str) -> bool:
        return self.cache.remove(context_id)

    def invalidate_project(self, project_key: str) -> int:
        ids = [r.id for r in self.cache.values() if r.project_key == project_key]
        for context_id in ids:
            self.cache.remove(context_id)
        return len(ids)

    def invalidate_older_than(self, cutoff: datetime) -> int:
        """Drop cached records created before ``cutoff``."""
        ids = [r.id for r in self.cache.values() if r.created_at < cutoff]
        for context_id in ids:
            self.cache.remove(context_id)
        return len(ids)

    def clear(self) -> int:
        return self.cache.clear()

    async def refresh(self, context_id: str) -> ContextRecord | None:
        """Reload a cached record from the store (drops it if gone)."""
        if context_id not in self.cache:
            return None
        record = await self.store.get(context_id)
        if record is None:
            self.cache.remove(context_id)
            return None
        self.cache.replace(record)
        return record

    async def get_stats(self, project_key: str | None = None) -> dict[str, Any]:
        """L0 cache statistics plus L1/L2 counts and migration counters."""
        now = self.clock()
        cached_ids = self.cache.ids()
        warm_count = await self.store.count_by_access(
            project_key=project_key,
            accessed_after=now - self.config.warm_threshold,
            exclude_ids=cached_ids,
        )
        cold_count = await self.store.count_by_access(
            project_key=project_key,
            accessed_before=now - self.config.warm_threshold,
            exclude_ids=cached_ids,
        )
        return {
            "l0": self.cache.get_stats(),
            "l1_count": warm_count,
            "l2_count": cold_count,
            "warm_hits": self.warm_hits,
            "cold_hits": self.cold_hits,
            "promotions": self.promotions,
            "demotions": self.demotions,
        }
