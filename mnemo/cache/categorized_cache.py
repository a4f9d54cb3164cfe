"""
Categorized Cache - fixed-capacity, per-category, priority-ordered store of
inferred personal knowledge.

Eviction on a full category removes the lowest-ranked item: priority
ascending, then weight ascending, then least recently accessed. Items with
USER_PROFILE priority are never evicted; a category holding only those
rejects inserts with CapacityExhausted.
"""

from __future__ import annotations

from typing import Any, Optional

from config.settings import settings
from mnemo.cache.cache_models import CacheCategory, CacheItem, CacheItemPriority
from mnemo.core.clock import utcnow
from mnemo.core.errors import CapacityExhausted
from mnemo.core.locks import ReadWriteLock
from mnemo.core.logging_config import get_logger

logger = get_logger(__name__)


def default_capacities() -> dict[CacheCategory, int]:
    return {
        CacheCategory.CONVERSATION_GRASP: settings.cache_capacity_conversation_grasp,
        CacheCategory.INTENT_UNDERSTANDING: settings.cache_capacity_intent_understanding,
        CacheCategory.KNOWLEDGE_RESERVE: settings.cache_capacity_knowledge_reserve,
        CacheCategory.PERSONAL_INFO: settings.cache_capacity_personal_info,
        CacheCategory.PROACTIVE_DATA: settings.cache_capacity_proactive_data,
    }


class CategorizedCache:
    def __init__(
        self,
        capacities: Optional[dict[CacheCategory, int]] = None,
        utilization_target: Optional[int] = None,
    ):
        self.capacities = default_capacities()
        for category, capacity in (capacities or {}).items():
            self.capacities[CacheCategory(category)] = capacity
        for category, capacity in self.capacities.items():
            if capacity < 1:
                raise ValueError(f"capacity for {category.value} must be >= 1")
        self.utilization_target = utilization_target or settings.cache_utilization_target
        self._items: dict[CacheCategory, dict[str, CacheItem]] = {c: {} for c in CacheCategory}
        self._lock = ReadWriteLock()
        self._evictions = 0
        self._hits = 0
        self._misses = 0

    def put(self, item: CacheItem) -> Optional[CacheItem]:
        """
        Insert or replace an item.

        Returns the evicted item, if any; that is the incoming item itself when
        it ranks below everything resident. Replacing an existing key keeps
        its created_at and access_count and never evicts.
        """
        with self._lock.write():
            bucket = self._items[item.category]
            item = item.model_copy(deep=True)
            existing = bucket.get(item.key)
            if existing is not None:
                item.created_at = existing.created_at
                item.access_count = existing.access_count
                bucket[item.key] = item
                return None

            evicted = None
            capacity = self.capacities[item.category]
            if len(bucket) >= capacity:
                candidates = [i for i in bucket.values() if i.priority != CacheItemPriority.USER_PROFILE]
                if not candidates:
                    logger.warning("[Cache] %s full of user_profile items, rejecting %s",
                                   item.category.value, item.key)
                    raise CapacityExhausted(item.category.value, capacity)
                evicted = min(candidates, key=lambda i: i.eviction_rank())
                if item.priority != CacheItemPriority.USER_PROFILE and \
                        (item.priority, item.weight) < evicted.eviction_rank()[:2]:
                    # The incoming item ranks lowest of all; it is the one turned away
                    self._evictions += 1
                    logger.debug("[Cache] %s/%s ranks below every resident item, not stored",
                                 item.category.value, item.key)
                    return item
                del bucket[evicted.key]
                self._evictions += 1
                logger.debug("[Cache] Evicted %s/%s (%s, weight=%.2f)", item.category.value,
                             evicted.key, evicted.priority.name.lower(), evicted.weight)
            bucket[item.key] = item
            return evicted

    def get(self, category: CacheCategory, key: str) -> Optional[CacheItem]:
        """Look up an item, recording the access."""
        with self._lock.write():
            item = self._items[CacheCategory(category)].get(key)
            if item is None:
                self._misses += 1
                return None
            self._hits += 1
            item.last_accessed_at = max(utcnow(), item.last_accessed_at)
            item.access_count += 1
            return item.model_copy(deep=True)

    def get_by_category(self, category: CacheCategory) -> list[CacheItem]:
        """Items of a category, most important first."""
        with self._lock.read():
            items = [i.model_copy(deep=True) for i in self._items[CacheCategory(category)].values()]
        items.sort(key=lambda i: i.eviction_rank(), reverse=True)
        return items

    def all_items(self) -> list[CacheItem]:
        with self._lock.read():
            items = [i.model_copy(deep=True) for bucket in self._items.values() for i in bucket.values()]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items

    def remove(self, key: str) -> int:
        """Remove key from every category holding it; returns how many were removed."""
        with self._lock.write():
            removed = 0
            for bucket in self._items.values():
                if bucket.pop(key, None) is not None:
                    removed += 1
            return removed

    def clear(self) -> int:
        with self._lock.write():
            total = sum(len(b) for b in self._items.values())
            for bucket in self._items.values():
                bucket.clear()
            logger.info("[Cache] Cleared %d items", total)
            return total

    def __len__(self) -> int:
        with self._lock.read():
            return sum(len(b) for b in self._items.values())

    def stats(self) -> dict[str, Any]:
        with self._lock.read():
            items = [i for bucket in self._items.values() for i in bucket.values()]
            per_category = {c.value: len(b) for c, b in self._items.items()}
            total = len(items)
            lookups = self._hits + self._misses
            return {
                "total_items": total,
                "per_category_counts": per_category,
                "capacities": {c.value: n for c, n in self.capacities.items()},
                "average_weight": (sum(i.weight for i in items) / total) if total else 0.0,
                "utilization": min(1.0, max(0.0, total / self.utilization_target)),
                "total_accesses": sum(i.access_count for i in items),
                "evictions": self._evictions,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
            }
