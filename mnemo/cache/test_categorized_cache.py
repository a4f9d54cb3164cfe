import random
from datetime import datetime, timezone

import pytest

from mnemo.cache.cache_models import (
    CacheCategory,
    CacheItem,
    CacheItemPriority,
    StructuredPayload,
    TextPayload,
    TopicPayload,
)
from mnemo.cache.categorized_cache import CategorizedCache
from mnemo.core.errors import CapacityExhausted


def _item(key, priority="medium", weight=0.5, category=CacheCategory.PERSONAL_INFO, accessed=None):
    extra = {"last_accessed_at": accessed} if accessed else {}
    return CacheItem(key=key, category=category, priority=priority, weight=weight,
                     data=TextPayload(text=key), **extra)


def test_default_capacities_sum_to_500():
    cache = CategorizedCache()
    assert sum(cache.capacities.values()) == 500


def test_higher_priority_insert_evicts_low_item():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 1})
    assert cache.put(_item("A", priority="low", weight=0.1)) is None
    evicted = cache.put(_item("B", priority="critical", weight=0.9))
    assert evicted.key == "A"
    assert [i.key for i in cache.get_by_category(CacheCategory.PERSONAL_INFO)] == ["B"]


def test_equal_rank_evicts_least_recently_accessed():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 2})
    cache.put(_item("old", accessed=datetime(2020, 1, 1, tzinfo=timezone.utc)))
    cache.put(_item("newer", accessed=datetime(2021, 1, 1, tzinfo=timezone.utc)))
    evicted = cache.put(_item("incoming"))
    assert evicted.key == "old"


def test_get_refreshes_recency_and_counts_access():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 2})
    cache.put(_item("x", accessed=datetime(2020, 1, 1, tzinfo=timezone.utc)))
    cache.put(_item("y", accessed=datetime(2021, 1, 1, tzinfo=timezone.utc)))
    got = cache.get(CacheCategory.PERSONAL_INFO, "x")
    assert got.access_count == 1
    assert got.last_accessed_at > datetime(2021, 1, 1, tzinfo=timezone.utc)
    evicted = cache.put(_item("z"))
    assert evicted.key == "y"


def test_weight_breaks_priority_ties():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 2})
    cache.put(_item("heavy", priority="high", weight=0.9))
    cache.put(_item("light", priority="high", weight=0.2))
    assert cache.put(_item("next", priority="high", weight=0.5)).key == "light"


def test_user_profile_items_are_never_evicted():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 2})
    cache.put(_item("p1", priority="user_profile"))
    cache.put(_item("p2", priority=CacheItemPriority.USER_PROFILE))
    with pytest.raises(CapacityExhausted) as exc:
        cache.put(_item("regular", priority="critical"))
    assert exc.value.category == "personal_info"
    assert {i.key for i in cache.get_by_category(CacheCategory.PERSONAL_INFO)} == {"p1", "p2"}


def test_user_profile_survives_when_other_items_exist():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 2})
    cache.put(_item("profile", priority="user_profile", weight=0.0))
    cache.put(_item("low", priority="low", weight=1.0))
    assert cache.put(_item("new", priority="critical")).key == "low"
    assert {i.key for i in cache.get_by_category(CacheCategory.PERSONAL_INFO)} == {"profile", "new"}


def test_incoming_item_ranking_lowest_is_turned_away():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 1})
    cache.put(_item("resident", priority="high", weight=0.3))
    rejected = cache.put(_item("weak", priority="low", weight=0.9))
    assert rejected.key == "weak"
    assert [i.key for i in cache.get_by_category(CacheCategory.PERSONAL_INFO)] == ["resident"]
    assert cache.stats()["evictions"] == 1


def test_replacing_a_key_keeps_created_at_and_access_count():
    cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 1})
    cache.put(_item("k", weight=0.1))
    cache.get(CacheCategory.PERSONAL_INFO, "k")
    first = cache.get(CacheCategory.PERSONAL_INFO, "k")
    assert cache.put(_item("k", weight=0.8)) is None
    replaced = cache.get(CacheCategory.PERSONAL_INFO, "k")
    assert replaced.weight == 0.8
    assert replaced.created_at == first.created_at
    assert replaced.access_count == 3


def test_remove_deletes_key_from_every_category():
    cache = CategorizedCache()
    cache.put(_item("shared", category=CacheCategory.PERSONAL_INFO))
    cache.put(_item("shared", category=CacheCategory.PROACTIVE_DATA))
    cache.put(_item("other", category=CacheCategory.PROACTIVE_DATA))
    assert cache.remove("shared") == 2
    assert cache.remove("shared") == 0
    assert len(cache) == 1


def test_capacity_holds_under_random_puts():
    rng = random.Random(7)
    capacities = {c: 5 for c in CacheCategory}
    cache = CategorizedCache(capacities=capacities)
    priorities = list(CacheItemPriority)
    for _ in range(400):
        category = rng.choice(list(CacheCategory))
        item = _item(f"k{rng.randint(0, 60)}", priority=rng.choice(priorities),
                     weight=rng.random(), category=category)
        before = cache.get_by_category(category)
        try:
            evicted = cache.put(item)
        except CapacityExhausted:
            assert all(i.priority == CacheItemPriority.USER_PROFILE for i in before)
            continue
        items = cache.get_by_category(category)
        if len(items) > capacities[category]:
            assert all(i.priority == CacheItemPriority.USER_PROFILE for i in items)
        if evicted is not None:
            assert evicted.priority != CacheItemPriority.USER_PROFILE
            assert all(evicted.priority <= i.priority for i in items)


def test_payload_variants_round_trip_through_public_dict():
    cache = CategorizedCache()
    cache.put(CacheItem(key="t", category=CacheCategory.CONVERSATION_GRASP,
                        data=TopicPayload(topic="hiking", intensity=0.4)))
    cache.put(CacheItem(key="s", category=CacheCategory.KNOWLEDGE_RESERVE, priority="high",
                        data=StructuredPayload(value={"nodes": 2})))
    topic = cache.get(CacheCategory.CONVERSATION_GRASP, "t")
    assert isinstance(topic.data, TopicPayload)
    data = cache.get(CacheCategory.KNOWLEDGE_RESERVE, "s").public_dict()
    assert data["priority"] == "high"
    assert data["data"] == {"kind": "structured", "value": {"nodes": 2}}


def test_stats():
    cache = CategorizedCache()
    for n in range(5):
        cache.put(_item(f"k{n}", weight=0.2 * n))
    cache.get(CacheCategory.PERSONAL_INFO, "k1")
    cache.get(CacheCategory.PERSONAL_INFO, "missing")
    stats = cache.stats()
    assert stats["total_items"] == 5
    assert stats["per_category_counts"]["personal_info"] == 5
    assert stats["average_weight"] == pytest.approx(0.4)
    assert stats["utilization"] == pytest.approx(0.01)
    assert stats["hit_rate"] == pytest.approx(0.5)
    assert cache.clear() == 5
    assert cache.stats()["utilization"] == 0.0
