"""
Tests for the detection cache.
"""

import threading

import pytest

from visual_consensus.cache import DetectionCache
from visual_consensus.models import FusedResult

from fakes import record


def result(tag: str) -> FusedResult:
    return FusedResult(
        elements=(record(0, 0, 10, 10, 0.9, text=tag),),
        strategy_ids=("fake",),
    )


class TestDetectionCache:
    """LRU behaviour and statistics."""

    def test_default_capacity(self):
        assert DetectionCache().capacity() == 50

    def test_capacity_from_config(self, default_config):
        default_config.cache.capacity = 7
        assert DetectionCache().capacity() == 7

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_rejects_non_positive_capacity(self, capacity):
        with pytest.raises(ValueError):
            DetectionCache(capacity=capacity)

    def test_get_and_put(self):
        cache = DetectionCache(capacity=2)
        assert cache.get("a") is None
        cache.put("a", result("A"))
        assert cache.get("a").elements[0].text == "A"
        assert "a" in cache
        assert len(cache) == 1

    def test_lru_eviction_respects_access(self):
        cache = DetectionCache(capacity=2)
        cache.put("A", result("A"))
        cache.put("B", result("B"))
        assert cache.get("A") is not None
        cache.put("C", result("C"))

        assert "B" not in cache
        assert "A" in cache
        assert "C" in cache
        assert cache.size() == 2

    def test_bounded_size(self):
        cache = DetectionCache(capacity=3)
        for key in ["k0", "k1", "k2", "k3"]:
            cache.put(key, result(key))

        assert cache.size() == 3
        assert "k0" not in cache
        assert cache.fingerprints() == ["k1", "k2", "k3"]
        assert cache.stats().evictions == 1

    def test_put_replaces_existing(self):
        cache = DetectionCache(capacity=2)
        cache.put("a", result("old"))
        cache.put("a", result("new"))
        assert cache.size() == 1
        assert cache.get("a").elements[0].text == "new"

    def test_put_refreshes_recency(self):
        cache = DetectionCache(capacity=2)
        cache.put("A", result("A"))
        cache.put("B", result("B"))
        cache.put("A", result("A2"))
        cache.put("C", result("C"))
        assert "A" in cache
        assert "B" not in cache

    def test_hit_and_miss_counts(self):
        cache = DetectionCache(capacity=2)
        cache.get("missing")
        cache.put("a", result("A"))
        cache.get("a")
        cache.get("a")

        assert cache.hit_count() == 2
        assert cache.miss_count() == 1
        assert cache.stats().hit_rate == pytest.approx(2 / 3)

    def test_clear(self):
        cache = DetectionCache(capacity=2)
        cache.put("a", result("A"))
        cache.clear()
        assert cache.size() == 0
        assert cache.get("a") is None

    def test_malformed_entry_is_dropped_as_miss(self):
        cache = DetectionCache(capacity=2)
        cache.put("a", result("A"))
        cache._entries["a"].result = "garbage"

        assert cache.get("a") is None
        assert "a" not in cache
        assert cache.miss_count() == 1
        assert cache.stats().dropped == 1

    def test_put_validates_arguments(self):
        cache = DetectionCache(capacity=2)
        with pytest.raises(ValueError):
            cache.put("", result("A"))
        with pytest.raises(TypeError):
            cache.put("a", "not a result")

    def test_stats_to_dict(self):
        cache = DetectionCache(capacity=4)
        cache.put("a", result("A"))
        data = cache.stats().to_dict()
        assert data["size"] == 1
        assert data["capacity"] == 4
        assert data["hit_rate"] == 0.0

    def test_concurrent_puts_stay_bounded(self):
        cache = DetectionCache(capacity=10)

        def writer(offset):
            for i in range(200):
                cache.put(f"{offset}-{i}", result(str(i)))
                cache.get(f"{offset}-{i // 2}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cache.size() == 10
        assert len(set(cache.fingerprints())) == 10
