"""
Unit tests for the result cache.
"""

import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from rlm_engine.cache import DEFAULT_MAX_SIZE, DEFAULT_TTL_SECONDS, RLMCache
from rlm_engine.types import WorkerResult


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_result(answer: str = "42", confidence: float = 0.9) -> WorkerResult:
    return WorkerResult(answer=answer, confidence=confidence, source_query="q", tokens_used=12)


class TestHashing:
    """Tests for cache key generation."""

    def test_deterministic(self):
        cache = RLMCache()
        assert cache.generate_hash("q", "ctx") == cache.generate_hash("q", "ctx")

    def test_prefixed(self):
        assert RLMCache().generate_hash("q", "ctx").startswith("rlm_")

    def test_different_queries_differ(self):
        cache = RLMCache()
        assert cache.generate_hash("q1", "ctx") != cache.generate_hash("q2", "ctx")

    def test_only_prefix_participates(self):
        cache = RLMCache(prefix_chars=10)
        assert cache.generate_hash("q", "a" * 10 + "tail-one") == cache.generate_hash(
            "q", "a" * 10 + "tail-two"
        )

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            RLMCache(max_size=0)


class TestGetSet:
    """Tests for get/set/has."""

    def test_defaults(self):
        cache = RLMCache()
        assert cache.max_size == DEFAULT_MAX_SIZE == 100
        assert cache.ttl_seconds == DEFAULT_TTL_SECONDS == 3600

    def test_round_trip_marks_from_cache(self):
        cache = RLMCache()
        original = make_result()
        cache.set("k", original)

        cached = cache.get("k")
        assert cached is not None
        assert cached.from_cache is True
        assert cached.answer == original.answer
        assert cached.confidence == original.confidence
        assert cached.tokens_used == original.tokens_used
        assert original.from_cache is False

    def test_miss(self):
        assert RLMCache().get("missing") is None

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = RLMCache(ttl_seconds=60, clock=clock)
        cache.set("k", make_result())

        clock.now += 59
        assert cache.has("k")
        clock.now += 2
        assert not cache.has("k")
        assert cache.get("k") is None
        assert len(cache) == 0
        assert cache.stats()["expirations"] == 1

    def test_lru_eviction(self):
        cache = RLMCache(max_size=2)
        cache.set("a", make_result("a"))
        cache.set("b", make_result("b"))

        # Touch "a" so "b" becomes least recently used
        assert cache.get("a") is not None
        cache.set("c", make_result("c"))

        assert cache.has("a")
        assert not cache.has("b")
        assert cache.has("c")
        assert cache.stats()["evictions"] == 1

    def test_replace_does_not_evict(self):
        cache = RLMCache(max_size=2)
        cache.set("a", make_result("a1"))
        cache.set("b", make_result("b"))
        cache.set("a", make_result("a2"))

        assert len(cache) == 2
        assert cache.get("a").answer == "a2"
        # "a" is now most recent, so "b" goes first
        cache.set("c", make_result("c"))
        assert not cache.has("b")

    def test_has_does_not_touch_recency(self):
        cache = RLMCache(max_size=2)
        cache.set("a", make_result("a"))
        cache.set("b", make_result("b"))

        assert cache.has("a")
        cache.set("c", make_result("c"))
        assert not cache.has("a")

    def test_stats_and_clear(self):
        cache = RLMCache()
        cache.set("k", make_result())
        cache.get("k")
        cache.get("nope")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1
        assert stats["max_size"] == 100
        assert stats["hit_rate"] == 0.5

        cache.clear()
        assert len(cache) == 0

    def test_concurrent_writes(self):
        cache = RLMCache(max_size=50)

        def writer(offset: int) -> None:
            for i in range(100):
                cache.set(f"k{offset}-{i}", make_result(str(i)))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 50
