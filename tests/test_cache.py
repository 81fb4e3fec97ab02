"""
Tests for the validation cache.
"""

import pytest

from kindgate.config import AgeGroup
from kindgate.safety.base import Direction, RiskLevel, ValidationVerdict
from kindgate.safety.cache import ValidationCache, make_cache_key


@pytest.fixture
def cache(ticks):
    return ValidationCache(ttl_seconds=60, max_age_seconds=300, max_entries=3, clock=ticks)


def key(content="hello", user="child_1", age=AgeGroup.CHILD, direction=Direction.INPUT, version=1):
    return make_cache_key(content, user, age, direction, version)


class TestCacheKey:
    def test_key_is_stable(self):
        assert key() == key()

    def test_key_covers_every_input(self):
        base = key()
        assert key(content="hello!") != base
        assert key(user="child_2") != base
        assert key(age=AgeGroup.TEEN) != base
        assert key(direction=Direction.OUTPUT) != base
        assert key(version=2) != base


class TestValidationCache:
    def test_miss_then_hit(self, cache):
        assert cache.get(key()) is None

        cache.put(key(), ValidationVerdict(allowed=True), "child_1")
        cached = cache.get(key())

        assert cached is not None
        assert cached.allowed is True
        assert cached.from_cache is True
        assert cache.get_stats()["hits"] == 1
        assert cache.get_stats()["misses"] == 1

    def test_cached_copies_are_independent(self, cache):
        verdict = ValidationVerdict(allowed=False, risk_level=RiskLevel.MEDIUM)
        cache.put(key(), verdict, "child_1")

        verdict.refusal_message = "changed after put"
        first = cache.get(key())
        first.sanitized_text = "changed after get"

        second = cache.get(key())
        assert second.refusal_message is None
        assert second.sanitized_text is None

    def test_ttl_expiry(self, cache, ticks):
        cache.put(key(), ValidationVerdict(allowed=True), "child_1")
        ticks.advance(59)
        assert cache.get(key()) is not None
        ticks.advance(2)
        assert cache.get(key()) is None

    def test_sweep_removes_old_entries(self, cache, ticks):
        cache.put(key("old"), ValidationVerdict(allowed=True), "child_1")
        ticks.advance(200)
        cache.put(key("new"), ValidationVerdict(allowed=True), "child_1")
        ticks.advance(150)

        assert cache.sweep() == 1
        assert len(cache) == 1

    def test_oldest_evicted_on_overflow(self, cache):
        for content in ["a", "b", "c", "d"]:
            cache.put(key(content), ValidationVerdict(allowed=True), "child_1")

        assert len(cache) == 3
        assert cache.get(key("a")) is None
        assert cache.get(key("d")) is not None

    def test_invalidate_user(self, cache):
        cache.put(key(user="child_1"), ValidationVerdict(allowed=True), "child_1")
        cache.put(key(user="child_2"), ValidationVerdict(allowed=True), "child_2")

        assert cache.invalidate_user("child_1") == 1
        assert cache.get(key(user="child_1")) is None
        assert cache.get(key(user="child_2")) is not None
