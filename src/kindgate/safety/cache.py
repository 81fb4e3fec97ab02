"""
Short-TTL memoization of pipeline verdicts.

Keys cover everything a verdict depends on except active safety
exceptions, so the gateway checks exceptions before it reads the cache.
"""

from __future__ import annotations

import copy
import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from kindgate.config import AgeGroup
from kindgate.logging import get_logger
from kindgate.safety.base import Direction, ValidationVerdict

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    verdict: ValidationVerdict
    user_id: str
    stored_at: float


def make_cache_key(
    content: str,
    user_id: str,
    age_group: AgeGroup,
    direction: Direction,
    rule_set_version: int,
) -> str:
    """Stable hash of everything a cached verdict depends on."""
    raw = "\x1f".join(
        [content, user_id, age_group.value, direction.value, str(rule_set_version)]
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ValidationCache:
    """
    Size-bounded verdict cache.

    Entries older than ``ttl_seconds`` are ignored on read. ``sweep()``
    removes entries older than ``max_age_seconds``; the oldest entry is
    evicted when the cache is full.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_age_seconds: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_age_seconds = max_age_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> ValidationVerdict | None:
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.stored_at > self.ttl_seconds:
            self.misses += 1
            return None

        self.hits += 1
        verdict = copy.deepcopy(entry.verdict)
        verdict.from_cache = True
        return verdict

    def put(self, key: str, verdict: ValidationVerdict, user_id: str) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("cache_evicted", key=evicted[:12])

        self._entries[key] = CacheEntry(
            verdict=copy.deepcopy(verdict),
            user_id=user_id,
            stored_at=self._clock(),
        )

    def invalidate_user(self, user_id: str) -> int:
        """Drop every entry cached for one user."""
        keys = [k for k, e in self._entries.items() if e.user_id == user_id]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.debug("cache_user_invalidated", user_id=user_id, count=len(keys))
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Remove entries older than the max age. Returns the number removed."""
        cutoff = self._clock() - self.max_age_seconds
        stale = [k for k, e in self._entries.items() if e.stored_at < cutoff]
        for key in stale:
            del self._entries[key]

        if stale:
            logger.info("cache_swept", removed=len(stale), remaining=len(self._entries))
        return len(stale)

    def get_stats(self) -> dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }
