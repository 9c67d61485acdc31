"""
Bounded in-memory cache with TTL support.

Process-local soft state: entries are lost on restart and nothing may depend
on their survival for correctness.
"""

import time
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TTLCache:
    """In-memory cache with per-entry TTL and an upper bound on entries"""

    def __init__(
        self,
        default_ttl: float = 300,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        entry = self._cache.get(key)
        if entry is not None:
            if entry["expires_at"] > self._clock():
                self.stats["hits"] += 1
                return entry["value"]
            del self._cache[key]
            self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        self._cache.pop(key, None)
        self._cache[key] = {
            "value": value,
            "expires_at": self._clock() + ttl,
        }
        self.stats["sets"] += 1
        self._enforce_bound()

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if key in self._cache:
            del self._cache[key]
            return True
        return False

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def _enforce_bound(self) -> None:
        """Drop expired entries, then the oldest ones while over the bound."""
        if self.max_entries is None or len(self._cache) <= self.max_entries:
            return

        now = self._clock()
        for key in [k for k, e in self._cache.items() if e["expires_at"] <= now]:
            del self._cache[key]
            self.stats["evictions"] += 1

        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
            self.stats["evictions"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }
