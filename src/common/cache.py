"""
Size-Bounded Caches

Two eviction policies are used across the engine:

- ``evict_quarter``: when an insertion would exceed capacity, the oldest
  quarter of the entries (insertion order) is dropped first.
- ``lru``: reads refresh an entry, and the least recently used entry is
  dropped when capacity is reached.

Caches are owned by one analyzer instance and are cleared between runs.
A lock guards every operation so worker threads of a single run can
share them.
"""

import threading
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, Hashable, Optional


class EvictionPolicy(Enum):
    """Cache eviction policy"""
    EVICT_QUARTER = "evict_quarter"
    LRU = "lru"


class BoundedCache:
    """
    Dictionary-like cache that never holds more than ``max_size`` entries
    """

    def __init__(self, max_size: int, policy: EvictionPolicy = EvictionPolicy.EVICT_QUARTER,
                 name: str = "cache"):
        if max_size < 1:
            raise ValueError(f"Cache capacity must be positive, got {max_size}")

        self.max_size = max_size
        self.policy = policy
        self.name = name

        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._lock = threading.Lock()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            if key not in self._entries:
                self._misses += 1
                return default

            self._hits += 1
            if self.policy is EvictionPolicy.LRU:
                self._entries.move_to_end(key)
            return self._entries[key]

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._entries:
                self._entries[key] = value
                if self.policy is EvictionPolicy.LRU:
                    self._entries.move_to_end(key)
                return

            if len(self._entries) >= self.max_size:
                self._evict()

            self._entries[key] = value

    def _evict(self) -> None:
        """Make room for one entry. Caller holds the lock."""
        if self.policy is EvictionPolicy.LRU:
            count = 1
        else:
            count = max(1, self.max_size // 4)

        for _ in range(min(count, len(self._entries))):
            self._entries.popitem(last=False)
            self._evictions += 1

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._entries.pop(key, default)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def statistics(self) -> Dict[str, Any]:
        """Get cache statistics"""
        lookups = self._hits + self._misses
        return {
            'name': self.name,
            'size': len(self._entries),
            'max_size': self.max_size,
            'policy': self.policy.value,
            'hits': self._hits,
            'misses': self._misses,
            'evictions': self._evictions,
            'hit_rate': self._hits / lookups if lookups else 0.0
        }


def coarsen(value: float, precision: float) -> float:
    """Round a coordinate to a cache key precision (degrees)"""
    return round(round(value / precision) * precision, 9)

