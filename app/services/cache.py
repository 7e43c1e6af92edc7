# =============================================================================
# Response Cache — TTL-Checked, Size-Bounded
# =============================================================================
#
# Memoises successful downstream results keyed by
# (dependency_name, canonical payload). An entry is valid while
# `now - timestamp < ttl` (5 minutes by default); expired entries are
# evicted when read. The total number of entries is capped and the least
# recently used entry is dropped first, so a long-running process does not
# grow without bound.
#
# DESIGN DECISION: No lock. Reads and writes are plain dict operations with
# no await in between, so they are atomic under asyncio. Two requests
# missing the same key at once both call downstream and the last writer
# wins, which only costs one extra call.
# =============================================================================

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached value and the clock reading at which it was stored."""

    value: Any
    timestamp: float


def make_cache_key(dependency_name: str, payload: Any) -> str:
    """
    Deterministic key for a (dependency, payload) pair.

    Keys are sorted so {"a": 1, "b": 2} and {"b": 2, "a": 1} share an entry.
    Non-JSON values (datetimes, UUIDs) are stringified.
    """
    canonical = json.dumps(
        payload, sort_keys=True, separators=(",", ":"), default=str,
        ensure_ascii=False,
    )
    return f"{dependency_name}:{canonical}"


class ResponseCache:
    """
    LRU map with per-entry TTL.

    Example:
        >>> cache = ResponseCache(ttl_s=300, max_entries=1000)
        >>> cache.set("market_analyst", {"query": "PETR4"}, {"response": "..."})
        >>> cache.get("market_analyst", {"query": "PETR4"})
        {'response': '...'}
    """

    def __init__(
        self,
        ttl_s: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl_s = ttl_s
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, dependency_name: str, payload: Any) -> Any | None:
        """Return the cached value, or None on a miss or expired entry."""
        key = make_cache_key(dependency_name, payload)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() - entry.timestamp >= self._ttl_s:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, dependency_name: str, payload: Any, value: Any) -> None:
        key = make_cache_key(dependency_name, payload)
        self._entries[key] = CacheEntry(value=value, timestamp=self._clock())
        self._entries.move_to_end(key)

        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted %s", evicted[:80])

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
