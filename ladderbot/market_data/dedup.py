"""
DedupCache: TTL + size bounded record of already-seen event identities.

Handles:
- Key generation from (source, symbol, server event time)
- Oldest-first eviction when over capacity
- Periodic TTL pruning (driven by the owner's sweep timer)
"""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

log = logging.getLogger("ladderbot")


class DedupCache:
    """
    Bounded map of key -> first-seen time.

    Insertion order is seen-time order, so the oldest entry is always first.
    A duplicate does not refresh its entry.

    Single-threaded asyncio usage only (no internal locks).
    """

    def __init__(
        self,
        ttl_sec: float = 600.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.ttl_sec = ttl_sec
        self.max_entries = max_entries
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._log_event = log_event or self._default_log
        self._stats = {
            "added": 0,
            "duplicates": 0,
            "expired": 0,
            "evictions": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(json.dumps({"event": event, **kwargs}))

    @staticmethod
    def make_key(source: Any, symbol: Any, event_time: Any) -> str:
        return f"{source}_{symbol}_{event_time}"

    def check_and_add(self, key: str) -> bool:
        """Return True if ``key`` is new (and record it), False for a duplicate."""
        if key in self._seen:
            self._stats["duplicates"] += 1
            return False
        self._seen[key] = self._clock()
        self._stats["added"] += 1
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
            self._stats["evictions"] += 1
        return True

    def contains(self, key: str) -> bool:
        return key in self._seen

    def prune(self) -> int:
        """Drop entries older than the TTL, then evict oldest past capacity."""
        cutoff = self._clock() - self.ttl_sec
        removed = 0
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            del self._seen[key]
            removed += 1
        self._stats["expired"] += removed
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
            self._stats["evictions"] += 1
            removed += 1
        if removed:
            self._log_event("dedup_pruned", removed=removed, size=len(self._seen))
        return removed

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "current_size": len(self._seen),
            "max_size": self.max_entries,
        }
