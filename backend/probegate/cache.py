# probegate/cache.py
"""
Per-operation result cache.

Keyed by (tool, canonicalised parameters) and holding one TTL per entry.
Process-lifetime only: nothing here survives a restart.

Reads and writes copy the stored value, so a caller mutating a response it
got back (or one it just cached) can never corrupt what the next caller sees.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


def make_cache_key(tool: str, params: Mapping[str, Any]) -> str:
    """Deterministic, order-independent digest of (tool, params)."""
    canonical = json.dumps(
        {"tool": tool, "params": {str(k): params[k] for k in sorted(params, key=str)}},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


class ResultCache:
    """
    In-memory TTL cache.

    get() treats an entry older than its TTL as a miss and evicts it; there
    is no background sweeper. Each operation runs under a lock and never
    performs I/O. Last set() on a key wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 10000):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.max_entries = max_entries
        self.hits = 0
        self.misses = 0

    def get(self, tool: str, params: Mapping[str, Any]) -> Optional[Any]:
        key = make_cache_key(tool, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expired(self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return copy.deepcopy(entry.value)

    def set(self, tool: str, params: Mapping[str, Any], value: Any, ttl: float) -> None:
        if ttl is None or ttl <= 0:
            return
        key = make_cache_key(tool, params)
        stored = copy.deepcopy(value)
        with self._lock:
            now = self._clock()
            if len(self._entries) >= self.max_entries and key not in self._entries:
                self._evict(now)
            self._entries[key] = CacheEntry(key=key, value=stored, created_at=now, ttl=ttl)

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Result cache cleared (%d entries)", count)
        return count

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self, now: float) -> None:
        # Caller holds the lock. Expired entries go first, then the oldest quarter.
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for k in expired:
            del self._entries[k]
        if len(self._entries) < self.max_entries:
            return
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)
        for entry in oldest[: max(1, len(oldest) // 4)]:
            del self._entries[entry.key]
