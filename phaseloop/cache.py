"""
phaseloop - In-memory tool-call cache.

Holds, per rate key, the recent invocation timestamps and the last
successful result, plus a per-request soft-stop tracker. Entries are
LRU-bounded and pruned once older than the TTL. Each key has its own lock
so concurrent calls with different keys never contend.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


@dataclass
class CachedResult:
    """The last successful execution for a rate key."""

    result: Any
    timestamp: float
    iso_timestamp: str


@dataclass
class CacheEntry:
    invocations: list[float] = field(default_factory=list)
    last_success: Optional[CachedResult] = None
    touched_at: float = 0.0


class ToolCallCache:
    """Bounded store backing rate limiting and duplicate reuse.

    Args:
        ttl_seconds: Age after which invocations and results are forgotten.
        max_entries: Maximum number of rate keys kept (least recently used
            keys are evicted first).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 10.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._softstop: "OrderedDict[tuple[str, str], float]" = OrderedDict()
        self._locks: dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def lock_for(self, key: str) -> threading.Lock:
        with self._global_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _entry(self, key: str, create: bool) -> Optional[CacheEntry]:
        with self._global_lock:
            entry = self._entries.get(key)
            if entry is None:
                if not create:
                    return None
                entry = CacheEntry()
                self._entries[key] = entry
                self._evict()
            else:
                self._entries.move_to_end(key)
            entry.touched_at = self._clock()
            return entry

    def _evict(self) -> None:
        while len(self._entries) > self.max_entries:
            old_key, _ = self._entries.popitem(last=False)
            self._release_lock(old_key)
        while len(self._softstop) > self.max_entries:
            self._softstop.popitem(last=False)

    def _release_lock(self, key: str) -> None:
        # a held lock stays so later callers serialize on the same object
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def prune(self) -> None:
        """Drop entries and soft-stop marks older than the TTL."""
        cutoff = self._clock() - self.ttl_seconds
        with self._global_lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.touched_at < cutoff
                and (entry.last_success is None or entry.last_success.timestamp < cutoff)
            ]
            for key in stale:
                del self._entries[key]
            for key in [k for k in self._locks if k not in self._entries]:
                self._release_lock(key)
            for mark in [m for m, ts in self._softstop.items() if ts < cutoff]:
                del self._softstop[mark]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def recent_invocations(self, key: str, window_seconds: float) -> list[float]:
        entry = self._entry(key, create=False)
        if entry is None:
            return []
        cutoff = self._clock() - window_seconds
        entry.invocations = [ts for ts in entry.invocations if ts > cutoff]
        return list(entry.invocations)

    def record_invocation(self, key: str) -> float:
        entry = self._entry(key, create=True)
        now = self._clock()
        entry.invocations.append(now)
        return now

    # ------------------------------------------------------------------
    # Result reuse
    # ------------------------------------------------------------------

    def last_success(self, key: str, max_age_seconds: float) -> Optional[CachedResult]:
        entry = self._entry(key, create=False)
        if entry is None or entry.last_success is None:
            return None
        if self._clock() - entry.last_success.timestamp >= max_age_seconds:
            return None
        return entry.last_success

    def store_success(self, key: str, result: Any, iso_timestamp: str) -> None:
        entry = self._entry(key, create=True)
        entry.last_success = CachedResult(
            result=result, timestamp=self._clock(), iso_timestamp=iso_timestamp
        )

    # ------------------------------------------------------------------
    # Per-request soft stop
    # ------------------------------------------------------------------

    def softstop_hit(self, request_id: str, key: str, window_seconds: float) -> bool:
        with self._global_lock:
            last = self._softstop.get((request_id, key))
        return last is not None and self._clock() - last < window_seconds

    def mark_softstop(self, request_id: str, key: str) -> None:
        with self._global_lock:
            self._softstop[(request_id, key)] = self._clock()
            self._softstop.move_to_end((request_id, key))
            self._evict()

    def clear(self) -> None:
        with self._global_lock:
            self._entries.clear()
            self._softstop.clear()
            self._locks.clear()
