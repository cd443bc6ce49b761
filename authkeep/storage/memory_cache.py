from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

# Minimum spacing between full scans for expired entries
SWEEP_INTERVAL_SECONDS = 60.0


class MemoryCache:
    """In-process ephemeral token store with per-key expiry.

    Mirrors the ``RedisCache`` interface for tests and single-process
    development. Expiry is evaluated lazily against ``clock`` so tests can
    advance time without sleeping. Entries that are never read again are
    dropped by a sweep that runs from the write paths at most once per
    ``SWEEP_INTERVAL_SECONDS``; a rate-limit bucket idle for a full window
    has refilled and is dropped the same way.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}
        # key -> (tokens, last refill, window seconds)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def _maybe_sweep(self, now: float) -> None:
        # Caller holds the lock.
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        for key in [k for k, (_, exp) in self._values.items() if now >= exp]:
            del self._values[key]
        for key in [k for k, (_, exp) in self._sets.items() if now >= exp]:
            del self._sets[key]
        for key in [k for k, (_, last, window) in self._buckets.items() if now - last >= window]:
            del self._buckets[key]

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            self._values[key] = (value, now + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key)
            self._values.pop(key, None)
            return value

    async def add_member(self, set_key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            members, expires_at = self._sets.get(set_key, (set(), 0.0))
            if now >= expires_at:
                members = set()
            members.add(member)
            self._sets[set_key] = (members, now + max(1, int(ttl_seconds)))

    async def remove_member(self, set_key: str, member: str) -> None:
        with self._lock:
            entry = self._sets.get(set_key)
            if entry:
                entry[0].discard(member)

    async def pop_members(self, set_key: str) -> List[str]:
        with self._lock:
            entry = self._sets.pop(set_key, None)
            if entry is None or self._clock() >= entry[1]:
                return []
            return sorted(entry[0])

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Token bucket refilled at ``limit / window_seconds`` per second."""

        window = float(window_seconds)
        refill_rate = float(limit) / window
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            tokens, last, _ = self._buckets.get(key, (float(limit), now, window))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < 1:
                self._buckets[key] = (tokens, now, window)
                return False
            self._buckets[key] = (tokens - 1, now, window)
            return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
            self._buckets.clear()
