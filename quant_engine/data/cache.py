"""
Caching and Background Sweeps
=============================

- TTL staleness with true-LRU eviction (oldest last access, not oldest insert)
- Single-flight de-duplication of concurrent computations per key
- A stoppable background sweeper thread for expired entries
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    """Cache entry with insertion and last-access times."""
    value: Any
    inserted_at: float
    last_accessed: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.inserted_at >= ttl_seconds


@dataclass
class CacheStats:
    """Cache counters."""
    size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    coalesced: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100


class CoalescingCache:
    """
    Bounded TTL cache with an in-flight map for single-flight computation.

    get_or_compute() installs the in-flight future before the first await of
    the computation, so callers racing on the same key share one result.
    The in-flight entry is removed only after the result is delivered.
    """

    def __init__(self, name: str, ttl_seconds: float, max_entries: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._lock = threading.RLock()
        self._stats = CacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock(), self.ttl_seconds)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is None:
                self._stats.misses += 1
                return default
            if entry.is_expired(now, self.ttl_seconds):
                del self._entries[key]
                self._stats.misses += 1
                return default
            entry.last_accessed = now
            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: Any):
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = CacheEntry(value=value, inserted_at=now, last_accessed=now)

    def _evict(self, now: float):
        # Expired entries go first, then the least recently accessed
        expired = [k for k, e in self._entries.items() if e.is_expired(now, self.ttl_seconds)]
        for key in expired:
            del self._entries[key]
            self._stats.evictions += 1
        while len(self._entries) >= self.max_entries:
            lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
            del self._entries[lru_key]
            self._stats.evictions += 1
            logger.debug(f"{self.name} cache: evicted LRU entry {lru_key}")

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def sweep(self) -> int:
        """Remove TTL-expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now, self.ttl_seconds)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"{self.name} cache: swept {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            self._stats.size = len(self._entries)
            return CacheStats(**vars(self._stats))

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def get_or_compute(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value, join an in-flight computation, or start one."""
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        pending = self._in_flight.get(key)
        if pending is not None:
            self._stats.coalesced += 1
            logger.debug(f"{self.name} cache: joining in-flight computation for {key}")
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            value = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a future without waiters does not warn
            future.exception()
            raise
        else:
            self.set(key, value)
            future.set_result(value)
            return value
        finally:
            self._in_flight.pop(key, None)


class PeriodicSweeper:
    """
    Background thread running registered sweep callbacks at fixed intervals.

    Daemon thread, stopped via stop(); never keeps the process alive.
    """

    def __init__(self, name: str = "quant-engine-sweeper"):
        self.name = name
        self._tasks: List[Tuple[str, float, Callable[[], Any]]] = []
        self._next_run: Dict[str, float] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    def register(self, name: str, interval_seconds: float, callback: Callable[[], Any]):
        with self._lock:
            self._tasks.append((name, interval_seconds, callback))
            self._next_run[name] = time.monotonic() + interval_seconds

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the sweeper thread (no-op when already running)."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started with {len(self._tasks)} sweep tasks")

    def stop(self, timeout: float = 5):
        """Stop the sweeper thread and wait for it to exit."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info(f"{self.name} stopped")

    def run_pending(self, now: Optional[float] = None) -> int:
        """Run every task whose interval has elapsed. Returns the count run."""
        now = time.monotonic() if now is None else now
        with self._lock:
            due = [(name, interval, cb) for name, interval, cb in self._tasks
                   if self._next_run.get(name, 0) <= now]
            for name, interval, _ in due:
                self._next_run[name] = now + interval

        for name, _, callback in due:
            try:
                callback()
            except Exception as e:
                logger.error(f"Sweep task {name} failed: {e}")
        return len(due)

    def _seconds_until_next(self) -> float:
        with self._lock:
            if not self._next_run:
                return 1.0
            return max(0.0, min(self._next_run.values()) - time.monotonic())

    def _run_loop(self):
        while not self._stop_event.wait(self._seconds_until_next()):
            self.run_pending()


__all__ = ['CacheEntry', 'CacheStats', 'CoalescingCache', 'PeriodicSweeper']
