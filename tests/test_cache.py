"""
CoalescingCache and PeriodicSweeper tests.
"""

import asyncio
import threading
import time

import pytest

from quant_engine.data import CoalescingCache, PeriodicSweeper


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCacheBasics:

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = CoalescingCache('test', ttl_seconds=10, clock=clock)
        cache.set('a', 1)
        clock.now = 9.9
        assert cache.get('a') == 1
        clock.now = 10.0
        assert cache.get('a') is None
        assert 'a' not in cache

    def test_lru_eviction_uses_last_access(self):
        clock = FakeClock()
        cache = CoalescingCache('test', ttl_seconds=100, max_entries=2, clock=clock)
        cache.set('a', 1)
        clock.now = 1
        cache.set('b', 2)
        clock.now = 2
        cache.get('a')
        clock.now = 3
        cache.set('c', 3)

        assert sorted(cache.keys()) == ['a', 'c']
        assert cache.stats().evictions == 1

    def test_expired_entries_evicted_first(self):
        clock = FakeClock()
        cache = CoalescingCache('test', ttl_seconds=5, max_entries=2, clock=clock)
        cache.set('old', 1)
        clock.now = 4
        cache.set('fresh', 2)
        cache.get('old')
        clock.now = 6
        cache.set('new', 3)
        assert sorted(cache.keys()) == ['fresh', 'new']

    def test_overwrite_does_not_evict(self):
        cache = CoalescingCache('test', ttl_seconds=100, max_entries=1)
        cache.set('a', 1)
        cache.set('a', 2)
        assert cache.get('a') == 2
        assert cache.stats().evictions == 0

    def test_sweep_and_invalidate(self):
        clock = FakeClock()
        cache = CoalescingCache('test', ttl_seconds=10, clock=clock)
        cache.set('a', 1)
        clock.now = 5
        cache.set('b', 2)
        clock.now = 12
        assert cache.sweep() == 1
        assert cache.keys() == ['b']
        assert cache.invalidate('b')
        assert not cache.invalidate('b')
        assert len(cache) == 0

    def test_stats(self):
        cache = CoalescingCache('test', ttl_seconds=10)
        cache.set('a', 1)
        cache.get('a')
        cache.get('missing')
        stats = cache.stats()
        assert (stats.size, stats.hits, stats.misses) == (1, 1, 1)
        assert stats.hit_rate == 50.0


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self):
        cache = CoalescingCache('test', ttl_seconds=60)
        calls = []

        async def factory():
            calls.append(1)
            await asyncio.sleep(0.01)
            return 'value'

        results = await asyncio.gather(*(cache.get_or_compute('k', factory) for _ in range(5)))

        assert results == ['value'] * 5
        assert len(calls) == 1
        assert cache.stats().coalesced == 4
        assert not cache.in_flight('k')
        assert cache.get('k') == 'value'

    @pytest.mark.asyncio
    async def test_cached_value_skips_factory(self):
        cache = CoalescingCache('test', ttl_seconds=60)
        cache.set('k', 'cached')

        async def factory():
            raise AssertionError('factory should not run')

        assert await cache.get_or_compute('k', factory) == 'cached'

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller_and_is_not_cached(self):
        cache = CoalescingCache('test', ttl_seconds=60)
        calls = []

        async def failing():
            calls.append(1)
            await asyncio.sleep(0.01)
            raise ValueError('boom')

        results = await asyncio.gather(
            *(cache.get_or_compute('k', failing) for _ in range(3)), return_exceptions=True
        )
        assert len(calls) == 1
        assert all(isinstance(r, ValueError) for r in results)
        assert 'k' not in cache
        assert not cache.in_flight('k')

        async def succeeding():
            return 42

        assert await cache.get_or_compute('k', succeeding) == 42

    @pytest.mark.asyncio
    async def test_distinct_keys_compute_independently(self):
        cache = CoalescingCache('test', ttl_seconds=60)

        async def factory_for(value):
            await asyncio.sleep(0.01)
            return value

        a, b = await asyncio.gather(
            cache.get_or_compute('a', lambda: factory_for(1)),
            cache.get_or_compute('b', lambda: factory_for(2)),
        )
        assert (a, b) == (1, 2)
        assert cache.stats().coalesced == 0


class TestPeriodicSweeper:

    def test_run_pending_respects_interval(self):
        sweeper = PeriodicSweeper()
        runs = []
        sweeper.register('task', 10, lambda: runs.append(1))

        assert sweeper.run_pending() == 0
        later = time.monotonic() + 11
        assert sweeper.run_pending(now=later) == 1
        assert sweeper.run_pending(now=later + 1) == 0
        assert runs == [1]

    def test_failing_task_is_logged_not_raised(self):
        sweeper = PeriodicSweeper()

        def broken():
            raise RuntimeError('sweep failed')

        sweeper.register('broken', 1, broken)
        assert sweeper.run_pending(now=time.monotonic() + 2) == 1

    def test_background_thread_runs_and_stops(self):
        sweeper = PeriodicSweeper(name='test-sweeper')
        ran = threading.Event()
        sweeper.register('task', 0.01, ran.set)

        sweeper.start()
        try:
            assert sweeper.running
            assert ran.wait(timeout=2)
        finally:
            sweeper.stop()
        assert not sweeper.running

    def test_stop_without_start(self):
        sweeper = PeriodicSweeper()
        sweeper.stop()
        assert not sweeper.running
