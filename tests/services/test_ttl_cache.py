"""Tests for the lookup cache and the cached schedule store."""

from datetime import datetime

import pytest

from visit_adjust.cache import DEFAULT_CACHE_SIZE, CachedScheduleStore, make_cache
from visit_adjust.domain import ExistingSchedule, TimeWindow
from visit_adjust.ports import InMemoryScheduleStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingStore(InMemoryScheduleStore):
    """In-memory store that counts lookups."""

    def __init__(self, schedules=()):
        super().__init__(schedules)
        self.lookups = 0

    async def find_schedules_near(self, window, radius_days):
        self.lookups += 1
        return await super().find_schedules_near(window, radius_days)


def window(hour: int) -> TimeWindow:
    return TimeWindow(start=datetime(2025, 3, 12, hour), duration_minutes=60)


@pytest.fixture
def clock():
    return FakeClock()


def test_make_cache(clock):
    cache = make_cache(ttl=60, timer=clock)

    assert cache.ttl == 60
    assert cache.maxsize == DEFAULT_CACHE_SIZE
    assert cache.timer() == 1000.0


@pytest.mark.asyncio
async def test_cached_store_reuses_lookups(clock):
    """Repeated lookups hit the cache until it expires."""
    inner = CountingStore([ExistingSchedule(id="s-1", window=window(9))])
    store = CachedScheduleStore(inner, make_cache(ttl=60, timer=clock))

    first = await store.find_schedules_near(window(10), 1)
    second = await store.find_schedules_near(window(10), 1)
    await store.find_schedules_near(window(11), 1)

    assert [s.id for s in first] == [s.id for s in second] == ["s-1"]
    assert inner.lookups == 2

    clock.advance(30)
    await store.find_schedules_near(window(10), 1)
    assert inner.lookups == 2

    clock.advance(45)
    await store.find_schedules_near(window(10), 1)
    assert inner.lookups == 3


@pytest.mark.asyncio
async def test_empty_results_are_cached(clock):
    inner = CountingStore()
    store = CachedScheduleStore(inner, make_cache(ttl=60, timer=clock))

    assert await store.find_schedules_near(window(10), 1) == []
    assert await store.find_schedules_near(window(10), 1) == []
    assert inner.lookups == 1


@pytest.mark.asyncio
async def test_cached_results_are_copies(clock):
    """Callers mutating a returned list do not change the cached entry."""
    inner = CountingStore([ExistingSchedule(id="s-1", window=window(9))])
    store = CachedScheduleStore(inner, make_cache(ttl=60, timer=clock))

    first = await store.find_schedules_near(window(10), 1)
    first.clear()
    second = await store.find_schedules_near(window(10), 1)

    assert [s.id for s in second] == ["s-1"]


@pytest.mark.asyncio
async def test_adjustment_invalidates_cache(clock):
    """Writes drop cached neighbourhoods so moved visits are seen."""
    cache = make_cache(ttl=60, timer=clock)
    inner = CountingStore([ExistingSchedule(id="s-1", window=window(9))])
    store = CachedScheduleStore(inner, cache)

    await store.find_schedules_near(window(10), 0)
    assert len(cache) == 1
    await store.apply_adjustment("s-1", window(10))
    assert len(cache) == 0
    schedules = await store.find_schedules_near(window(10), 0)

    assert inner.lookups == 2
    assert schedules[0].window == window(10)
    assert inner.applied == [("s-1", window(10))]
