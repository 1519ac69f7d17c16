"""
TTL caching of schedule lookups.

The cache is a ``cachetools.TTLCache`` owned by the orchestrator and
injected where needed, so nothing is cached at module level.
"""

import time
from typing import Callable, List

from cachetools import TTLCache
from loguru import logger

from .domain import ExistingSchedule, TimeWindow

DEFAULT_CACHE_SIZE = 1024


def make_cache(
    ttl: float, maxsize: int = DEFAULT_CACHE_SIZE, timer: Callable[[], float] = time.monotonic
) -> TTLCache:
    """Build the lookup cache; ``timer`` is injectable for tests."""
    return TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)


class CachedScheduleStore:
    """Wraps a schedule store, caching ``find_schedules_near`` results."""

    def __init__(self, store, cache: TTLCache):
        self.store = store
        self.cache = cache

    async def find_schedules_near(
        self, window: TimeWindow, radius_days: int
    ) -> List[ExistingSchedule]:
        key = ("near", window.start.isoformat(), window.duration_minutes, radius_days)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache HIT: {key}")
            return list(cached)

        logger.debug(f"Cache MISS: {key}")
        schedules = await self.store.find_schedules_near(window, radius_days)
        self.cache[key] = tuple(schedules)
        return list(schedules)

    async def apply_adjustment(self, schedule_id: str, window: TimeWindow) -> None:
        await self.store.apply_adjustment(schedule_id, window)
        # Any cached neighbourhood may now be stale
        self.cache.clear()
