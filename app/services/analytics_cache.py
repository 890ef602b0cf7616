'''
redis backed memo for derived statistics.

contract is bounded staleness, a new result does not clear every entry, readers accept data up to one
ttl old unless they ask for a refresh. ttl tiers follow how volatile / expensive the value is:
    test analytics      ~1h
    course analytics    10 min
    platform stats      ~3h
    leaderboard pages   3-10 min (5 by default), dropped early whenever the course is re-ranked

keys: org:{org}:branch:{branch}:{kind}:{id}:{params}
'''

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from app.config import settings
from app.core.models import TenantScope

logger = logging.getLogger(__name__)


class CacheTier:
    TEST_ANALYTICS = "test_analytics"
    COURSE_ANALYTICS = "course_analytics"
    PLATFORM_STATS = "platform_stats"
    LEADERBOARD_PAGE = "leaderboard"


TTL = {
    CacheTier.TEST_ANALYTICS: settings.TEST_ANALYTICS_TTL,
    CacheTier.COURSE_ANALYTICS: settings.COURSE_ANALYTICS_TTL,
    CacheTier.PLATFORM_STATS: settings.PLATFORM_STATS_TTL,
    CacheTier.LEADERBOARD_PAGE: settings.LEADERBOARD_PAGE_TTL,
}


def cache_key(scope: TenantScope, kind: str, ident: str = "all", **params) -> str:
    suffix = ",".join(f"{k}={params[k]}" for k in sorted(params)) or "default"
    return f"{scope.cache_prefix()}:{kind}:{ident}:{suffix}"


class AnalyticsCache:
    def __init__(self, redis):
        self.redis = redis

    async def get_or_compute(self, key: str, kind: str, compute: Callable[[], Awaitable[Any]],
                             refresh: bool = False) -> Any:
        '''
        cached value for key, or compute() stored under the tier's ttl before returning.
        compute must return something json serialisable
        '''
        if not refresh:
            cached = await self._get(key)
            if cached is not None:
                logger.debug(f"Cache hit {key}")
                return cached

        logger.debug(f"Cache {'refresh' if refresh else 'miss'} {key}")
        value = await compute()
        await self._set(key, value, TTL[kind])
        return value

    async def invalidate(self, pattern: str) -> int:
        '''drop every key matching a glob pattern, returns how many went'''
        try:
            keys = [k async for k in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
            return len(keys)
        except RedisError as e:
            logger.warning(f"Cache invalidation for {pattern} failed, entries expire on their ttl: {e}")
            return 0

    async def invalidate_course_leaderboard(self, course_id: str) -> int:
        return await self.invalidate(f"*:{CacheTier.LEADERBOARD_PAGE}:{course_id}:*")

    # the cache only saves work, when redis is unreachable values are computed on every call
    async def _get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            logger.warning(f"Cache read for {key} failed: {e}")
            return None
        return json.loads(raw) if raw is not None else None

    async def _set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.redis.setex(key, ttl, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning(f"Cache write for {key} failed: {e}")
