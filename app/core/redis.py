from functools import lru_cache

import redis.asyncio as redis

from app.config import settings


@lru_cache()
def get_redis() -> redis.Redis:
    # one pool per process, connections are opened lazily on first command
    return redis.from_url(settings.REDIS_URL, decode_responses=True)
