import redis.asyncio as aioredis

from marketplace.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


def get_redis_client() -> aioredis.Redis:
    """Client bound to the shared pool. Caller is responsible for aclose()."""
    return aioredis.Redis(connection_pool=redis_pool)
