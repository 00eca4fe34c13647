"""Redis client configuration."""

import redis.asyncio as aioredis
from redis.asyncio import Redis

from escrow_relay.config import settings

# Global Redis client instance
_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Get Redis client instance."""
    global _redis_client
    if _redis_client is None:
        _redis_client = await aioredis.from_url(
            str(settings.redis_url),
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_connect_timeout,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class RedisCache:
    """Counter cache backed by Redis."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, key: str) -> str | None:
        """Get value from cache."""
        return await self.redis.get(key)

    async def increment(self, key: str, ttl: int) -> int:
        """Increment a counter and (re)arm its TTL."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl)
            value, _ = await pipe.execute()
        return int(value)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Set a key only if it does not exist yet."""
        return bool(await self.redis.set(key, value, ex=ttl, nx=True))
