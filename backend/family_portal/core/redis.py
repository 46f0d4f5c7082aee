import redis.asyncio as aioredis
from family_portal.core.config import settings

# Sessions are written by the identity provider and only read here
redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI dependency: async Redis client"""
    return aioredis.Redis(connection_pool=redis_pool)


async def check_redis_connection() -> bool:
    try:
        r = await get_redis()
        await r.ping()
        return True
    except Exception:
        return False
