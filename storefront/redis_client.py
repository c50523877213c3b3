import redis.asyncio as redis
from storefront.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis | None:
    """Shared client, or None when REDIS_URL is not configured."""
    global _redis
    if _redis is None and settings.redis_url:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int = 86400) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should acknowledge and skip.
    Returns False if key is new, or if Redis is not configured (the order-level guards still apply).
    Uses SETNX: set if not exists. If we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    if r is None:
        return False
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds)
    return not was_set  # True = duplicate (already existed), False = new


async def release_idempotency(key: str) -> None:
    """Forget a claimed key so a retry of a failed delivery is processed again."""
    r = await get_redis()
    if r is None:
        return
    await r.delete(key)
