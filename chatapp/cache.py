"""
Cache Manager
Best-effort Redis cache and rate limiting; every call is a no-op without Redis
"""
import json
import uuid
from typing import Any, Optional, Dict
from . import core
import logging

logger = logging.getLogger(__name__)

class CacheManager:
    """
    Cache manager using Redis
    Values are stored as JSON; failures are logged and reported as misses
    """

    def __init__(self):
        self.default_ttl = 3600  # 1 hour default TTL

    def _make_key(self, key: str, prefix: str = "") -> str:
        """Generate cache key with prefix"""
        if prefix:
            return f"{prefix}:{key}"
        return key

    async def set(self, key: str, value: Any, ttl: int = None, prefix: str = "") -> bool:
        """Set cache value with TTL"""
        if not core.REDIS:
            return False

        cache_key = self._make_key(key, prefix)
        ttl = ttl or self.default_ttl

        try:
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            await core.REDIS.setex(cache_key, ttl, value)
            return True
        except Exception as e:
            logger.error(f"Cache set failed for key {cache_key}: {str(e)}")
            return False

    async def get(self, key: str, prefix: str = "") -> Optional[Any]:
        """Get cache value"""
        if not core.REDIS:
            return None

        cache_key = self._make_key(key, prefix)

        try:
            value = await core.REDIS.get(cache_key)
        except Exception as e:
            logger.error(f"Cache get failed for key {cache_key}: {str(e)}")
            return None
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value.decode() if isinstance(value, bytes) else value

    async def delete(self, key: str, prefix: str = "") -> bool:
        """Delete cache key"""
        if not core.REDIS:
            return False

        cache_key = self._make_key(key, prefix)

        try:
            result = await core.REDIS.delete(cache_key)
            return result > 0
        except Exception as e:
            logger.error(f"Cache delete failed for key {cache_key}: {str(e)}")
            return False

    async def increment(self, key: str, amount: int = 1, ttl: int = None, prefix: str = "") -> Optional[int]:
        """Increment atomically; the first increment starts the TTL window"""
        if not core.REDIS:
            return None

        cache_key = self._make_key(key, prefix)

        try:
            value = await core.REDIS.incrby(cache_key, amount)
            if value == amount and ttl:
                await core.REDIS.expire(cache_key, ttl)
            return value
        except Exception as e:
            logger.error(f"Cache increment failed for key {cache_key}: {str(e)}")
            return None

# Global cache manager instance
cache = CacheManager()

# Profile cache functions
async def cache_profile(user_id: uuid.UUID, profile: Dict, ttl: int = 300):
    """Cache a rendered profile for 5 minutes"""
    return await cache.set(str(user_id), profile, ttl, "profile")

async def get_cached_profile(user_id: uuid.UUID) -> Optional[Dict]:
    return await cache.get(str(user_id), "profile")

async def invalidate_profile_cache(user_id: uuid.UUID):
    await cache.delete(str(user_id), "profile")

# Rate limiting functions
async def check_rate_limit(user_id: uuid.UUID, action: str, limit: int = 100, window: int = 3600) -> bool:
    """Check if user is within rate limit; always allowed when Redis is down"""
    current = await cache.increment(f"{user_id}:{action}", 1, window, "rate")
    if current is None:
        return True
    return current <= limit
