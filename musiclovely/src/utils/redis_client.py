"""
Shared async Redis connection - alert cooldowns and the readiness check.
Nothing in payment reconciliation depends on Redis being up.
"""
import logging

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client
