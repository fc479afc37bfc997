"""
Shared async Redis connection.
Used for the dispatch lock, dispatcher wake-ups and worker heartbeats.
None of these are required for correctness: callers degrade gracefully
when Redis is unreachable.
"""
import logging

logger = logging.getLogger(__name__)

KEY_PREFIX = "lendflow"

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from lendflow.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def make_key(*parts: str) -> str:
    """Namespaced Redis key, e.g. make_key("lock", "outbound_dispatch")."""
    return ":".join((KEY_PREFIX,) + tuple(parts))
