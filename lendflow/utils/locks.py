"""
Redis distributed locks - keeps overlapping dispatch passes from running at once.
Uses Redis SET NX with TTL for automatic expiration.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from lendflow.utils.redis_client import make_key

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 300
LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


@asynccontextmanager
async def single_flight(
    name: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = 0.0,
):
    """
    Hold a named distributed lock for the duration of the block.
    With wait=0 a held lock fails immediately.

    Usage:
        async with single_flight("outbound_dispatch"):
            # only one holder across all processes
    """
    lock_key = make_key("lock", name)
    lock_value = uuid.uuid4().hex  # Unique value to ensure we only release our own lock

    acquired = False
    try:
        acquired = await _acquire_lock(lock_key, lock_value, ttl, wait)
        if not acquired:
            raise LockTimeoutError(f"Lock {name} is held by another process")
        yield
    finally:
        if acquired:
            await _release_lock(lock_key, lock_value)


async def _acquire_lock(
    key: str,
    value: str,
    ttl: int,
    wait: float,
) -> bool:
    """Try to acquire a Redis lock with polling."""
    try:
        from lendflow.utils.redis_client import get_redis
        redis = await get_redis()

        was_set = await redis.set(key, value, nx=True, ex=ttl)
        if was_set:
            return True

        elapsed = 0.0
        while elapsed < wait:
            await asyncio.sleep(LOCK_POLL_INTERVAL)
            elapsed += LOCK_POLL_INTERVAL
            was_set = await redis.set(key, value, nx=True, ex=ttl)
            if was_set:
                return True

        logger.info("Lock %s is held elsewhere", key)
        return False
    except Exception as e:
        # Event updates are compare-and-swap guarded, so a pass without the lock is still safe
        logger.warning("Redis lock error for %s: %s. Proceeding without lock.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        from lendflow.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))
