"""
Webhook dispatch worker - the timer that drives dispatch passes.

Each cycle runs one WebhookDispatcher pass, then waits for either a wake-up
token from the trigger notifier (BRPOP) or the poll interval, whichever comes
first. Falls back to plain sleep when Redis is unavailable.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from lendflow.services.dispatcher import DispatchSummary, WebhookDispatcher
from lendflow.services.trigger_notifier import DISPATCH_NOTIFY_KEY
from lendflow.utils.redis_client import make_key

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = make_key("worker_health", "webhook_dispatch")
HEARTBEAT_TTL_SECONDS = 120


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from lendflow.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=HEARTBEAT_TTL_SECONDS)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def dispatch_cycle(dispatcher: Optional[WebhookDispatcher] = None) -> DispatchSummary:
    """Run a single dispatch pass."""
    dispatcher = dispatcher or WebhookDispatcher()
    return await dispatcher.dispatch_pending()


async def _wait_for_work(poll_interval: int) -> None:
    """Block until a wake-up token arrives or poll_interval elapses."""
    try:
        from lendflow.utils.redis_client import get_redis
        redis = await get_redis()
        result = await redis.brpop(DISPATCH_NOTIFY_KEY, timeout=poll_interval)
        if result:
            # Drain any additional notifications to avoid stacking
            while await redis.rpop(DISPATCH_NOTIFY_KEY):
                pass
    except Exception as e:
        logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
        await asyncio.sleep(poll_interval)


async def run_webhook_dispatcher(dispatcher: Optional[WebhookDispatcher] = None):
    """Main loop - dispatch, heartbeat, wait. Runs until cancelled."""
    from lendflow.config import get_settings
    poll_interval = get_settings().dispatch_poll_interval_seconds
    dispatcher = dispatcher or WebhookDispatcher()

    logger.info("Webhook dispatch worker started (BRPOP %ds timeout)", poll_interval)

    while True:
        try:
            await dispatch_cycle(dispatcher)
        except Exception as e:
            logger.error("Webhook dispatch cycle error: %s", str(e), exc_info=True)

        await _heartbeat()
        await _wait_for_work(poll_interval)
