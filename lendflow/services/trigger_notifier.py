"""
Trigger notifier - the one entry point domain services call.

Domain code depends only on the TriggerNotifier protocol; the rule engine and
dispatcher never import anything from the domain layer. notify_trigger
evaluates rules and enqueues matches. It never waits on webhook delivery,
which happens on the next dispatch pass.

Also pushes a wake-up token to Redis so the dispatch worker can pick new
events up immediately via BRPOP instead of waiting out its poll interval.
The token is only pushed once the enqueued rows are committed, otherwise the
worker could wake, find nothing and go back to sleep for a full interval.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Mapping, Optional, Protocol

from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.database import async_session_factory
from lendflow.services import rule_engine
from lendflow.services.event_queue import EventQueue
from lendflow.utils.redis_client import make_key

logger = logging.getLogger(__name__)

DISPATCH_NOTIFY_KEY = make_key("outbound_notify")

# Strong refs to scheduled wake-ups until they finish
_pending_wakeups: set[asyncio.Task] = set()


class TriggerNotifier(Protocol):
    async def notify_trigger(
        self,
        tenant_id,
        trigger_type: str,
        context: Mapping[str, Any],
        db: Optional[AsyncSession] = None,
    ) -> list[uuid.UUID]:
        ...


class WorkflowTriggerNotifier:
    """
    Default TriggerNotifier.

    With db given, events are enqueued inside the caller's transaction
    (flushed, not committed) so they commit or roll back together with the
    domain change. The dispatch worker is woken when that transaction
    commits; a rolled-back transaction wakes nobody. Without db, a session is
    opened and committed here and the worker is woken right after.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        max_retries: Optional[int] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._max_retries = max_retries

    async def notify_trigger(
        self,
        tenant_id,
        trigger_type: str,
        context: Mapping[str, Any],
        db: Optional[AsyncSession] = None,
    ) -> list[uuid.UUID]:
        if db is not None:
            event_ids = await self._evaluate_and_enqueue(db, tenant_id, trigger_type, context)
            if event_ids:
                wake_after_commit(db, event_ids)
            return event_ids

        async with self._session_factory() as session:
            event_ids = await self._evaluate_and_enqueue(session, tenant_id, trigger_type, context)
            await session.commit()

        if event_ids:
            await wake_dispatcher(event_ids)
        return event_ids

    async def _evaluate_and_enqueue(
        self,
        db: AsyncSession,
        tenant_id,
        trigger_type: str,
        context: Mapping[str, Any],
    ) -> list[uuid.UUID]:
        requests = await rule_engine.evaluate(db, tenant_id, trigger_type, context)
        if not requests:
            return []

        queue = self._queue(db)
        event_ids = []
        for request in requests:
            event = await queue.enqueue_request(request)
            event_ids.append(event.id)
        return event_ids

    def _queue(self, db: AsyncSession) -> EventQueue:
        if self._max_retries is None:
            return EventQueue.from_settings(db)
        return EventQueue(db, max_retries=self._max_retries)


async def wake_dispatcher(event_ids: list[uuid.UUID]) -> None:
    """Notify the dispatch worker to wake immediately (non-blocking, best-effort)."""
    try:
        from lendflow.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.lpush(DISPATCH_NOTIFY_KEY, str(event_ids[-1]))
    except Exception as e:
        logger.debug("Failed to notify dispatch worker: %s", str(e))


def wake_after_commit(db: AsyncSession, event_ids: list[uuid.UUID]) -> None:
    """Schedule wake_dispatcher for when the session's current transaction commits."""
    ids = list(event_ids)
    rolled_back = False

    def _on_rollback(session) -> None:
        nonlocal rolled_back
        rolled_back = True

    def _on_commit(session) -> None:
        if rolled_back:
            return
        task = asyncio.get_running_loop().create_task(wake_dispatcher(ids))
        _pending_wakeups.add(task)
        task.add_done_callback(_pending_wakeups.discard)

    sa_event.listen(db.sync_session, "after_rollback", _on_rollback, once=True)
    sa_event.listen(db.sync_session, "after_commit", _on_commit, once=True)


async def notify_status_change(
    notifier: TriggerNotifier,
    tenant_id,
    entity: str,
    entity_id,
    previous_status: Optional[str],
    new_status: Optional[str],
    db: Optional[AsyncSession] = None,
) -> list[uuid.UUID]:
    """
    Report a domain status field change. Does nothing unless the status
    actually changed to a new non-empty value.
    """
    if not new_status or new_status == previous_status:
        return []

    return await notifier.notify_trigger(
        tenant_id,
        rule_engine.TriggerType.STATUS_CHANGE,
        {
            "entity": entity,
            "entityId": str(entity_id),
            "status": new_status,
            "previousStatus": previous_status,
        },
        db=db,
    )


_default_notifier: Optional[WorkflowTriggerNotifier] = None


def get_trigger_notifier() -> WorkflowTriggerNotifier:
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = WorkflowTriggerNotifier()
    return _default_notifier
