"""
Outbound webhook dispatcher - drains pending events and delivers them.

One dispatch pass:
1. Load up to batch_size pending events, oldest first.
2. Resolve the active subscriptions for each event's (tenant, event_type).
3. No subscribers: the event is marked delivered, nobody is listening.
4. Otherwise claim the event (a per-event lease, committed before any POST)
   and skip it if another pass already holds the claim.
5. POST the signed body to every subscriber in turn. Each attempt
   reports its own outcome to the queue (success -> mark_delivered,
   non-2xx or transport error -> mark_failed), so the event status reflects
   the attempts in order. Terminal states are never left again.

Delivery errors are recorded (queue + DeliveryAttempt row), never raised, so
one bad subscriber cannot abort the rest of the pass. Passes are single-flight
across processes via a Redis lock. The per-event claim keeps an overlapping pass
(Redis down, or a lock that expired under a slow pass) from re-sending an event
that is still in flight, and the queue's compare-and-swap updates keep its
status consistent.
"""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.database import async_session_factory
from lendflow.models.delivery_attempt import DeliveryAttempt
from lendflow.models.outbound_event import OutboundEvent, OutboundEventStatus
from lendflow.models.webhook_subscription import WebhookSubscription
from lendflow.services.event_queue import EventQueue
from lendflow.services.subscriptions import find_active
from lendflow.services.tenancy import require_tenant_id
from lendflow.utils.locks import LockTimeoutError, single_flight
from lendflow.utils.logging import correlation_scope, event_log_extra
from lendflow.utils.webhook_signatures import SIGNATURE_HEADER, serialize_body, sign_payload

logger = logging.getLogger(__name__)

DISPATCH_LOCK_NAME = "outbound_dispatch"


@dataclass
class DispatchSummary:
    events: int = 0
    delivered: int = 0
    no_subscribers: int = 0
    retrying: int = 0
    failed: int = 0
    attempts: int = 0
    failed_attempts: int = 0
    in_flight: int = 0
    skipped: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0


class WebhookDispatcher:
    """
    Dispatch pass runner. Every collaborator is injectable; anything left as
    None falls back to application settings.

    http_client, when given, is used as-is and not closed; otherwise a client
    with the configured timeout is opened per pass. tenant_id restricts the
    pass to one tenant's pending events (on-demand admin dispatch).
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        lock_ttl: Optional[int] = None,
        use_lock: bool = True,
        tenant_id=None,
    ):
        from lendflow.config import get_settings
        settings = get_settings()

        self._session_factory = session_factory or async_session_factory
        self._http_client = http_client
        self.batch_size = batch_size or settings.outbound_dispatch_batch_size
        self.max_retries = max_retries or settings.outbound_event_max_retries
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.lock_ttl = lock_ttl or settings.dispatch_lock_ttl_seconds
        self.user_agent = settings.webhook_user_agent
        self.use_lock = use_lock
        self.tenant_id = require_tenant_id(tenant_id) if tenant_id is not None else None

    async def dispatch_pending(self) -> DispatchSummary:
        """Run one dispatch pass. Returns skipped=True if another pass holds the lock."""
        with correlation_scope():
            if not self.use_lock:
                return await self._run_pass()
            try:
                async with single_flight(DISPATCH_LOCK_NAME, ttl=self.lock_ttl):
                    return await self._run_pass()
            except LockTimeoutError:
                logger.info("Dispatch pass skipped - another pass is in progress")
                return DispatchSummary(skipped=True)

    async def _run_pass(self) -> DispatchSummary:
        summary = DispatchSummary()

        async with self._session_factory() as db:
            queue = EventQueue(db, max_retries=self.max_retries)
            if self.tenant_id is not None:
                events = await queue.list_pending_for_tenant(self.tenant_id, self.batch_size)
            else:
                events = await queue.list_pending(self.batch_size)
            if not events:
                return summary

            logger.info("Dispatching %d pending outbound events", len(events))

            async with self._client() as client:
                for event in events:
                    await self._dispatch_event(db, queue, client, event, summary)
                    await db.commit()

        logger.info(
            "Dispatch pass complete: events=%d delivered=%d retrying=%d failed=%d attempts=%d in_flight=%d",
            summary.events, summary.delivered, summary.retrying,
            summary.failed, summary.attempts, summary.in_flight,
        )
        return summary

    async def _dispatch_event(
        self,
        db: AsyncSession,
        queue: EventQueue,
        client: httpx.AsyncClient,
        event: OutboundEvent,
        summary: DispatchSummary,
    ) -> None:
        summary.events += 1
        subscriptions = await find_active(db, event.tenant_id, event.event_type)

        if not subscriptions:
            await queue.mark_delivered(event.id)
            summary.no_subscribers += 1
            summary.delivered += 1
            logger.info(
                "No active subscribers for %s - marked delivered: id=%s",
                event.event_type, str(event.id)[:8],
                extra=event_log_extra(event),
            )
            return

        body = serialize_body(event.event_type, event.payload)

        lease = self.lock_ttl + self.timeout * len(subscriptions)
        if not await queue.claim(event.id, lease_seconds=lease):
            summary.in_flight += 1
            return
        # The claim must be visible to other passes before the first POST
        await db.commit()

        for subscription in subscriptions:
            result = await self.deliver(client, subscription, body)
            _record_attempt(db, event, subscription, result)
            summary.attempts += 1

            if result.success:
                await queue.mark_delivered(event.id)
            else:
                summary.failed_attempts += 1
                logger.warning(
                    "Webhook delivery failed: event=%s subscription=%s error=%s",
                    str(event.id)[:8], str(subscription.id)[:8], result.error,
                    extra=event_log_extra(event, subscription),
                )
                await queue.mark_failed(event.id, result.error or "delivery failed")

        await queue.release(event.id)

        if event.status == OutboundEventStatus.DELIVERED:
            summary.delivered += 1
        elif event.status == OutboundEventStatus.FAILED:
            summary.failed += 1
        else:
            summary.retrying += 1

    async def deliver(
        self,
        client: httpx.AsyncClient,
        subscription: WebhookSubscription,
        body: bytes,
    ) -> DeliveryResult:
        """POST one signed body to one subscriber. Never raises."""
        headers = {
            "content-type": "application/json",
            SIGNATURE_HEADER: sign_payload(subscription.secret, body),
            "user-agent": self.user_agent,
        }

        start = time.monotonic()
        try:
            response = await client.post(
                subscription.target_url,
                content=body,
                headers=headers,
                timeout=self.timeout,
            )
        except Exception as e:
            # Transport errors, timeouts and bad URLs all count as a failed attempt
            return DeliveryResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                duration_ms=_elapsed_ms(start),
            )

        duration_ms = _elapsed_ms(start)
        if response.is_success:
            return DeliveryResult(True, response.status_code, None, duration_ms)
        return DeliveryResult(
            False, response.status_code, f"Status {response.status_code}", duration_ms,
        )

    @asynccontextmanager
    async def _client(self):
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client


async def dispatch_pending(**kwargs) -> DispatchSummary:
    """Run one dispatch pass with a default-configured dispatcher."""
    return await WebhookDispatcher(**kwargs).dispatch_pending()


def _record_attempt(
    db: AsyncSession,
    event: OutboundEvent,
    subscription: WebhookSubscription,
    result: DeliveryResult,
) -> None:
    db.add(
        DeliveryAttempt(
            event_id=event.id,
            subscription_id=subscription.id,
            tenant_id=event.tenant_id,
            success=result.success,
            status_code=result.status_code,
            error_message=result.error,
            duration_ms=result.duration_ms,
        )
    )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
