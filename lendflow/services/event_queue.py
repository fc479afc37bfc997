"""
Outbound event queue - durable bookkeeping for pending/delivered/failed events.

State machine:
    pending --(delivered / no subscribers)--> delivered
    pending --(failure, retries < max)------> pending   (retried next pass)
    pending --(failure, retries >= max)-----> failed
Delivered and failed are terminal; nothing here ever moves an event out of them.

Every transition is a compare-and-swap UPDATE guarded on the observed status
and retry count, so overlapping dispatch passes cannot revive a terminal event
or lose a retry increment. The queue performs no network I/O.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from lendflow.models.outbound_event import OutboundEvent, OutboundEventStatus
from lendflow.services.rule_engine import EnqueueRequest, to_document
from lendflow.services.tenancy import require_tenant_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BATCH_SIZE = 20
CAS_ATTEMPTS = 3
MAX_ERROR_LENGTH = 2000
DEFAULT_CLAIM_LEASE_SECONDS = 300


class OutboundEventNotFoundError(LookupError):
    pass


class EventQueue:
    """
    Queue operations bound to one database session.

    max_retries is the retry threshold: the failure that brings retry_count
    up to it moves the event to failed.
    """

    def __init__(self, db: AsyncSession, max_retries: int = DEFAULT_MAX_RETRIES):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.db = db
        self.max_retries = max_retries

    @classmethod
    def from_settings(cls, db: AsyncSession) -> "EventQueue":
        from lendflow.config import get_settings
        return cls(db, max_retries=get_settings().outbound_event_max_retries)

    async def enqueue(
        self,
        tenant_id,
        event_type: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> OutboundEvent:
        """Create a pending event with retry_count 0."""
        tenant = require_tenant_id(tenant_id)
        if not event_type:
            raise ValueError("event_type is required")

        event = OutboundEvent(
            tenant_id=tenant,
            event_type=event_type,
            payload=to_document(payload, "payload"),
            status=OutboundEventStatus.PENDING,
            retry_count=0,
        )
        self.db.add(event)
        await self.db.flush()

        logger.info(
            "Outbound event enqueued: tenant=%s type=%s id=%s",
            str(tenant)[:8], event_type, str(event.id)[:8],
        )
        return event

    async def enqueue_request(self, request: EnqueueRequest) -> OutboundEvent:
        return await self.enqueue(request.tenant_id, request.event_type, request.payload)

    async def list_pending(self, limit: int = DEFAULT_BATCH_SIZE) -> list[OutboundEvent]:
        """Pending events across all tenants, oldest first, at most `limit`."""
        result = await self.db.execute(
            select(OutboundEvent)
            .where(OutboundEvent.status == OutboundEventStatus.PENDING)
            .order_by(OutboundEvent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, event_id, lease_seconds: float = DEFAULT_CLAIM_LEASE_SECONDS) -> bool:
        """
        Take the delivery lease on a pending event before POSTing it.

        Fails (returns False) while another pass holds an unexpired lease, so
        an overlapping pass never re-sends an in-flight event even after the
        dispatch lock has expired. An abandoned lease lapses after lease_seconds.
        """
        event_uuid = _coerce_event_id(event_id)
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=lease_seconds)

        result = await self.db.execute(
            update(OutboundEvent)
            .where(
                OutboundEvent.id == event_uuid,
                OutboundEvent.status == OutboundEventStatus.PENDING,
                or_(
                    OutboundEvent.claimed_at.is_(None),
                    OutboundEvent.claimed_at < stale_before,
                ),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return True

        logger.info("Outbound event %s is claimed by another pass - skipping", str(event_uuid)[:8])
        return False

    async def release(self, event_id) -> None:
        """Drop the delivery lease once every attempt outcome has been recorded."""
        event_uuid = _coerce_event_id(event_id)
        await self.db.execute(
            update(OutboundEvent)
            .where(OutboundEvent.id == event_uuid)
            .values(claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    async def mark_delivered(self, event_id) -> bool:
        """
        Move a pending event to delivered.
        Returns False (no-op) when the event is already terminal.
        """
        event_uuid = _coerce_event_id(event_id)
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            update(OutboundEvent)
            .where(
                OutboundEvent.id == event_uuid,
                OutboundEvent.status == OutboundEventStatus.PENDING,
            )
            .values(status=OutboundEventStatus.DELIVERED, delivered_at=now)
        )
        if result.rowcount:
            logger.info("Outbound event delivered: id=%s", str(event_uuid)[:8])
            return True

        event = await self._load(event_uuid)
        if event.status == OutboundEventStatus.FAILED:
            logger.warning(
                "Ignoring delivery for failed event: id=%s", str(event_uuid)[:8],
            )
        return False

    async def mark_failed(self, event_id, error_message: str) -> bool:
        """
        Record a failed delivery attempt.

        Increments retry_count and stores error_message as last_error. The
        event becomes failed once retry_count reaches max_retries, otherwise it
        stays pending for the next pass. Returns False when the event was
        already terminal.
        """
        event_uuid = _coerce_event_id(event_id)
        error = (error_message or "unknown error")[:MAX_ERROR_LENGTH]

        for _ in range(CAS_ATTEMPTS):
            event = await self._load(event_uuid)
            if event.status != OutboundEventStatus.PENDING:
                logger.warning(
                    "Ignoring failure for %s event: id=%s error=%s",
                    event.status, str(event_uuid)[:8], error[:100],
                )
                return False

            observed_count = event.retry_count
            new_count = observed_count + 1
            now = datetime.now(timezone.utc)
            values: dict[str, Any] = {
                "retry_count": new_count,
                "last_error": error,
                "last_attempt_at": now,
                "status": OutboundEventStatus.PENDING,
            }
            if new_count >= self.max_retries:
                values["status"] = OutboundEventStatus.FAILED
                values["failed_at"] = now

            result = await self.db.execute(
                update(OutboundEvent)
                .where(
                    OutboundEvent.id == event_uuid,
                    OutboundEvent.status == OutboundEventStatus.PENDING,
                    OutboundEvent.retry_count == observed_count,
                )
                .values(**values)
            )
            if result.rowcount:
                if values["status"] == OutboundEventStatus.FAILED:
                    logger.error(
                        "Outbound event failed (max retries): id=%s retries=%d error=%s",
                        str(event_uuid)[:8], new_count, error[:200],
                    )
                else:
                    logger.warning(
                        "Outbound event retry %d/%d: id=%s error=%s",
                        new_count, self.max_retries, str(event_uuid)[:8], error[:200],
                    )
                return True

            logger.info(
                "Concurrent update on event %s - re-reading before retry increment",
                str(event_uuid)[:8],
            )

        logger.error(
            "Could not record failure for event %s after %d attempts",
            str(event_uuid)[:8], CAS_ATTEMPTS,
        )
        return False

    async def get_event(self, event_id, tenant_id=None) -> OutboundEvent:
        """Fetch one event with its delivery attempts, optionally tenant-scoped."""
        event_uuid = _coerce_event_id(event_id)
        stmt = (
            select(OutboundEvent)
            .where(OutboundEvent.id == event_uuid)
            .options(selectinload(OutboundEvent.attempts))
            .execution_options(populate_existing=True)
        )
        if tenant_id is not None:
            stmt = stmt.where(OutboundEvent.tenant_id == require_tenant_id(tenant_id))

        result = await self.db.execute(stmt)
        event = result.scalar_one_or_none()
        if event is None:
            raise OutboundEventNotFoundError("Outbound event not found")
        return event

    async def list_events(
        self,
        tenant_id,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[OutboundEvent]:
        """Tenant events, newest first. Used to inspect failed deliveries."""
        tenant = require_tenant_id(tenant_id)
        stmt = select(OutboundEvent).where(OutboundEvent.tenant_id == tenant)
        if status is not None:
            if status not in OutboundEventStatus.ALL:
                raise ValueError(f"Unknown event status: {status}")
            stmt = stmt.where(OutboundEvent.status == status)

        result = await self.db.execute(
            stmt.order_by(OutboundEvent.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def list_pending_for_tenant(self, tenant_id, limit: int = DEFAULT_BATCH_SIZE) -> list[OutboundEvent]:
        tenant = require_tenant_id(tenant_id)
        result = await self.db.execute(
            select(OutboundEvent)
            .where(
                OutboundEvent.tenant_id == tenant,
                OutboundEvent.status == OutboundEventStatus.PENDING,
            )
            .order_by(OutboundEvent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _load(self, event_uuid: uuid.UUID) -> OutboundEvent:
        event = await self.db.get(OutboundEvent, event_uuid, populate_existing=True)
        if event is None:
            raise OutboundEventNotFoundError(f"Outbound event {event_uuid} not found")
        return event


def _coerce_event_id(event_id) -> uuid.UUID:
    if isinstance(event_id, uuid.UUID):
        return event_id
    try:
        return uuid.UUID(str(event_id))
    except (TypeError, ValueError):
        raise OutboundEventNotFoundError(f"Outbound event {event_id!r} not found")
