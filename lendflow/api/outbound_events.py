"""
Outbound event endpoints - inspect queued/delivered/failed events and run a
dispatch pass on demand.
"""
import logging
import uuid
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.api.tenant_auth import get_tenant_id, require_admin_key
from lendflow.database import get_db
from lendflow.models.outbound_event import OutboundEvent
from lendflow.schemas.workflow import (
    DeliveryAttemptResponse,
    DispatchSummaryResponse,
    OutboundEventDetailResponse,
    OutboundEventResponse,
)
from lendflow.services.dispatcher import WebhookDispatcher
from lendflow.services.event_queue import EventQueue, OutboundEventNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/outbound-events",
    tags=["outbound-events"],
    dependencies=[Depends(require_admin_key)],
)


def _event_fields(event: OutboundEvent) -> dict:
    return {
        "id": str(event.id),
        "event_type": event.event_type,
        "payload": event.payload or {},
        "status": event.status,
        "retry_count": event.retry_count,
        "last_error": event.last_error,
        "created_at": event.created_at,
        "last_attempt_at": event.last_attempt_at,
        "delivered_at": event.delivered_at,
        "failed_at": event.failed_at,
    }


@router.get("/pending", response_model=list[OutboundEventResponse])
async def list_pending_events(
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    events = await EventQueue(db).list_pending_for_tenant(tenant_id, limit=limit)
    return [OutboundEventResponse(**_event_fields(e)) for e in events]


@router.get("", response_model=list[OutboundEventResponse])
async def list_events(
    status: Optional[Literal["pending", "delivered", "failed"]] = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    events = await EventQueue(db).list_events(tenant_id, status=status, limit=limit)
    return [OutboundEventResponse(**_event_fields(e)) for e in events]


@router.get("/{event_id}", response_model=OutboundEventDetailResponse)
async def get_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    try:
        event = await EventQueue(db).get_event(event_id, tenant_id=tenant_id)
    except OutboundEventNotFoundError:
        raise HTTPException(status_code=404, detail="Outbound event not found")

    attempts = [
        DeliveryAttemptResponse(
            id=str(a.id),
            subscription_id=str(a.subscription_id),
            success=a.success,
            status_code=a.status_code,
            error_message=a.error_message,
            duration_ms=a.duration_ms,
            attempted_at=a.attempted_at,
        )
        for a in event.attempts
    ]
    return OutboundEventDetailResponse(**_event_fields(event), attempts=attempts)


@router.post("/dispatch", response_model=DispatchSummaryResponse)
async def trigger_dispatch(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    """
    Run one dispatch pass now over the caller's own pending events.

    The pass runs inline, so the response waits for the POSTs (bounded by
    batch_size and the webhook timeout) and reports what happened. It shares
    the single-flight lock with the background worker and returns skipped=true
    while a pass is in progress.
    """
    logger.info("On-demand dispatch requested by tenant %s", str(tenant_id)[:8])
    summary = await WebhookDispatcher(tenant_id=tenant_id).dispatch_pending()
    return DispatchSummaryResponse(**summary.as_dict())
