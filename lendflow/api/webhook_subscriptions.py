"""
Webhook subscription admin endpoints.
DELETE deactivates (soft flag) so delivery history keeps its target.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.api.tenant_auth import get_tenant_id, require_admin_key
from lendflow.database import get_db
from lendflow.models.webhook_subscription import WebhookSubscription
from lendflow.schemas.workflow import (
    WebhookSubscriptionCreate,
    WebhookSubscriptionResponse,
)
from lendflow.services import subscriptions

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/webhooks/subscriptions",
    tags=["webhooks"],
    dependencies=[Depends(require_admin_key)],
)


def _serialize_subscription(sub: WebhookSubscription) -> WebhookSubscriptionResponse:
    return WebhookSubscriptionResponse(
        id=str(sub.id),
        event_type=sub.event_type,
        target_url=sub.target_url,
        is_active=sub.is_active,
        created_at=sub.created_at,
        deactivated_at=sub.deactivated_at,
    )


@router.post("", response_model=WebhookSubscriptionResponse, status_code=201)
async def create_webhook_subscription(
    payload: WebhookSubscriptionCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    sub = await subscriptions.create_subscription(
        db,
        tenant_id,
        event_type=payload.event_type,
        target_url=payload.target_url,
        secret=payload.secret,
        is_active=payload.is_active,
    )
    return _serialize_subscription(sub)


@router.get("", response_model=list[WebhookSubscriptionResponse])
async def list_webhook_subscriptions(
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    subs = await subscriptions.list_subscriptions(db, tenant_id)
    return [_serialize_subscription(sub) for sub in subs]


@router.delete("/{subscription_id}", response_model=WebhookSubscriptionResponse)
async def deactivate_webhook_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    try:
        sub = await subscriptions.deactivate_subscription(db, tenant_id, subscription_id)
    except subscriptions.SubscriptionNotFoundError:
        raise HTTPException(status_code=404, detail="Webhook subscription not found")
    return _serialize_subscription(sub)
