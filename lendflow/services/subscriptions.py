"""
Subscription registry - tenant webhook endpoints keyed by event type.
Pure data access: the dispatcher reads active targets, administrators create
and deactivate them.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.models.webhook_subscription import WebhookSubscription
from lendflow.services.tenancy import require_tenant_id

logger = logging.getLogger(__name__)


class SubscriptionNotFoundError(LookupError):
    pass


async def find_active(
    db: AsyncSession,
    tenant_id,
    event_type: str,
) -> list[WebhookSubscription]:
    """Active subscriptions for (tenant, event_type). No side effects."""
    tenant = require_tenant_id(tenant_id)
    result = await db.execute(
        select(WebhookSubscription)
        .where(
            WebhookSubscription.tenant_id == tenant,
            WebhookSubscription.event_type == event_type,
            WebhookSubscription.is_active.is_(True),
        )
        .order_by(WebhookSubscription.created_at)
    )
    return list(result.scalars().all())


async def create_subscription(
    db: AsyncSession,
    tenant_id,
    event_type: str,
    target_url: str,
    secret: str,
    is_active: bool = True,
) -> WebhookSubscription:
    tenant = require_tenant_id(tenant_id)
    subscription = WebhookSubscription(
        tenant_id=tenant,
        event_type=event_type,
        target_url=target_url,
        secret=secret,
        is_active=is_active,
    )
    db.add(subscription)
    await db.flush()

    logger.info(
        "Webhook subscription created: tenant=%s event_type=%s id=%s",
        str(tenant)[:8], event_type, str(subscription.id)[:8],
    )
    return subscription


async def list_subscriptions(db: AsyncSession, tenant_id) -> list[WebhookSubscription]:
    tenant = require_tenant_id(tenant_id)
    result = await db.execute(
        select(WebhookSubscription)
        .where(WebhookSubscription.tenant_id == tenant)
        .order_by(WebhookSubscription.created_at)
    )
    return list(result.scalars().all())


async def get_subscription(
    db: AsyncSession,
    tenant_id,
    subscription_id,
) -> WebhookSubscription:
    """Fetch a subscription owned by the tenant, or raise SubscriptionNotFoundError."""
    tenant = require_tenant_id(tenant_id)
    sub_uuid = _parse_uuid(subscription_id)
    if sub_uuid is None:
        raise SubscriptionNotFoundError("Webhook subscription not found")

    result = await db.execute(
        select(WebhookSubscription).where(
            WebhookSubscription.id == sub_uuid,
            WebhookSubscription.tenant_id == tenant,
        )
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError("Webhook subscription not found")
    return subscription


async def deactivate_subscription(
    db: AsyncSession,
    tenant_id,
    subscription_id,
) -> WebhookSubscription:
    subscription = await get_subscription(db, tenant_id, subscription_id)
    if subscription.is_active:
        subscription.is_active = False
        subscription.deactivated_at = datetime.now(timezone.utc)
        await db.flush()
        logger.info("Webhook subscription deactivated: id=%s", str(subscription.id)[:8])
    return subscription


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
