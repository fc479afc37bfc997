"""
Tests for lendflow/services/subscriptions.py - active subscriber lookup and
subscription administration.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from lendflow.models.webhook_subscription import WebhookSubscription
from lendflow.services.subscriptions import (
    SubscriptionNotFoundError,
    create_subscription,
    deactivate_subscription,
    find_active,
    get_subscription,
    list_subscriptions,
)
from lendflow.services.tenancy import InvalidTenantError


def _make_subscription(db, tenant_id, **overrides):
    defaults = {
        "tenant_id": tenant_id,
        "event_type": "loan.status_changed",
        "target_url": "https://hooks.example.com/loans",
        "secret": "s3cret-value",
        "is_active": True,
    }
    defaults.update(overrides)
    sub = WebhookSubscription(**defaults)
    db.add(sub)
    return sub


class TestFindActive:
    async def test_returns_active_for_tenant_and_type(self, db, tenant_id, other_tenant_id):
        now = datetime.now(timezone.utc)
        first = _make_subscription(db, tenant_id, created_at=now - timedelta(minutes=1))
        second = _make_subscription(
            db, tenant_id, created_at=now, target_url="https://crm.example.com/hook",
        )
        _make_subscription(db, tenant_id, is_active=False)
        _make_subscription(db, tenant_id, event_type="loan.created")
        _make_subscription(db, other_tenant_id)
        await db.flush()

        subs = await find_active(db, tenant_id, "loan.status_changed")

        assert [s.id for s in subs] == [first.id, second.id]

    async def test_no_subscribers(self, db, tenant_id):
        assert await find_active(db, tenant_id, "loan.status_changed") == []

    async def test_invalid_tenant(self, db):
        with pytest.raises(InvalidTenantError):
            await find_active(db, "nope", "loan.status_changed")


class TestSubscriptionAdmin:
    async def test_create_subscription(self, db, tenant_id):
        sub = await create_subscription(
            db, tenant_id, "loan.status_changed", "https://hooks.example.com/x", "secret-123",
        )
        assert sub.id is not None
        assert sub.is_active is True
        assert sub.deactivated_at is None

    async def test_list_scoped_to_tenant(self, db, tenant_id, other_tenant_id):
        await create_subscription(db, tenant_id, "a", "https://a.example.com", "secret-123")
        await create_subscription(db, other_tenant_id, "a", "https://b.example.com", "secret-123")

        subs = await list_subscriptions(db, tenant_id)
        assert [s.target_url for s in subs] == ["https://a.example.com"]

    async def test_get_other_tenant_not_found(self, db, tenant_id, other_tenant_id):
        sub = await create_subscription(db, tenant_id, "a", "https://a.example.com", "secret-123")
        with pytest.raises(SubscriptionNotFoundError):
            await get_subscription(db, other_tenant_id, sub.id)

    async def test_get_malformed_id(self, db, tenant_id):
        with pytest.raises(SubscriptionNotFoundError):
            await get_subscription(db, tenant_id, "xyz")

    async def test_deactivate(self, db, tenant_id):
        sub = await create_subscription(db, tenant_id, "a", "https://a.example.com", "secret-123")

        result = await deactivate_subscription(db, tenant_id, str(sub.id))

        assert result.is_active is False
        assert result.deactivated_at is not None
        assert await find_active(db, tenant_id, "a") == []

    async def test_deactivate_twice_keeps_first_timestamp(self, db, tenant_id):
        sub = await create_subscription(db, tenant_id, "a", "https://a.example.com", "secret-123")
        await deactivate_subscription(db, tenant_id, sub.id)
        first_ts = sub.deactivated_at

        await deactivate_subscription(db, tenant_id, sub.id)
        assert sub.deactivated_at == first_ts

    async def test_deactivate_missing(self, db, tenant_id):
        with pytest.raises(SubscriptionNotFoundError):
            await deactivate_subscription(db, tenant_id, uuid.uuid4())
