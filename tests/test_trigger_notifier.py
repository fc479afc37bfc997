"""
Tests for lendflow/services/trigger_notifier.py - the domain-facing entry point
that evaluates rules, enqueues events and wakes the dispatch worker.
"""
import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select

from lendflow.models.outbound_event import OutboundEvent, OutboundEventStatus
from lendflow.models.webhook_subscription import WebhookSubscription
from lendflow.models.workflow_rule import WorkflowRule
from lendflow.services.dispatcher import WebhookDispatcher
from lendflow.services.rule_engine import InvalidTriggerError, TriggerType
from lendflow.services.tenancy import InvalidTenantError
from lendflow.services import trigger_notifier
from lendflow.services.trigger_notifier import (
    DISPATCH_NOTIFY_KEY,
    WorkflowTriggerNotifier,
    get_trigger_notifier,
    notify_status_change,
    wake_dispatcher,
)
from lendflow.utils.webhook_signatures import sign_payload


def _make_rule(db, tenant_id, **overrides):
    defaults = {
        "tenant_id": tenant_id,
        "trigger_type": TriggerType.STATUS_CHANGE,
        "trigger_config": {"status": "PROCESSING"},
        "action_config": {"eventType": "loan.status_changed"},
        "is_active": True,
    }
    defaults.update(overrides)
    rule = WorkflowRule(**defaults)
    db.add(rule)
    return rule


async def _events(db) -> list[OutboundEvent]:
    result = await db.execute(select(OutboundEvent))
    return list(result.scalars().all())


async def _drain_wakeups():
    await asyncio.gather(*list(trigger_notifier._pending_wakeups))


class TestNotifyTrigger:
    async def test_matching_rule_enqueues_event(self, db, tenant_id, mock_redis):
        rule = _make_rule(db, tenant_id)
        await db.flush()

        event_ids = await WorkflowTriggerNotifier().notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE,
            {"entity": "loanApplication", "loanId": "L-7", "status": "PROCESSING"},
            db=db,
        )

        assert len(event_ids) == 1
        events = await _events(db)
        assert len(events) == 1
        event = events[0]
        assert event.id == event_ids[0]
        assert event.tenant_id == tenant_id
        assert event.event_type == "loan.status_changed"
        assert event.status == OutboundEventStatus.PENDING
        assert event.retry_count == 0
        assert event.payload["ruleId"] == str(rule.id)
        assert event.payload["trigger"] == "STATUS_CHANGE"
        assert event.payload["context"]["loanId"] == "L-7"

        # Woken only once the caller commits
        mock_redis.lpush.assert_not_awaited()
        await db.commit()
        await _drain_wakeups()
        mock_redis.lpush.assert_awaited_once_with(DISPATCH_NOTIFY_KEY, str(event.id))

    async def test_rolled_back_enqueue_wakes_nobody(self, db, tenant_id, mock_redis):
        _make_rule(db, tenant_id)
        await db.commit()

        event_ids = await WorkflowTriggerNotifier().notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE, {"status": "PROCESSING"}, db=db,
        )
        assert len(event_ids) == 1

        await db.rollback()
        await db.commit()
        await _drain_wakeups()

        assert await _events(db) == []
        mock_redis.lpush.assert_not_awaited()

    async def test_own_session_wakes_after_commit(self, db, tenant_id, session_factory, mock_redis):
        _make_rule(db, tenant_id)
        await db.commit()

        event_ids = await WorkflowTriggerNotifier(session_factory=session_factory).notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE, {"status": "PROCESSING"},
        )

        mock_redis.lpush.assert_awaited_once_with(DISPATCH_NOTIFY_KEY, str(event_ids[0]))

    async def test_non_matching_status_enqueues_nothing(self, db, tenant_id, mock_redis):
        _make_rule(db, tenant_id)
        await db.flush()

        event_ids = await WorkflowTriggerNotifier().notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE, {"status": "CLOSED"}, db=db,
        )

        assert event_ids == []
        assert await _events(db) == []
        mock_redis.lpush.assert_not_awaited()

    async def test_one_event_per_matching_rule(self, db, tenant_id):
        _make_rule(db, tenant_id)
        _make_rule(db, tenant_id, trigger_config={}, action_config={"eventType": "audit.any"})
        await db.flush()

        event_ids = await WorkflowTriggerNotifier().notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE, {"status": "PROCESSING"}, db=db,
        )

        assert len(event_ids) == 2
        assert sorted(e.event_type for e in await _events(db)) == ["audit.any", "loan.status_changed"]

    async def test_unknown_trigger_type(self, db, tenant_id):
        event_ids = await WorkflowTriggerNotifier().notify_trigger(
            tenant_id, "SOMETHING_ELSE", {"status": "PROCESSING"}, db=db,
        )
        assert event_ids == []

    async def test_invalid_tenant(self, db):
        with pytest.raises(InvalidTenantError):
            await WorkflowTriggerNotifier().notify_trigger(
                "", TriggerType.STATUS_CHANGE, {"status": "PROCESSING"}, db=db,
            )

    async def test_invalid_context(self, db, tenant_id):
        with pytest.raises(InvalidTriggerError):
            await WorkflowTriggerNotifier().notify_trigger(
                tenant_id, TriggerType.STATUS_CHANGE, ["PROCESSING"], db=db,
            )

    async def test_opens_own_session_without_db(self, db, tenant_id, session_factory):
        _make_rule(db, tenant_id)
        await db.commit()

        notifier = WorkflowTriggerNotifier(session_factory=session_factory)
        event_ids = await notifier.notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE, {"status": "PROCESSING"},
        )

        assert len(event_ids) == 1
        assert len(await _events(db)) == 1

    async def test_redis_failure_does_not_break_enqueue(self, db, tenant_id):
        _make_rule(db, tenant_id)
        await db.flush()

        with patch(
            "lendflow.utils.redis_client.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("redis down"),
        ):
            event_ids = await WorkflowTriggerNotifier().notify_trigger(
                tenant_id, TriggerType.STATUS_CHANGE, {"status": "PROCESSING"}, db=db,
            )
            await db.commit()
            await _drain_wakeups()

        assert len(event_ids) == 1
        assert len(await _events(db)) == 1

    async def test_custom_retry_threshold(self, db, tenant_id):
        notifier = WorkflowTriggerNotifier(max_retries=5)
        assert notifier._queue(db).max_retries == 5


class TestWakeDispatcher:
    async def test_pushes_last_event_id(self, mock_redis):
        ids = [uuid.uuid4(), uuid.uuid4()]
        await wake_dispatcher(ids)
        mock_redis.lpush.assert_awaited_once_with(DISPATCH_NOTIFY_KEY, str(ids[-1]))

    async def test_swallows_redis_errors(self, mock_redis):
        mock_redis.lpush = AsyncMock(side_effect=ConnectionError("down"))
        await wake_dispatcher([uuid.uuid4()])


class TestNotifyStatusChange:
    async def test_unchanged_status_is_ignored(self, tenant_id):
        notifier = AsyncMock()
        result = await notify_status_change(
            notifier, tenant_id, "loanApplication", "L-1", "PROCESSING", "PROCESSING",
        )
        assert result == []
        notifier.notify_trigger.assert_not_awaited()

    async def test_empty_new_status_is_ignored(self, tenant_id):
        notifier = AsyncMock()
        result = await notify_status_change(notifier, tenant_id, "loanApplication", "L-1", "NEW", None)
        assert result == []
        notifier.notify_trigger.assert_not_awaited()

    async def test_changed_status_reports_trigger(self, tenant_id):
        notifier = AsyncMock()
        notifier.notify_trigger = AsyncMock(return_value=["id-1"])

        result = await notify_status_change(
            notifier, tenant_id, "loanApplication", 42, "SUBMITTED", "PROCESSING",
        )

        assert result == ["id-1"]
        notifier.notify_trigger.assert_awaited_once_with(
            tenant_id,
            TriggerType.STATUS_CHANGE,
            {
                "entity": "loanApplication",
                "entityId": "42",
                "status": "PROCESSING",
                "previousStatus": "SUBMITTED",
            },
            db=None,
        )


class TestEndToEnd:
    async def test_status_change_to_signed_webhook(self, db, tenant_id, session_factory):
        """Status change -> rule match -> queued event -> signed POST -> delivered."""
        _make_rule(db, tenant_id)
        db.add(WebhookSubscription(
            tenant_id=tenant_id,
            event_type="loan.status_changed",
            target_url="https://lender-crm.example.com/hooks",
            secret="e2e-secret",
            is_active=True,
        ))
        await db.flush()

        event_ids = await notify_status_change(
            WorkflowTriggerNotifier(), tenant_id, "loanApplication", "L-99",
            "SUBMITTED", "PROCESSING", db=db,
        )
        await db.commit()
        assert len(event_ids) == 1

        received = []

        def endpoint(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        dispatcher = WebhookDispatcher(
            session_factory=session_factory,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
            use_lock=False,
        )
        summary = await dispatcher.dispatch_pending()

        assert summary.delivered == 1
        assert len(received) == 1
        assert received[0].headers["x-signature"] == sign_payload("e2e-secret", received[0].content)

        event = (await _events(db))[0]
        await db.refresh(event)
        assert event.status == OutboundEventStatus.DELIVERED

    async def test_non_matching_status_sends_nothing(self, db, tenant_id, session_factory):
        _make_rule(db, tenant_id)
        await db.flush()

        event_ids = await notify_status_change(
            WorkflowTriggerNotifier(), tenant_id, "loanApplication", "L-99",
            "PROCESSING", "CLOSED", db=db,
        )
        await db.commit()

        received = []
        dispatcher = WebhookDispatcher(
            session_factory=session_factory,
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: received.append(r) or httpx.Response(200))
            ),
            use_lock=False,
        )
        summary = await dispatcher.dispatch_pending()

        assert event_ids == []
        assert summary.events == 0
        assert received == []


class TestSingleton:
    def test_get_trigger_notifier_is_cached(self):
        assert get_trigger_notifier() is get_trigger_notifier()


class TestDefaultEventTypeScenario:
    """Rule with expectedStatus and no action template, subscriber on workflow.triggered."""

    async def _setup(self, db, tenant_id):
        _make_rule(db, tenant_id, trigger_config={"expectedStatus": "PROCESSING"}, action_config={})
        db.add(WebhookSubscription(
            tenant_id=tenant_id,
            event_type="workflow.triggered",
            target_url="https://hooks.example.com/workflow",
            secret="scenario-secret",
            is_active=True,
        ))
        await db.flush()

        event_ids = await WorkflowTriggerNotifier().notify_trigger(
            tenant_id, TriggerType.STATUS_CHANGE, {"status": "PROCESSING"}, db=db,
        )
        await db.commit()
        return event_ids

    def _dispatcher(self, session_factory, status_code):
        return WebhookDispatcher(
            session_factory=session_factory,
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(status_code))
            ),
            use_lock=False,
        )

    async def test_delivered_after_one_pass(self, db, tenant_id, session_factory):
        event_ids = await self._setup(db, tenant_id)
        assert len(event_ids) == 1

        await self._dispatcher(session_factory, 200).dispatch_pending()

        event = (await _events(db))[0]
        await db.refresh(event)
        assert event.event_type == "workflow.triggered"
        assert event.status == OutboundEventStatus.DELIVERED

    async def test_failed_after_three_passes(self, db, tenant_id, session_factory):
        await self._setup(db, tenant_id)
        dispatcher = self._dispatcher(session_factory, 500)

        for _ in range(3):
            await dispatcher.dispatch_pending()

        event = (await _events(db))[0]
        await db.refresh(event)
        assert event.status == OutboundEventStatus.FAILED
        assert event.retry_count == 3
        assert event.last_error == "Status 500"
