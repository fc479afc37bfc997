"""
Workflow rule engine - turns domain trigger notifications into enqueue requests.

A tenant's active rules for the reported trigger type are loaded and each one
is checked by the matcher registered for that trigger type. Every match yields
one EnqueueRequest whose payload carries the rule id, the trigger, the original
context and the rule's action template:

    {"ruleId": "...", "trigger": "STATUS_CHANGE", "context": {...}, "action": {...}}

Unknown trigger types match nothing. Conditions and action templates are opaque
JSON documents; only the matcher for a trigger type knows how to read its condition.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.models.workflow_rule import WorkflowRule
from lendflow.services.tenancy import require_tenant_id

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "workflow.triggered"
MAX_EVENT_TYPE_LENGTH = 100  # outbound_events.event_type is String(100)


class TriggerType:
    """Trigger type constants (wire values, sent to subscribers as-is)."""
    STATUS_CHANGE = "STATUS_CHANGE"
    ENTITY_CREATED = "ENTITY_CREATED"


class InvalidTriggerError(ValueError):
    """Malformed trigger context, rule condition or action template."""
    pass


class RuleNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class EnqueueRequest:
    tenant_id: uuid.UUID
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


Matcher = Callable[[Mapping[str, Any], Mapping[str, Any]], bool]


def _match_status_change(condition: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    # No expected status means the rule fires on every status change
    expected = condition.get("status") or condition.get("expectedStatus")
    if not expected:
        return True
    return context.get("status") == expected


def _match_entity_created(condition: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    expected = condition.get("entity")
    if not expected:
        return True
    return context.get("entity") == expected


_MATCHERS: dict[str, Matcher] = {
    TriggerType.STATUS_CHANGE: _match_status_change,
    TriggerType.ENTITY_CREATED: _match_entity_created,
}


def register_matcher(trigger_type: str, matcher: Matcher) -> None:
    """Register (or replace) the match policy for a trigger type."""
    _MATCHERS[trigger_type] = matcher


def get_matcher(trigger_type: str) -> Optional[Matcher]:
    return _MATCHERS.get(trigger_type)


def known_trigger_types() -> list[str]:
    return sorted(_MATCHERS)


def to_document(value: Any, name: str = "context") -> dict[str, Any]:
    """
    Normalize a caller-supplied mapping into a JSON-safe document.
    UUIDs, datetimes and decimals are stringified so the result can be stored
    in a JSONB column and signed byte-for-byte later. NaN and infinities are
    rejected: they are not valid JSON and JSONB refuses them.
    """
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidTriggerError(f"{name} must be an object, got {type(value).__name__}")
    try:
        return json.loads(json.dumps(dict(value), default=str, allow_nan=False))
    except (TypeError, ValueError) as e:
        raise InvalidTriggerError(f"{name} is not JSON serializable: {e}") from e


def rule_matches(rule: WorkflowRule, trigger_type: str, context: Mapping[str, Any]) -> bool:
    matcher = get_matcher(trigger_type)
    if matcher is None:
        return False
    condition = rule.trigger_config if isinstance(rule.trigger_config, dict) else {}
    return matcher(condition, context)


def build_enqueue_request(
    rule: WorkflowRule,
    trigger_type: str,
    context: dict[str, Any],
) -> EnqueueRequest:
    action = rule.action_config if isinstance(rule.action_config, dict) else {}
    event_type = action.get("eventType") or DEFAULT_EVENT_TYPE
    return EnqueueRequest(
        tenant_id=rule.tenant_id,
        event_type=event_type,
        payload={
            "ruleId": str(rule.id),
            "trigger": trigger_type,
            "context": context,
            "action": action,
        },
    )


async def evaluate(
    db: AsyncSession,
    tenant_id,
    trigger_type: str,
    context: Optional[Mapping[str, Any]],
) -> list[EnqueueRequest]:
    """
    Evaluate a trigger against the tenant's active rules.

    Raises InvalidTenantError / InvalidTriggerError for caller contract
    violations. Returns an empty list when nothing matches, including for
    trigger types with no registered matcher.
    """
    tenant = require_tenant_id(tenant_id)
    document = to_document(context)

    if get_matcher(trigger_type) is None:
        logger.debug("No matcher for trigger type %s - nothing to evaluate", trigger_type)
        return []

    result = await db.execute(
        select(WorkflowRule)
        .where(
            WorkflowRule.tenant_id == tenant,
            WorkflowRule.trigger_type == trigger_type,
            WorkflowRule.is_active.is_(True),
        )
        .order_by(WorkflowRule.created_at)
    )
    rules = result.scalars().all()

    requests = [
        build_enqueue_request(rule, trigger_type, document)
        for rule in rules
        if rule_matches(rule, trigger_type, document)
    ]

    logger.info(
        "Rules evaluated: tenant=%s trigger=%s rules=%d matched=%d",
        str(tenant)[:8], trigger_type, len(rules), len(requests),
    )
    return requests


# === RULE ADMINISTRATION ===

async def create_rule(
    db: AsyncSession,
    tenant_id,
    trigger_type: str,
    trigger_config: Optional[Mapping[str, Any]] = None,
    action_config: Optional[Mapping[str, Any]] = None,
    is_active: bool = True,
) -> WorkflowRule:
    tenant = require_tenant_id(tenant_id)
    _require_known_trigger(trigger_type)

    rule = WorkflowRule(
        tenant_id=tenant,
        trigger_type=trigger_type,
        trigger_config=to_document(trigger_config, "trigger_config"),
        action_config=_action_document(action_config),
        is_active=is_active,
    )
    db.add(rule)
    await db.flush()

    logger.info(
        "Workflow rule created: tenant=%s trigger=%s id=%s",
        str(tenant)[:8], trigger_type, str(rule.id)[:8],
    )
    return rule


async def list_rules(db: AsyncSession, tenant_id) -> list[WorkflowRule]:
    tenant = require_tenant_id(tenant_id)
    result = await db.execute(
        select(WorkflowRule)
        .where(WorkflowRule.tenant_id == tenant)
        .order_by(WorkflowRule.created_at)
    )
    return list(result.scalars().all())


async def get_rule(db: AsyncSession, tenant_id, rule_id) -> WorkflowRule:
    tenant = require_tenant_id(tenant_id)
    try:
        rule_uuid = rule_id if isinstance(rule_id, uuid.UUID) else uuid.UUID(str(rule_id))
    except (TypeError, ValueError):
        raise RuleNotFoundError("Workflow rule not found")

    result = await db.execute(
        select(WorkflowRule).where(
            WorkflowRule.id == rule_uuid,
            WorkflowRule.tenant_id == tenant,
        )
    )
    rule = result.scalar_one_or_none()
    if rule is None:
        raise RuleNotFoundError("Workflow rule not found")
    return rule


async def update_rule(
    db: AsyncSession,
    tenant_id,
    rule_id,
    trigger_type: Optional[str] = None,
    trigger_config: Optional[Mapping[str, Any]] = None,
    action_config: Optional[Mapping[str, Any]] = None,
    is_active: Optional[bool] = None,
) -> WorkflowRule:
    """Partial update. Deactivation (is_active=False) is the only way to retire a rule."""
    rule = await get_rule(db, tenant_id, rule_id)

    if trigger_type is not None:
        _require_known_trigger(trigger_type)
        rule.trigger_type = trigger_type
    if trigger_config is not None:
        rule.trigger_config = to_document(trigger_config, "trigger_config")
    if action_config is not None:
        rule.action_config = _action_document(action_config)
    if is_active is not None:
        rule.is_active = is_active

    await db.flush()
    logger.info("Workflow rule updated: id=%s active=%s", str(rule.id)[:8], rule.is_active)
    return rule


def _action_document(action_config: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Normalize an action template; a declared eventType must fit the event row."""
    action = to_document(action_config, "action_config")
    if "eventType" in action:
        event_type = action["eventType"]
        if not isinstance(event_type, str) or not event_type.strip():
            raise InvalidTriggerError("action_config.eventType must be a non-empty string")
        if len(event_type) > MAX_EVENT_TYPE_LENGTH:
            raise InvalidTriggerError(
                f"action_config.eventType must be at most {MAX_EVENT_TYPE_LENGTH} characters"
            )
    return action


def _require_known_trigger(trigger_type: str) -> None:
    if get_matcher(trigger_type) is None:
        raise InvalidTriggerError(
            f"Unknown trigger type {trigger_type!r}. Must be one of: {', '.join(known_trigger_types())}"
        )
