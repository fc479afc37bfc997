"""
Database models - import all models here so Alembic can discover them.
"""
from lendflow.models.workflow_rule import WorkflowRule
from lendflow.models.outbound_event import OutboundEvent, OutboundEventStatus
from lendflow.models.webhook_subscription import WebhookSubscription
from lendflow.models.delivery_attempt import DeliveryAttempt

__all__ = [
    "WorkflowRule",
    "OutboundEvent",
    "OutboundEventStatus",
    "WebhookSubscription",
    "DeliveryAttempt",
]
