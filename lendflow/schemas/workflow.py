"""
Request/response schemas for the workflow rule, webhook subscription and
outbound event admin endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator


class WorkflowRuleCreate(BaseModel):
    trigger_type: str
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    action_config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class WorkflowRuleUpdate(BaseModel):
    trigger_type: Optional[str] = None
    trigger_config: Optional[dict[str, Any]] = None
    action_config: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None


class WorkflowRuleResponse(BaseModel):
    id: str
    trigger_type: str
    trigger_config: dict[str, Any]
    action_config: dict[str, Any]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WebhookSubscriptionCreate(BaseModel):
    event_type: str = Field(min_length=1, max_length=100)
    target_url: str
    secret: str = Field(min_length=8, max_length=255)
    is_active: bool = True

    @field_validator("target_url")
    @classmethod
    def _absolute_http_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("target_url must be an absolute http(s) URL")
        return value


class WebhookSubscriptionResponse(BaseModel):
    """Subscription as shown to administrators. The secret is never echoed."""
    id: str
    event_type: str
    target_url: str
    is_active: bool
    created_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None


class DeliveryAttemptResponse(BaseModel):
    id: str
    subscription_id: str
    success: bool
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    attempted_at: Optional[datetime] = None


class OutboundEventResponse(BaseModel):
    id: str
    event_type: str
    payload: dict[str, Any]
    status: str
    retry_count: int
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class OutboundEventDetailResponse(OutboundEventResponse):
    attempts: list[DeliveryAttemptResponse] = Field(default_factory=list)


class DispatchSummaryResponse(BaseModel):
    events: int
    delivered: int
    no_subscribers: int
    retrying: int
    failed: int
    attempts: int
    failed_attempts: int
    in_flight: int
    skipped: bool
