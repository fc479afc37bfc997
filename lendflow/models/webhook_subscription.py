"""
Webhook subscription - a tenant's registered endpoint for one event type.
Deactivation flips is_active; rows stay so past delivery attempts keep their target.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from lendflow.database import Base


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    event_type = Column(String(100), nullable=False)
    target_url = Column(Text, nullable=False)
    secret = Column(String(255), nullable=False)  # HMAC-SHA256 signing key
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_webhook_subscriptions_lookup", "tenant_id", "event_type", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<WebhookSubscription {self.event_type} -> {self.target_url}>"
