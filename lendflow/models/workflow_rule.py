"""
WorkflowRule model - per-tenant trigger rules.
A rule pairs a trigger type and a match condition with an action template that
shapes the outbound event. Rules are soft-disabled, never hard-deleted.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from lendflow.database import Base


class WorkflowRule(Base):
    __tablename__ = "workflow_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    trigger_type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # STATUS_CHANGE, ENTITY_CREATED

    # Opaque matcher, e.g. {"status": "PROCESSING"}
    trigger_config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # Opaque payload shape, e.g. {"eventType": "loan.status_changed"}
    action_config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_workflow_rules_lookup", "tenant_id", "trigger_type", "is_active"),
    )

    def __repr__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"<WorkflowRule {self.trigger_type} ({state})>"
