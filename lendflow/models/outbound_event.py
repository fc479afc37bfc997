"""
OutboundEvent model - durable queue of notifications awaiting webhook delivery.
Rows are never deleted by the engine; delivered and failed events are kept
for audit and operator re-drive.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from lendflow.database import Base


class OutboundEventStatus:
    """Event lifecycle states. DELIVERED and FAILED are terminal."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"

    ALL = (PENDING, DELIVERED, FAILED)
    TERMINAL = (DELIVERED, FAILED)


class OutboundEvent(Base):
    __tablename__ = "outbound_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    event_type: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # loan.status_changed, workflow.triggered, ...

    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), default=OutboundEventStatus.PENDING, nullable=False
    )  # pending, delivered, failed

    # Incremented only by failed delivery attempts
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Delivery lease: set by the dispatch pass that is about to POST this event,
    # cleared when the attempt outcome is recorded
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    attempts: Mapped[list["DeliveryAttempt"]] = relationship(
        back_populates="event",
        order_by="DeliveryAttempt.attempted_at",
    )

    __table_args__ = (
        Index("ix_outbound_events_dispatch", "status", "created_at"),
        Index("ix_outbound_events_tenant_status", "tenant_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in OutboundEventStatus.TERMINAL

    def __repr__(self) -> str:
        return f"<OutboundEvent {self.event_type} ({self.status}, retries={self.retry_count})>"
