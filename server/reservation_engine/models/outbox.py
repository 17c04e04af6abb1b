"""Outbox of booking domain events awaiting dispatch."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class OutboxStatus(str, Enum):
    """Outbox event status enumeration."""
    PENDING = "pending"
    DISPATCHED = "dispatched"


class OutboxEvent(Base):
    """Domain event written in the same transaction as the state change that caused it."""

    __tablename__ = "outbox_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string

    status: Mapped[OutboxStatus] = mapped_column(
        String(20),
        nullable=False,
        default=OutboxStatus.PENDING,
        index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        # A booking emits each event type at most once
        UniqueConstraint("booking_id", "event_type", name="uq_outbox_booking_event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id}, booking_id={self.booking_id}, "
            f"type='{self.event_type}', status={self.status})>"
        )
