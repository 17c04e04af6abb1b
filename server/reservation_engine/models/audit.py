"""Append-only booking audit trail."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.clock import utcnow
from ..core.database import Base

if TYPE_CHECKING:
    from .booking import Booking


class BookingAuditEntry(Base):
    """One row per booking status change, kept for dispute resolution."""

    __tablename__ = "booking_audit_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    event: Mapped[str] = mapped_column(String(32), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("booking_id", "sequence", name="uq_booking_audit_sequence"),
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="audit_entries")

    def __repr__(self) -> str:
        return (
            f"<BookingAuditEntry(booking_id={self.booking_id}, sequence={self.sequence}, "
            f"{self.from_status}->{self.to_status}, actor='{self.actor}')>"
        )
