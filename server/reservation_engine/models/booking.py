"""Booking model definition."""

from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DDL, CheckConstraint, Date, ForeignKey, Index, Integer, String, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.clock import utcnow
from ..core.database import Base

if TYPE_CHECKING:
    from .audit import BookingAuditEntry
    from .payment import PaymentSession
    from .vehicle import Vehicle


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"


# Statuses that hold the vehicle's dates
ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

TERMINAL_STATUSES = frozenset({
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
    BookingStatus.PAYMENT_FAILED,
})

OVERLAP_CONSTRAINT_NAME = "ex_bookings_vehicle_active_dates"


class Booking(Base):
    """Reservation of one vehicle over the half-open date range [start_date, end_date)."""

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    vehicle_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("vehicles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    renter_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )

    # Pricing snapshot (minor units) taken at creation
    nights: Mapped[int] = mapped_column(Integer, nullable=False)
    nightly_rate_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    payment_session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    payment_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_booking_dates_ordered"),
        CheckConstraint("nights >= 1", name="ck_booking_nights_positive"),
        CheckConstraint("total_amount = nights * nightly_rate_amount", name="ck_booking_total_matches_rate"),
        CheckConstraint("length(renter_id) > 0", name="ck_booking_renter_id_not_empty"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'completed', 'payment_failed')",
            name="ck_booking_status_valid"
        ),
        Index("ix_bookings_vehicle_dates_status", "vehicle_id", "start_date", "end_date", "status"),
    )

    vehicle: Mapped["Vehicle"] = relationship("Vehicle", back_populates="bookings")
    payment_sessions: Mapped[list["PaymentSession"]] = relationship(
        "PaymentSession",
        back_populates="booking",
        cascade="all, delete-orphan"
    )
    audit_entries: Mapped[list["BookingAuditEntry"]] = relationship(
        "BookingAuditEntry",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingAuditEntry.sequence"
    )

    @property
    def is_terminal(self) -> bool:
        return BookingStatus(self.status) in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, vehicle_id={self.vehicle_id}, "
            f"dates=[{self.start_date}, {self.end_date}), status={self.status}, version={self.version})>"
        )


# PostgreSQL rejects overlapping active bookings at insert time as well
event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        f"ALTER TABLE bookings ADD CONSTRAINT {OVERLAP_CONSTRAINT_NAME} "
        "EXCLUDE USING gist (vehicle_id WITH =, daterange(start_date, end_date, '[)') WITH &&) "
        "WHERE (status IN ('pending', 'confirmed'))"
    ).execute_if(dialect="postgresql"),
)
