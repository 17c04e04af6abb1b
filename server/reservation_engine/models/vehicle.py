"""Vehicle model definition (local projection of the vehicle catalog)."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.clock import utcnow
from ..core.database import Base

if TYPE_CHECKING:
    from .booking import Booking


class Vehicle(Base):
    """Vehicle listed by a host; written by catalog sync, read by the reservation core."""

    __tablename__ = "vehicles"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Price information (stored as minor units, e.g., cents)
    nightly_rate_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("nightly_rate_amount > 0", name="ck_vehicle_nightly_rate_positive"),
        CheckConstraint("length(currency) = 3", name="ck_vehicle_currency_length"),
        CheckConstraint("length(owner_id) > 0", name="ck_vehicle_owner_id_not_empty"),
    )

    bookings: Mapped[list["Booking"]] = relationship(
        "Booking",
        back_populates="vehicle",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Vehicle(id={self.id}, owner_id='{self.owner_id}', "
            f"rate={self.nightly_rate_amount} {self.currency}, available={self.is_available})>"
        )
