"""Availability index: overlap queries over a vehicle's reserved intervals."""

import logging
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import ACTIVE_STATUSES, Booking

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conflict:
    """An active booking whose interval overlaps the requested one."""

    booking_id: UUID
    start_date: date
    end_date: date


def intervals_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """
    Half-open interval overlap.

    ``[a_start, a_end)`` and ``[b_start, b_end)`` overlap iff each starts before
    the other ends, so a checkout on day D and a pickup on day D never conflict.
    """
    return a_start < b_end and b_start < a_end


class AvailabilityIndex:
    """Answers "is this vehicle free over these dates?" within the caller's transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_conflict(
        self,
        vehicle_id: UUID,
        start_date: date,
        end_date: date,
        exclude_booking_id: UUID | None = None,
    ) -> Conflict | None:
        """
        Return the earliest active booking overlapping ``[start_date, end_date)``.

        Only ``pending`` and ``confirmed`` bookings hold dates. Must run in the
        same unit of work as the insert it guards, with the vehicle lock held.

        Args:
            vehicle_id: Vehicle to check
            start_date: Requested first night
            end_date: Requested checkout date (exclusive)
            exclude_booking_id: Booking to ignore, for re-checking an existing booking

        Returns:
            The conflicting interval, or None when the dates are free
        """
        stmt = (
            select(Booking.id, Booking.start_date, Booking.end_date)
            .where(
                Booking.vehicle_id == vehicle_id,
                Booking.status.in_([status.value for status in ACTIVE_STATUSES]),
                Booking.start_date < end_date,
                Booking.end_date > start_date,
            )
            .order_by(Booking.start_date)
            .limit(1)
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)

        row = (await self.db.execute(stmt)).first()
        if row is None:
            return None

        logger.debug(
            "Availability conflict found",
            extra={
                "vehicle_id": str(vehicle_id),
                "requested_start": start_date.isoformat(),
                "requested_end": end_date.isoformat(),
                "conflicting_booking_id": str(row.id),
            }
        )
        return Conflict(booking_id=row.id, start_date=row.start_date, end_date=row.end_date)

    async def is_available(self, vehicle_id: UUID, start_date: date, end_date: date) -> bool:
        return await self.find_conflict(vehicle_id, start_date, end_date) is None

