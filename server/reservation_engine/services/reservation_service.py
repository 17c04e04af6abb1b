"""Reservation service: conflict-safe creation, cancellation, lookup and completion sweep."""

import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import today_in, utcnow
from ..core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProblemDetailsException,
    ReservationConflictError,
    UnavailableError,
    ValidationError,
)
from ..core.identity import ADMIN_ROLE, SYSTEM_ACTOR, Caller
from ..core.observability import metrics_collector
from ..models.audit import BookingAuditEntry
from ..models.booking import OVERLAP_CONSTRAINT_NAME, Booking, BookingStatus
from ..models.payment import PaymentSessionStatus
from ..models.vehicle import Vehicle
from .availability import AvailabilityIndex
from .booking_repository import BookingRepository
from .pricing import price_stay_minor
from .state_machine import DOMAIN_EVENTS, LifecycleEvent, Transition
from .transition_service import BookingTransitionService
from .vehicle_lock import vehicle_lock

if TYPE_CHECKING:
    from .payment_service import PaymentService

logger = logging.getLogger(__name__)


def _validate_calendar_date(value: object, field: str) -> date:
    # datetime is a date subclass; reject it so no time component sneaks in
    if isinstance(value, datetime) or not isinstance(value, date):
        raise ValidationError(
            detail=f"{field} must be a calendar date without a time component",
            violations=[{"path": field, "message": "must be a calendar date (YYYY-MM-DD)"}],
        )
    return value


class ReservationService:
    """Service for reservation lifecycle operations."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        payment_service: "PaymentService | None" = None,
    ):
        self.db = db
        self.clock = clock
        self.repository = BookingRepository(db)
        self.availability = AvailabilityIndex(db)
        self.transitions = BookingTransitionService(db, self.repository)
        self.payment_service = payment_service

    async def create_reservation(
        self,
        vehicle_id: UUID,
        renter_id: str,
        start_date: date,
        end_date: date,
        actor: str | None = None,
    ) -> Booking:
        """
        Atomically validate and commit a new pending booking.

        Availability check, insert, audit entry and ``booking.created`` outbox
        event all happen under the vehicle's lock and commit together.

        Args:
            vehicle_id: Vehicle to reserve
            renter_id: Renter making the reservation
            start_date: First night (inclusive)
            end_date: Checkout date (exclusive)
            actor: Audit actor, defaults to the renter

        Returns:
            The committed pending booking

        Raises:
            ValidationError: Bad dates or renter id
            NotFoundError: Unknown vehicle
            UnavailableError: Vehicle is delisted
            ReservationConflictError: Dates overlap an active booking
        """
        start_date = _validate_calendar_date(start_date, "start_date")
        end_date = _validate_calendar_date(end_date, "end_date")
        if start_date >= end_date:
            raise ValidationError(
                detail="End date must be after start date",
                violations=[{"path": "end_date", "message": "must be after start_date"}],
            )
        if not renter_id or not renter_id.strip():
            raise ValidationError(
                detail="Renter id is required",
                violations=[{"path": "renter_id", "message": "must not be empty"}],
            )

        async with vehicle_lock(self.db, vehicle_id):
            try:
                vehicle = await self._check_admissible(vehicle_id, start_date, end_date)
            except ProblemDetailsException:
                # Nothing was written; end the read transaction without expiring loaded objects
                await self.db.commit()
                raise

            try:
                booking = await self._insert_pending(vehicle, renter_id, start_date, end_date, actor or renter_id)
                await self.db.commit()
            except IntegrityError as exc:
                await self.db.rollback()
                if OVERLAP_CONSTRAINT_NAME not in str(exc.orig):
                    raise
                await self._raise_conflict(vehicle_id, start_date, end_date, exc)
            except Exception:
                await self.db.rollback()
                raise

        metrics_collector.record_reservation_created(booking.currency)
        logger.info(
            "Reservation created successfully",
            extra={
                "booking_id": str(booking.id),
                "vehicle_id": str(vehicle_id),
                "renter_id": renter_id,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "nights": booking.nights,
                "total_amount": booking.total_amount,
                "currency": booking.currency,
            }
        )
        return booking

    async def _check_admissible(self, vehicle_id: UUID, start_date: date, end_date: date) -> Vehicle:
        """Reject unknown or delisted vehicles, past start dates and taken nights."""
        vehicle = await self.repository.get_vehicle(vehicle_id)
        if not vehicle:
            logger.warning("Vehicle not found", extra={"vehicle_id": str(vehicle_id)})
            raise NotFoundError(resource_type="vehicle", resource_id=str(vehicle_id))
        if not vehicle.is_available:
            logger.warning("Reservation rejected - vehicle delisted", extra={"vehicle_id": str(vehicle_id)})
            raise UnavailableError(vehicle_id=str(vehicle_id))

        today = today_in(vehicle.timezone, self.clock())
        if start_date < today:
            raise ValidationError(
                detail=f"Start date {start_date.isoformat()} is in the past for this listing (today is {today.isoformat()})",
                violations=[{"path": "start_date", "message": "must not be before today"}],
            )

        conflict = await self.availability.find_conflict(vehicle_id, start_date, end_date)
        if conflict:
            metrics_collector.record_reservation_conflict()
            logger.warning(
                "Reservation rejected - dates unavailable",
                extra={
                    "vehicle_id": str(vehicle_id),
                    "requested_start": start_date.isoformat(),
                    "requested_end": end_date.isoformat(),
                    "conflicting_booking_id": str(conflict.booking_id),
                }
            )
            raise ReservationConflictError(
                vehicle_id=str(vehicle_id),
                conflicting_start=conflict.start_date,
                conflicting_end=conflict.end_date,
                conflicting_booking_id=str(conflict.booking_id),
            )

        return vehicle

    async def _insert_pending(
        self,
        vehicle: Vehicle,
        renter_id: str,
        start_date: date,
        end_date: date,
        actor: str,
    ) -> Booking:
        quote = price_stay_minor(vehicle.nightly_rate_amount, start_date, end_date, vehicle.currency)

        booking = Booking(
            vehicle_id=vehicle.id,
            renter_id=renter_id,
            start_date=start_date,
            end_date=end_date,
            status=BookingStatus.PENDING.value,
            nights=quote.nights,
            nightly_rate_amount=quote.nightly_rate_minor,
            total_amount=quote.total_minor,
            currency=quote.currency,
        )
        await self.repository.add(booking)
        await self.repository.append_audit(
            booking_id=booking.id,
            event="created",
            from_status=None,
            to_status=BookingStatus.PENDING,
            actor=actor,
        )
        await self.repository.enqueue_event(booking, DOMAIN_EVENTS[BookingStatus.PENDING])
        return booking

    async def _raise_conflict(self, vehicle_id: UUID, start_date: date, end_date: date, exc: IntegrityError) -> None:
        """Translate an exclusion constraint violation into a conflict naming the blocking interval."""
        metrics_collector.record_reservation_conflict()
        conflict = await self.availability.find_conflict(vehicle_id, start_date, end_date)
        if conflict:
            raise ReservationConflictError(
                vehicle_id=str(vehicle_id),
                conflicting_start=conflict.start_date,
                conflicting_end=conflict.end_date,
                conflicting_booking_id=str(conflict.booking_id),
            ) from exc
        raise ConflictError(
            detail=f"Vehicle {vehicle_id} is already reserved for part of the requested dates"
        ) from exc

    async def cancel_reservation(
        self,
        booking_id: UUID,
        caller: Caller,
        reason: str | None = None,
    ) -> tuple[Booking, Transition]:
        """
        Cancel a booking on behalf of its renter, the vehicle owner or an admin.

        Cancelling a terminal booking is an ``already_terminal`` no-op, not an
        error. Cancelling a confirmed booking refunds a captured payment after
        the cancellation commits.

        Returns:
            The booking and the state machine decision

        Raises:
            NotFoundError: Unknown booking
            AuthorizationError: Caller is not a party to the booking
        """
        booking = await self.repository.get_or_raise(booking_id, for_update=True)
        role = await self._authorize(booking, caller)

        decision = await self.transitions.apply(
            booking,
            LifecycleEvent.CANCEL_REQUESTED,
            actor=caller.user_id,
            reason=reason or f"cancelled_by_{role}",
        )

        if decision.applies:
            open_session = await self.repository.get_active_session(booking.id)
            if open_session:
                await self.repository.settle_payment_session(
                    open_session.id, PaymentSessionStatus.FAILED, failure_reason="booking_cancelled"
                )
            await self.db.commit()

            # from_status is the status the cancellation actually replaced
            if decision.from_status is BookingStatus.CONFIRMED and self.payment_service:
                await self.payment_service.refund_captured(booking)
        else:
            await self.db.commit()

        return booking, decision

    async def get_booking(self, booking_id: UUID, caller: Caller) -> Booking:
        """
        Get booking by ID for one of its parties.

        Raises:
            NotFoundError: Unknown booking
            AuthorizationError: Caller is not a party to the booking
        """
        booking = await self.repository.get_or_raise(booking_id)
        await self._authorize(booking, caller)
        return booking

    async def list_audit(self, booking_id: UUID, caller: Caller) -> list[BookingAuditEntry]:
        """Audit trail of a booking, oldest entry first."""
        booking = await self.repository.get_or_raise(booking_id)
        await self._authorize(booking, caller)
        return await self.repository.list_audit(booking_id)

    async def sweep_completed_bookings(self, as_of: date | None = None, batch_size: int = 100) -> int:
        """
        Move confirmed bookings whose checkout date has arrived to ``completed``.

        Args:
            as_of: Calendar date to evaluate for every listing. When omitted,
                each booking is judged against today's date in its listing's
                timezone, the same local date reservations are created against.
            batch_size: Bookings processed per transaction

        Returns:
            Number of bookings completed
        """
        now = self.clock()
        # No listing timezone is more than one day ahead of UTC
        horizon = as_of or now.date() + timedelta(days=1)
        completed_count = 0
        skipped = 0

        while True:
            rows = await self.repository.find_confirmed_ending_by(horizon, batch_size, offset=skipped)
            if not rows:
                break

            applied = 0
            not_due = 0
            for booking, tz_name in rows:
                if as_of is None and booking.end_date > today_in(tz_name, now):
                    not_due += 1
                    continue
                decision = await self.transitions.apply(
                    booking,
                    LifecycleEvent.END_DATE_PASSED,
                    actor=SYSTEM_ACTOR,
                    reason="end_date_passed",
                )
                if decision.applies:
                    applied += 1
            await self.db.commit()
            completed_count += applied
            skipped += not_due

            if len(rows) < batch_size or applied + not_due == 0:
                break

        if completed_count > 0:
            logger.info(
                "Completion sweep finished",
                extra={
                    "as_of": as_of.isoformat() if as_of else "listing_local",
                    "completed_count": completed_count,
                }
            )
        return completed_count

    async def _authorize(self, booking: Booking, caller: Caller) -> str:
        """Return the caller's relationship to the booking or raise AuthorizationError."""
        if caller.user_id == booking.renter_id:
            return "renter"

        vehicle = await self.repository.get_vehicle(booking.vehicle_id)
        if vehicle and caller.user_id == vehicle.owner_id:
            return "owner"

        if caller.is_admin:
            return ADMIN_ROLE

        logger.warning(
            "Booking access denied",
            extra={"booking_id": str(booking.id), "caller": caller.user_id}
        )
        raise AuthorizationError(
            detail="Only the renter, the vehicle owner or an admin may access this booking",
            required_roles=[ADMIN_ROLE],
        )
