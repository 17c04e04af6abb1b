"""Booking repository: durable storage of bookings, payment sessions, audit entries and outbox events."""

import json
import logging
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.exceptions import NotFoundError
from ..models.audit import BookingAuditEntry
from ..models.booking import Booking, BookingStatus
from ..models.outbox import OutboxEvent, OutboxStatus
from ..models.payment import PaymentSession, PaymentSessionStatus
from ..models.vehicle import Vehicle

logger = logging.getLogger(__name__)


class BookingRepository:
    """
    Data access for the reservation core.

    Never commits: callers own the unit of work so that a status change, its
    audit entry and its outbox event land in one transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # Vehicles

    async def get_vehicle(self, vehicle_id: UUID) -> Vehicle | None:
        """Get vehicle by ID."""
        stmt = select(Vehicle).where(Vehicle.id == vehicle_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    # Bookings

    async def get(self, booking_id: UUID, for_update: bool = False) -> Booking | None:
        """
        Get booking by ID, always reloading the row from the database.

        Args:
            booking_id: Booking ID
            for_update: Take a row lock (``SELECT ... FOR UPDATE``) where supported
        """
        stmt = select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, booking_id: UUID, for_update: bool = False) -> Booking:
        """Get booking by ID or raise NotFoundError."""
        booking = await self.get(booking_id, for_update=for_update)
        if not booking:
            logger.warning(
                "Booking not found",
                extra={"booking_id": str(booking_id)}
            )
            raise NotFoundError(
                resource_type="booking",
                resource_id=str(booking_id)
            )
        return booking

    async def add(self, booking: Booking) -> Booking:
        """Stage a new booking and flush so its row exists for the rest of the transaction."""
        self.db.add(booking)
        await self.db.flush()
        return booking

    async def compare_and_set_status(
        self,
        booking_id: UUID,
        from_status: BookingStatus,
        to_status: BookingStatus,
        reason: str | None = None,
    ) -> bool:
        """
        Move a booking from ``from_status`` to ``to_status`` only if it is still in ``from_status``.

        Bumps ``version`` on success. Returns False when another writer got there first.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == from_status.value)
            .values(
                status=to_status.value,
                status_reason=reason,
                version=Booking.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def set_payment_session(self, booking_id: UUID, session_id: UUID, provider: str) -> None:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .values(payment_session_id=session_id, payment_provider=provider, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)

    async def find_pending_created_before(self, cutoff: datetime, limit: int) -> list[Booking]:
        """Pending bookings older than ``cutoff``, oldest first."""
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING.value, Booking.created_at <= cutoff)
            .order_by(Booking.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def find_confirmed_ending_by(self, as_of: date, limit: int, offset: int = 0) -> list[tuple[Booking, str]]:
        """Confirmed bookings whose checkout date is on or before ``as_of``, with their listing's timezone."""
        stmt = (
            select(Booking, Vehicle.timezone)
            .join(Vehicle, Vehicle.id == Booking.vehicle_id)
            .where(Booking.status == BookingStatus.CONFIRMED.value, Booking.end_date <= as_of)
            .order_by(Booking.end_date, Booking.id)
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [(booking, tz_name) for booking, tz_name in result.all()]

    # Payment sessions

    async def add_payment_session(self, session: PaymentSession) -> PaymentSession:
        self.db.add(session)
        await self.db.flush()
        return session

    async def get_session_by_provider_ref(
        self,
        provider: str,
        provider_session_id: str,
        for_update: bool = False,
    ) -> PaymentSession | None:
        """Resolve a provider's session reference to our payment session."""
        stmt = (
            select(PaymentSession)
            .where(
                PaymentSession.provider == provider,
                PaymentSession.provider_session_id == provider_session_id,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_session(self, booking_id: UUID) -> PaymentSession | None:
        """The booking's open (``created``) payment session, if any."""
        stmt = (
            select(PaymentSession)
            .where(
                PaymentSession.booking_id == booking_id,
                PaymentSession.status == PaymentSessionStatus.CREATED.value,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_captured_session(self, booking_id: UUID) -> PaymentSession | None:
        stmt = (
            select(PaymentSession)
            .where(
                PaymentSession.booking_id == booking_id,
                PaymentSession.status == PaymentSessionStatus.CAPTURED.value,
            )
            .order_by(PaymentSession.settled_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def settle_payment_session(
        self,
        session_id: UUID,
        to_status: PaymentSessionStatus,
        failure_reason: str | None = None,
        from_status: PaymentSessionStatus = PaymentSessionStatus.CREATED,
    ) -> bool:
        """
        Conditionally move a payment session out of ``from_status``.

        Returns False when the session was already settled by another writer.
        """
        now = utcnow()
        stmt = (
            update(PaymentSession)
            .where(PaymentSession.id == session_id, PaymentSession.status == from_status.value)
            .values(status=to_status.value, failure_reason=failure_reason, updated_at=now, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    # Audit trail

    async def append_audit(
        self,
        booking_id: UUID,
        event: str,
        from_status: BookingStatus | None,
        to_status: BookingStatus,
        actor: str,
        reason: str | None = None,
    ) -> BookingAuditEntry:
        """Append the next entry to a booking's audit trail."""
        stmt = select(func.coalesce(func.max(BookingAuditEntry.sequence), 0)).where(
            BookingAuditEntry.booking_id == booking_id
        )
        next_sequence = (await self.db.execute(stmt)).scalar_one() + 1

        entry = BookingAuditEntry(
            booking_id=booking_id,
            sequence=next_sequence,
            event=event,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            actor=actor,
            reason=reason,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_audit(self, booking_id: UUID) -> list[BookingAuditEntry]:
        stmt = (
            select(BookingAuditEntry)
            .where(BookingAuditEntry.booking_id == booking_id)
            .order_by(BookingAuditEntry.sequence)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    # Outbox

    async def enqueue_event(self, booking: Booking, event_type: str, extra: dict | None = None) -> OutboxEvent:
        """
        Record a domain event for later dispatch.

        A booking emits each event type once; enqueueing it again returns the
        existing row.
        """
        stmt = select(OutboxEvent).where(
            OutboxEvent.booking_id == booking.id,
            OutboxEvent.event_type == event_type,
        )
        existing = (await self.db.execute(stmt)).scalar_one_or_none()
        if existing:
            return existing

        payload = {
            "event_type": event_type,
            "booking_id": str(booking.id),
            "vehicle_id": str(booking.vehicle_id),
            "renter_id": booking.renter_id,
            "status": BookingStatus(booking.status).value,
            "start_date": booking.start_date.isoformat(),
            "end_date": booking.end_date.isoformat(),
            "total_amount": booking.total_amount,
            "currency": booking.currency,
            "occurred_at": utcnow().isoformat() + "Z",
        }
        if extra:
            payload.update(extra)

        event = OutboxEvent(
            booking_id=booking.id,
            event_type=event_type,
            payload=json.dumps(payload),
            status=OutboxStatus.PENDING.value,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def pending_events(self, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.PENDING.value)
            .order_by(OutboxEvent.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def count_pending_events(self) -> int:
        stmt = select(func.count()).select_from(OutboxEvent).where(
            OutboxEvent.status == OutboxStatus.PENDING.value
        )
        return (await self.db.execute(stmt)).scalar_one()
