"""Concurrency tests for reservation and payment operations.

These run against a file-backed SQLite database so that each session holds its
own connection, the way concurrent requests do in production.
"""

import asyncio
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import FAKE_SIGNATURE, FAKE_SIGNATURE_HEADER, callback_body, fixed_clock
from reservation_engine.core.database import Base
from reservation_engine.core.exceptions import ReservationConflictError
from reservation_engine.core.identity import Caller
from reservation_engine.models import Booking, BookingAuditEntry, BookingStatus, PaymentSession, PaymentSessionStatus, Vehicle
from reservation_engine.services.payment_service import PaymentService
from reservation_engine.services.reservation_service import ReservationService
from reservation_engine.services.webhook_service import WebhookReconciliationService

pytestmark = pytest.mark.concurrency

NOW = datetime(2025, 6, 1, 12, 0, 0)
RENTER = Caller(user_id="renter_1")


@pytest_asyncio.fixture
async def shared_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def listed_vehicle(shared_factory):
    async with shared_factory() as db:
        vehicle = Vehicle(owner_id="host_1", nightly_rate_amount=10000, currency="USD", timezone="UTC")
        db.add(vehicle)
        await db.commit()
        return vehicle


async def reserve(factory, vehicle_id, start, end, renter_id):
    async with factory() as db:
        service = ReservationService(db, clock=fixed_clock(NOW))
        return await service.create_reservation(vehicle_id, renter_id, start, end)


async def count_active(factory, vehicle_id) -> int:
    async with factory() as db:
        return await db.scalar(
            select(func.count()).select_from(Booking).where(
                Booking.vehicle_id == vehicle_id,
                Booking.status.in_([BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]),
            )
        )


@pytest.mark.asyncio
async def test_concurrent_overlapping_requests_one_wins(shared_factory, listed_vehicle):
    """Two renters racing for the same nights: exactly one booking is created."""
    start, end = datetime(2025, 7, 1).date(), datetime(2025, 7, 5).date()

    results = await asyncio.gather(
        reserve(shared_factory, listed_vehicle.id, start, end, "renter_1"),
        reserve(shared_factory, listed_vehicle.id, datetime(2025, 7, 3).date(), datetime(2025, 7, 8).date(), "renter_2"),
        return_exceptions=True,
    )

    bookings = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, ReservationConflictError)]
    assert len(bookings) == 1
    assert len(conflicts) == 1
    assert await count_active(shared_factory, listed_vehicle.id) == 1


@pytest.mark.asyncio
async def test_many_concurrent_requests_never_double_book(shared_factory, listed_vehicle):
    start, end = datetime(2025, 8, 10).date(), datetime(2025, 8, 12).date()

    results = await asyncio.gather(
        *(reserve(shared_factory, listed_vehicle.id, start, end, f"renter_{i}") for i in range(10)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, Booking) for r in results) == 1
    assert sum(isinstance(r, ReservationConflictError) for r in results) == 9
    assert await count_active(shared_factory, listed_vehicle.id) == 1


@pytest.mark.asyncio
async def test_concurrent_adjacent_requests_both_succeed(shared_factory, listed_vehicle):
    """Checkout on day D and pickup on day D do not conflict."""
    results = await asyncio.gather(
        reserve(shared_factory, listed_vehicle.id, datetime(2025, 7, 1).date(), datetime(2025, 7, 5).date(), "renter_1"),
        reserve(shared_factory, listed_vehicle.id, datetime(2025, 7, 5).date(), datetime(2025, 7, 9).date(), "renter_2"),
    )

    assert all(isinstance(r, Booking) for r in results)
    assert await count_active(shared_factory, listed_vehicle.id) == 2


@pytest.mark.asyncio
async def test_concurrent_cancels_apply_once(shared_factory, listed_vehicle):
    booking = await reserve(
        shared_factory, listed_vehicle.id, datetime(2025, 7, 1).date(), datetime(2025, 7, 5).date(), "renter_1"
    )

    async def cancel():
        async with shared_factory() as db:
            service = ReservationService(db, clock=fixed_clock(NOW))
            _, decision = await service.cancel_reservation(booking.id, RENTER)
            return decision.outcome

    outcomes = await asyncio.gather(cancel(), cancel())

    assert sorted(o.value for o in outcomes) == ["already_terminal", "applied"]
    async with shared_factory() as db:
        entries = (await db.scalars(
            select(BookingAuditEntry).where(BookingAuditEntry.booking_id == booking.id)
        )).all()
    assert [e.to_status for e in entries].count(BookingStatus.CANCELLED.value) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_callbacks_apply_once(shared_factory, listed_vehicle, provider_registry):
    booking = await reserve(
        shared_factory, listed_vehicle.id, datetime(2025, 7, 1).date(), datetime(2025, 7, 5).date(), "renter_1"
    )
    async with shared_factory() as db:
        session = await PaymentService(db, provider_registry).open_payment_session(booking.id, "fake", RENTER)

    body = callback_body(session.provider_session_id, "captured", amount=booking.total_amount)
    headers = {FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE}

    async def deliver():
        async with shared_factory() as db:
            result = await WebhookReconciliationService(db, provider_registry).handle_callback("fake", body, headers)
            return result.result.value

    results = await asyncio.gather(*(deliver() for _ in range(3)))

    assert results.count("applied") == 1
    assert results.count("already_processed") == 2
    async with shared_factory() as db:
        stored = await db.get(Booking, booking.id)
        assert stored.status == BookingStatus.CONFIRMED.value
        assert stored.version == 2
        captured = (await db.scalars(
            select(BookingAuditEntry).where(
                BookingAuditEntry.booking_id == booking.id,
                BookingAuditEntry.to_status == BookingStatus.CONFIRMED.value,
            )
        )).all()
        assert len(captured) == 1


@pytest.mark.asyncio
async def test_cancel_racing_capture_ends_cancelled(shared_factory, listed_vehicle, provider_registry, fake_provider):
    """Cancel wins either way and the captured payment is refunded exactly once."""
    booking = await reserve(
        shared_factory, listed_vehicle.id, datetime(2025, 7, 1).date(), datetime(2025, 7, 5).date(), "renter_1"
    )
    async with shared_factory() as db:
        session = await PaymentService(db, provider_registry).open_payment_session(booking.id, "fake", RENTER)
    body = callback_body(session.provider_session_id, "captured", amount=booking.total_amount)

    async def deliver():
        async with shared_factory() as db:
            service = WebhookReconciliationService(db, provider_registry)
            return await service.handle_callback("fake", body, {FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE})

    async def cancel():
        async with shared_factory() as db:
            service = ReservationService(db, clock=fixed_clock(NOW), payment_service=PaymentService(db, provider_registry))
            return await service.cancel_reservation(booking.id, RENTER)

    await asyncio.gather(deliver(), cancel())

    async with shared_factory() as db:
        stored = await db.get(Booking, booking.id)
        stored_session = await db.get(PaymentSession, session.id)
    assert stored.status == BookingStatus.CANCELLED.value
    assert stored_session.status == PaymentSessionStatus.REFUNDED.value
    assert fake_provider.refunds == [(session.provider_session_id, booking.total_amount, "USD")]


@pytest.mark.asyncio
async def test_capture_committed_after_cancel_reads_booking_is_refunded(
    shared_factory, listed_vehicle, provider_registry, fake_provider
):
    """A capture landing between the cancel's read and its status change still gets refunded."""
    booking = await reserve(
        shared_factory, listed_vehicle.id, datetime(2025, 7, 1).date(), datetime(2025, 7, 5).date(), "renter_1"
    )
    async with shared_factory() as db:
        session = await PaymentService(db, provider_registry).open_payment_session(booking.id, "fake", RENTER)
    body = callback_body(session.provider_session_id, "captured", amount=booking.total_amount)

    async with shared_factory() as db:
        service = ReservationService(db, clock=fixed_clock(NOW), payment_service=PaymentService(db, provider_registry))
        read_booking = service.repository.get_or_raise
        deliveries = []

        async def read_then_capture(booking_id, for_update=False):
            found = await read_booking(booking_id, for_update=for_update)
            if not deliveries:
                async with shared_factory() as other:
                    webhook = WebhookReconciliationService(other, provider_registry)
                    deliveries.append(
                        await webhook.handle_callback("fake", body, {FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE})
                    )
            return found

        service.repository.get_or_raise = read_then_capture
        cancelled, decision = await service.cancel_reservation(booking.id, RENTER)

    assert deliveries[0].result.value == "applied"
    assert decision.applies
    assert decision.from_status is BookingStatus.CONFIRMED
    assert cancelled.status == BookingStatus.CANCELLED.value
    assert fake_provider.refunds == [(session.provider_session_id, booking.total_amount, "USD")]
    async with shared_factory() as db:
        stored_session = await db.get(PaymentSession, session.id)
    assert stored_session.status == PaymentSessionStatus.REFUNDED.value
