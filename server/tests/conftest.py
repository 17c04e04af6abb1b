"""Test configuration and fixtures."""

import json
import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ENABLE_BACKGROUND_WORKERS", "false")

from datetime import date, datetime, timedelta  # noqa: E402
from typing import Any, Mapping  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from reservation_engine.core.clock import utcnow  # noqa: E402
from reservation_engine.core.config import settings  # noqa: E402
from reservation_engine.core.database import Base, get_db  # noqa: E402
from reservation_engine.models import *  # noqa: E402,F403 - Import all models
from reservation_engine.models import Booking, BookingStatus, Vehicle  # noqa: E402
from reservation_engine.providers.base import PaymentProvider, load_callback_body, lower_headers  # noqa: E402
from reservation_engine.providers.registry import ProviderRegistry, get_provider_registry  # noqa: E402
from reservation_engine.schemas.payment import (  # noqa: E402
    CallbackOutcome,
    CaptureResult,
    ProviderCallback,
    ProviderSession,
    RefundResult,
)

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FAKE_SIGNATURE_HEADER = "x-fake-signature"
FAKE_SIGNATURE = "valid"


class FakeProvider(PaymentProvider):
    """In-memory payment provider recording every call."""

    provider_id = "fake"

    def __init__(self):
        super().__init__(client=None, timeout=1.0)
        self.opened: list[str] = []
        self.refunds: list[tuple[str, int, str]] = []
        self.capture = CaptureResult(outcome=CallbackOutcome.PENDING)
        self.capture_calls = 0
        self.fail_with: Exception | None = None

    async def open_session(self, booking: Booking) -> ProviderSession:
        if self.fail_with:
            raise self.fail_with
        session_id = f"fake-{booking.id}"
        self.opened.append(session_id)
        return ProviderSession(provider_session_id=session_id, redirect_url=f"https://pay.example/{session_id}")

    async def capture_result(self, provider_session_id: str) -> CaptureResult:
        self.capture_calls += 1
        if self.fail_with:
            raise self.fail_with
        return self.capture

    async def verify_callback(self, raw: bytes, headers: Mapping[str, str]) -> bool:
        return lower_headers(headers).get(FAKE_SIGNATURE_HEADER) == FAKE_SIGNATURE

    def parse_callback(self, raw: bytes) -> ProviderCallback:
        body = load_callback_body(raw) or {}
        return ProviderCallback(
            event_id=body.get("id"),
            event_type=body.get("event", ""),
            provider_session_id=body.get("session_id"),
            outcome=CallbackOutcome(body.get("outcome", "ignored")),
            amount=body.get("amount"),
            currency=body.get("currency"),
            failure_reason=body.get("failure_reason"),
            raw=body,
        )

    async def refund(self, provider_session_id: str, amount: int, currency: str, reason: str | None = None) -> RefundResult:
        if self.fail_with:
            raise self.fail_with
        self.refunds.append((provider_session_id, amount, currency))
        return RefundResult(refund_id=f"refund-{provider_session_id}", status="COMPLETED")


def callback_body(session_id: str, outcome: str, amount: int | None = None, currency: str | None = "USD", **extra: Any) -> bytes:
    """Webhook body understood by FakeProvider."""
    body = {"id": f"evt-{session_id}-{outcome}", "event": f"payment.{outcome}", "session_id": session_id, "outcome": outcome}
    if amount is not None:
        body["amount"] = amount
        body["currency"] = currency
    body.update(extra)
    return json.dumps(body).encode()


def make_token(user_id: str, roles: list[str] | None = None) -> str:
    payload = {"sub": user_id, "roles": roles or []}
    return jwt.encode(payload, settings.bearer_token_secret, algorithm="HS256")


def auth_headers(user_id: str, roles: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, roles)}"}


def future_date(days: int) -> date:
    """A calendar date ``days`` after today (UTC)."""
    return utcnow().date() + timedelta(days=days)


def fixed_clock(moment: datetime):
    return lambda: moment


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_registry(fake_provider):
    return ProviderRegistry([fake_provider])


@pytest_asyncio.fixture
async def vehicle(test_session):
    """A listed vehicle at 100.00 USD per night."""
    vehicle = Vehicle(
        owner_id="host_1",
        nightly_rate_amount=10000,
        currency="USD",
        location="Portland, OR",
        timezone="UTC",
    )
    test_session.add(vehicle)
    await test_session.commit()
    return vehicle


@pytest.fixture
def make_booking(test_session):
    """Insert a booking directly in the given status, bypassing the reservation service."""

    async def factory(
        vehicle: Vehicle,
        start_date: date,
        end_date: date,
        status: BookingStatus = BookingStatus.PENDING,
        renter_id: str = "renter_1",
        created_at: datetime | None = None,
    ) -> Booking:
        nights = (end_date - start_date).days
        booking = Booking(
            vehicle_id=vehicle.id,
            renter_id=renter_id,
            start_date=start_date,
            end_date=end_date,
            status=status.value,
            nights=nights,
            nightly_rate_amount=vehicle.nightly_rate_amount,
            total_amount=nights * vehicle.nightly_rate_amount,
            currency=vehicle.currency,
        )
        if created_at is not None:
            booking.created_at = created_at
        test_session.add(booking)
        await test_session.commit()
        return booking

    return factory


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, provider_registry):
    """Create a test FastAPI application without lifespan side effects."""
    from reservation_engine.main import create_app

    app = create_app()

    # Override database dependency
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: provider_registry

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
