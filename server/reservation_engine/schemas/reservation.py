"""Reservation-related Pydantic schemas."""

import re
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.audit import BookingAuditEntry
from ..models.booking import Booking, BookingStatus
from ..services.state_machine import TransitionOutcome
from .common import Money

_CALENDAR_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _calendar_date_only(value: object) -> object:
    """Reject timestamps where a plain calendar date is expected."""
    if isinstance(value, datetime):
        raise ValueError("must be a calendar date without a time component")
    if isinstance(value, str) and not _CALENDAR_DATE.match(value):
        raise ValueError("must be a calendar date in YYYY-MM-DD format")
    return value


class CreateReservationRequest(BaseModel):
    """Request schema for creating a reservation."""

    vehicle_id: UUID = Field(..., description="Vehicle to reserve")
    start_date: date = Field(..., description="First night (inclusive), YYYY-MM-DD")
    end_date: date = Field(..., description="Checkout date (exclusive), YYYY-MM-DD")
    renter_id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=128,
        description="Renter to book for; defaults to the caller, other values require the admin role"
    )

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def validate_calendar_date(cls, v: object) -> object:
        return _calendar_date_only(v)


class CancelReservationRequest(BaseModel):
    """Request schema for cancelling a reservation."""

    booking_id: UUID = Field(..., description="Booking to cancel")
    reason: Optional[str] = Field(None, max_length=255, description="Free-text cancellation reason")


class GetReservationRequest(BaseModel):
    """Request schema for getting a reservation or its audit trail."""

    booking_id: UUID = Field(..., description="Booking to retrieve")


class SweepCompletedRequest(BaseModel):
    """Request schema for the completion sweep."""

    as_of: Optional[date] = Field(
        None, description="Date to evaluate for every listing; defaults to today in each listing's timezone"
    )

    @field_validator("as_of", mode="before")
    @classmethod
    def validate_calendar_date(cls, v: object) -> object:
        return _calendar_date_only(v)


class ReservationResponse(BaseModel):
    """Reservation response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Unique booking ID")
    vehicle_id: UUID = Field(..., description="Reserved vehicle")
    renter_id: str = Field(..., description="Renter")
    start_date: date = Field(..., description="First night (inclusive)")
    end_date: date = Field(..., description="Checkout date (exclusive)")
    status: BookingStatus = Field(..., description="Lifecycle status")
    nights: int = Field(..., ge=1, description="Number of nights")
    nightly_rate: Money = Field(..., description="Nightly rate snapshot taken at creation")
    total: Money = Field(..., description="Total price")
    payment_session_id: Optional[UUID] = Field(None, description="Current payment session")
    payment_provider: Optional[str] = Field(None, description="Provider of the current payment session")
    status_reason: Optional[str] = Field(None, description="Reason recorded with the last status change")
    version: int = Field(..., description="Incremented on every status change")
    created_at: datetime = Field(..., description="Creation time (ISO 8601)")
    updated_at: datetime = Field(..., description="Last change time (ISO 8601)")

    @classmethod
    def from_booking(cls, booking: Booking) -> "ReservationResponse":
        return cls(
            id=booking.id,
            vehicle_id=booking.vehicle_id,
            renter_id=booking.renter_id,
            start_date=booking.start_date,
            end_date=booking.end_date,
            status=BookingStatus(booking.status),
            nights=booking.nights,
            nightly_rate=Money(amount=booking.nightly_rate_amount, currency=booking.currency),
            total=Money(amount=booking.total_amount, currency=booking.currency),
            payment_session_id=booking.payment_session_id,
            payment_provider=booking.payment_provider,
            status_reason=booking.status_reason,
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class CancelReservationResponse(BaseModel):
    """Cancellation result; ``already_terminal`` means nothing changed."""

    outcome: TransitionOutcome = Field(..., description="applied, already_terminal or ignored")
    reservation: ReservationResponse


class AuditEntryResponse(BaseModel):
    """One audit trail entry."""

    model_config = ConfigDict(from_attributes=True)

    sequence: int
    event: str
    from_status: Optional[BookingStatus] = None
    to_status: BookingStatus
    actor: str
    reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: BookingAuditEntry) -> "AuditEntryResponse":
        return cls.model_validate(entry)


class AuditTrailResponse(BaseModel):
    """Audit trail of one booking, oldest first."""

    booking_id: UUID
    entries: list[AuditEntryResponse]


class SweepCompletedResponse(BaseModel):
    """Completion sweep result."""

    as_of: Optional[date] = Field(None, description="Date evaluated; null when each listing's local date was used")
    completed_count: int = Field(..., ge=0)
