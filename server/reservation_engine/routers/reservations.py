"""Reservation router for booking lifecycle operations."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import get_db
from ..core.dependencies import get_current_user, require_roles
from ..core.exceptions import AuthorizationError
from ..core.identity import ADMIN_ROLE, OPERATOR_ROLE, Caller
from ..providers.registry import ProviderRegistry, get_provider_registry
from ..schemas.common import AUTH_RESPONSES, Problem
from ..schemas.reservation import (
    AuditEntryResponse,
    AuditTrailResponse,
    CancelReservationRequest,
    CancelReservationResponse,
    CreateReservationRequest,
    GetReservationRequest,
    ReservationResponse,
    SweepCompletedRequest,
    SweepCompletedResponse,
)
from ..services.payment_service import PaymentService
from ..services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/reservation", tags=["reservation"], responses=AUTH_RESPONSES)

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
CALLER_DEPENDENCY = Depends(get_current_user)
OPERATOR_DEPENDENCY = Depends(require_roles(ADMIN_ROLE, OPERATOR_ROLE))
PROVIDERS_DEPENDENCY = Depends(get_provider_registry)


@router.post(
    "/create",
    response_model=ReservationResponse,
    status_code=201,
    responses={409: {"model": Problem, "description": "Dates taken or vehicle delisted"}},
)
async def create_reservation(
    request: CreateReservationRequest,
    caller: Caller = CALLER_DEPENDENCY,
    db: AsyncSession = DB_DEPENDENCY,
) -> ReservationResponse:
    """
    Reserve a vehicle for ``[start_date, end_date)``.

    The booking is created ``pending``; open a payment session next.
    """
    renter_id = request.renter_id or caller.user_id
    if renter_id != caller.user_id and not caller.is_admin:
        raise AuthorizationError(
            detail="Reservations can only be made for yourself",
            required_roles=[ADMIN_ROLE],
        )

    service = ReservationService(db)
    booking = await service.create_reservation(
        vehicle_id=request.vehicle_id,
        renter_id=renter_id,
        start_date=request.start_date,
        end_date=request.end_date,
        actor=caller.user_id,
    )
    return ReservationResponse.from_booking(booking)


@router.post("/cancel", response_model=CancelReservationResponse)
async def cancel_reservation(
    request: CancelReservationRequest,
    caller: Caller = CALLER_DEPENDENCY,
    db: AsyncSession = DB_DEPENDENCY,
    providers: ProviderRegistry = PROVIDERS_DEPENDENCY,
) -> CancelReservationResponse:
    """
    Cancel a reservation.

    Cancelling an already finished booking succeeds with outcome
    ``already_terminal`` and changes nothing.
    """
    service = ReservationService(db, payment_service=PaymentService(db, providers))
    booking, decision = await service.cancel_reservation(request.booking_id, caller, reason=request.reason)
    return CancelReservationResponse(
        outcome=decision.outcome,
        reservation=ReservationResponse.from_booking(booking),
    )


@router.post("/get", response_model=ReservationResponse)
async def get_reservation(
    request: GetReservationRequest,
    caller: Caller = CALLER_DEPENDENCY,
    db: AsyncSession = DB_DEPENDENCY,
) -> ReservationResponse:
    """Get a reservation by ID."""
    service = ReservationService(db)
    booking = await service.get_booking(request.booking_id, caller)
    return ReservationResponse.from_booking(booking)


@router.post("/audit", response_model=AuditTrailResponse)
async def get_reservation_audit(
    request: GetReservationRequest,
    caller: Caller = CALLER_DEPENDENCY,
    db: AsyncSession = DB_DEPENDENCY,
) -> AuditTrailResponse:
    """Audit trail of a reservation, oldest entry first."""
    service = ReservationService(db)
    entries = await service.list_audit(request.booking_id, caller)
    return AuditTrailResponse(
        booking_id=request.booking_id,
        entries=[AuditEntryResponse.from_entry(entry) for entry in entries],
    )


@router.post("/sweep-completed", response_model=SweepCompletedResponse)
async def sweep_completed(
    request: SweepCompletedRequest,
    caller: Caller = OPERATOR_DEPENDENCY,
    db: AsyncSession = DB_DEPENDENCY,
) -> SweepCompletedResponse:
    """Complete confirmed reservations whose checkout date has arrived."""
    service = ReservationService(db)
    completed = await service.sweep_completed_bookings(request.as_of, batch_size=settings.worker_batch_size)

    logger.info(
        "Completion sweep requested",
        extra={
            "caller": caller.user_id,
            "as_of": request.as_of.isoformat() if request.as_of else "listing_local",
            "completed_count": completed,
        }
    )
    return SweepCompletedResponse(as_of=request.as_of, completed_count=completed)
