"""Payment session gateway: opens provider sessions and refunds captured payments."""

import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import AuthorizationError, ConflictError, ProviderError
from ..core.identity import Caller
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus
from ..models.payment import PaymentSession, PaymentSessionStatus
from ..providers.registry import ProviderRegistry
from .booking_repository import BookingRepository

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for payment session operations."""

    def __init__(self, db: AsyncSession, providers: ProviderRegistry):
        self.db = db
        self.providers = providers
        self.repository = BookingRepository(db)

    async def open_payment_session(self, booking_id: UUID, provider_id: str, caller: Caller) -> PaymentSession:
        """
        Open a checkout session with ``provider_id`` for a pending booking.

        Re-opening with the same provider returns the existing open session.
        The provider call happens outside any transaction.

        Raises:
            NotFoundError: Unknown booking or provider
            AuthorizationError: Caller is not the renter
            ConflictError: Booking is not pending, or already has an open session with another provider
            ProviderError: The provider failed
        """
        provider = self.providers.get(provider_id)

        booking = await self.repository.get_or_raise(booking_id)
        self._check_payable(booking, caller)

        existing = await self.repository.get_active_session(booking.id)
        if existing:
            if existing.provider == provider_id:
                logger.info(
                    "Payment session already open - returning existing session",
                    extra={"booking_id": str(booking.id), "payment_session_id": str(existing.id)}
                )
                return existing
            raise ConflictError(
                detail=f"Booking {booking.id} already has an open payment session with '{existing.provider}'",
                conflicting_resource={"payment_session_id": str(existing.id), "provider": existing.provider},
            )
        # End the read transaction before talking to the provider
        await self.db.commit()

        provider_session = await provider.open_session(booking)

        try:
            booking = await self.repository.get_or_raise(booking_id, for_update=True)
            if BookingStatus(booking.status) is not BookingStatus.PENDING:
                raise ConflictError(detail=f"Booking {booking.id} is no longer pending (status: {booking.status})")

            session = PaymentSession(
                booking_id=booking.id,
                provider=provider_id,
                provider_session_id=provider_session.provider_session_id,
                status=PaymentSessionStatus.CREATED.value,
                amount=booking.total_amount,
                currency=booking.currency,
                redirect_url=provider_session.redirect_url,
            )
            await self.repository.add_payment_session(session)
            await self.repository.set_payment_session(booking.id, session.id, provider_id)
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            logger.warning(
                "Concurrent payment session open rejected",
                extra={"booking_id": str(booking_id), "provider": provider_id}
            )
            raise ConflictError(detail=f"Booking {booking_id} already has an open payment session") from exc
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(booking)
        metrics_collector.record_payment_session_opened(provider_id)
        logger.info(
            "Payment session opened",
            extra={
                "booking_id": str(booking.id),
                "payment_session_id": str(session.id),
                "provider": provider_id,
                "provider_session_id": session.provider_session_id,
                "amount": session.amount,
                "currency": session.currency,
            }
        )
        return session

    def _check_payable(self, booking: Booking, caller: Caller) -> None:
        if caller.user_id != booking.renter_id and not caller.is_admin:
            raise AuthorizationError(detail="Only the renter may pay for this booking")
        if BookingStatus(booking.status) is not BookingStatus.PENDING:
            raise ConflictError(
                detail=f"Booking {booking.id} is not awaiting payment (status: {booking.status})"
            )

    async def refund_captured(self, booking: Booking, reason: str = "booking_cancelled") -> PaymentSession | None:
        """
        Refund the booking's captured payment, if it has one.

        Provider failures are logged and leave the session ``captured`` so the
        refund can be retried; the cancellation itself is already committed.

        Returns:
            The refunded session, or None when nothing was refunded
        """
        session = await self.repository.get_captured_session(booking.id)
        if session is None:
            return None

        if session.provider not in self.providers:
            logger.error(
                "Refund skipped - provider no longer configured",
                extra={"booking_id": str(booking.id), "provider": session.provider}
            )
            return None

        provider = self.providers.get(session.provider)
        try:
            result = await provider.refund(session.provider_session_id, session.amount, session.currency, reason)
        except ProviderError as exc:
            logger.error(
                "Refund failed",
                extra={
                    "booking_id": str(booking.id),
                    "payment_session_id": str(session.id),
                    "provider": session.provider,
                    "error": exc.problem_details.get("detail"),
                }
            )
            return None

        await self.repository.settle_payment_session(
            session.id,
            PaymentSessionStatus.REFUNDED,
            failure_reason=reason,
            from_status=PaymentSessionStatus.CAPTURED,
        )
        await self.db.commit()
        await self.db.refresh(session)

        logger.info(
            "Captured payment refunded",
            extra={
                "booking_id": str(booking.id),
                "payment_session_id": str(session.id),
                "provider": session.provider,
                "refund_id": result.refund_id,
                "refund_status": result.status,
            }
        )
        return session
