"""Webhook reconciliation: applies provider payment outcomes to bookings exactly once."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.config import settings
from ..core.exceptions import InvalidSignatureError, ProviderError, UnknownSessionError
from ..core.identity import SYSTEM_ACTOR
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus
from ..models.payment import PaymentSession, PaymentSessionStatus
from ..providers.base import PaymentProvider
from ..providers.registry import ProviderRegistry
from ..schemas.payment import CallbackOutcome, CaptureResult, WebhookResult
from .booking_repository import BookingRepository
from .payment_service import PaymentService
from .state_machine import LifecycleEvent, TransitionOutcome
from .transition_service import BookingTransitionService

logger = logging.getLogger(__name__)

# Session failure reasons after which a provider capture must be refunded
LATE_CAPTURE_REASONS = frozenset({"booking_cancelled", "payment_timeout"})


@dataclass(frozen=True)
class ReconciliationResult:
    """What handling one payment outcome did."""

    result: WebhookResult
    booking: Booking | None = None


@dataclass(frozen=True)
class SweepSummary:
    """Counts from one stale-payment reconciliation run."""

    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    timed_out: int = 0
    still_pending: int = 0
    errors: int = 0


class WebhookReconciliationService:
    """Service reconciling asynchronous provider callbacks with booking state."""

    def __init__(
        self,
        db: AsyncSession,
        providers: ProviderRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.providers = providers
        self.clock = clock
        self.repository = BookingRepository(db)
        self.transitions = BookingTransitionService(db, self.repository)

    async def handle_callback(self, provider_id: str, raw: bytes, headers: Mapping[str, str]) -> ReconciliationResult:
        """
        Verify, parse and apply one provider callback.

        Duplicate deliveries are successful no-ops. Unknown sessions raise
        UnknownSessionError, which the route acknowledges without retrying.

        Raises:
            NotFoundError: Unknown provider id
            InvalidSignatureError: Authenticity check failed; nothing was changed
            UnknownSessionError: No payment session matches the callback
            ProviderError: Signature verification or capture through the provider
                failed; nothing was changed and the callback is safe to redeliver
        """
        provider = self.providers.get(provider_id)

        verified = await provider.verify_callback(raw, headers)
        if not verified:
            metrics_collector.record_webhook(provider_id, "invalid_signature")
            logger.warning("Webhook rejected - invalid signature", extra={"provider": provider_id})
            raise InvalidSignatureError(provider_id)

        callback = provider.parse_callback(raw)
        log_context = {
            "provider": provider_id,
            "event_id": callback.event_id,
            "event_type": callback.event_type,
            "provider_session_id": callback.provider_session_id,
            "outcome": callback.outcome.value,
        }

        if callback.outcome in (CallbackOutcome.IGNORED, CallbackOutcome.PENDING) or not callback.provider_session_id:
            metrics_collector.record_webhook(provider_id, WebhookResult.IGNORED.value)
            logger.info("Webhook event ignored", extra=log_context)
            return ReconciliationResult(WebhookResult.IGNORED)

        session = await self.repository.get_session_by_provider_ref(provider_id, callback.provider_session_id)
        if session is None:
            metrics_collector.record_webhook(provider_id, WebhookResult.DROPPED.value)
            logger.warning("Webhook references unknown payment session", extra=log_context)
            raise UnknownSessionError(provider_id, callback.provider_session_id)

        session_status = PaymentSessionStatus(session.status)
        # End the read transaction; provider calls stay outside the row locks taken below
        await self.db.commit()

        if callback.outcome is CallbackOutcome.REQUIRES_CAPTURE:
            if session_status is not PaymentSessionStatus.CREATED:
                return self._already_processed(provider_id, session_status, log_context)
            capture = await provider.capture_result(callback.provider_session_id)
        else:
            capture = CaptureResult(
                outcome=callback.outcome,
                amount=callback.amount,
                currency=callback.currency,
                failure_reason=callback.failure_reason,
            )

        result = await self._apply_outcome(provider, callback.provider_session_id, capture, log_context)
        metrics_collector.record_webhook(provider_id, result.result.value)
        return result

    def _already_processed(
        self,
        provider_id: str,
        session_status: PaymentSessionStatus,
        log_context: dict,
    ) -> ReconciliationResult:
        metrics_collector.record_webhook(provider_id, WebhookResult.ALREADY_PROCESSED.value)
        logger.info(
            "Webhook already processed",
            extra={**log_context, "payment_session_status": session_status.value}
        )
        return ReconciliationResult(WebhookResult.ALREADY_PROCESSED)

    async def _apply_outcome(
        self,
        provider: PaymentProvider,
        provider_session_id: str,
        capture: CaptureResult,
        log_context: dict,
    ) -> ReconciliationResult:
        """
        Settle the session and transition its booking in one transaction.

        The booking row is locked before its session row, the same order
        cancellation and timeouts use. Both updates are guarded by their
        current status, so concurrent deliveries apply at most once.

        A capture that lands after the booking was cancelled or timed out is
        recorded on its session and refunded; the booking stays terminal.
        """
        if capture.outcome not in (CallbackOutcome.CAPTURED, CallbackOutcome.DENIED):
            logger.info("Payment not settled yet", extra={**log_context, "capture_outcome": capture.outcome.value})
            return ReconciliationResult(WebhookResult.IGNORED)

        late_capture = False
        try:
            session = await self.repository.get_session_by_provider_ref(provider.provider_id, provider_session_id)
            if session is None:
                raise UnknownSessionError(provider.provider_id, provider_session_id)
            booking = await self.repository.get_or_raise(session.booking_id, for_update=True)
            session = await self.repository.get_session_by_provider_ref(
                provider.provider_id, provider_session_id, for_update=True
            )

            if capture.outcome is CallbackOutcome.CAPTURED and self._is_late_capture(booking, session):
                late_capture = await self.repository.settle_payment_session(
                    session.id,
                    PaymentSessionStatus.CAPTURED,
                    from_status=PaymentSessionStatus(session.status),
                )
                await self.db.commit()
            elif PaymentSessionStatus(session.status) is not PaymentSessionStatus.CREATED or booking.is_terminal:
                await self.db.commit()
            else:
                event, session_status, reason = self._classify(booking, capture, log_context)

                settled = await self.repository.settle_payment_session(session.id, session_status, failure_reason=reason)
                if not settled:
                    await self.db.commit()
                    return ReconciliationResult(WebhookResult.ALREADY_PROCESSED, booking)

                decision = await self.transitions.apply(
                    booking, event, actor=f"{SYSTEM_ACTOR}:{provider.provider_id}", reason=reason
                )
                await self.db.commit()
                return self._reconciled(booking, decision.outcome, reason, log_context)
        except Exception:
            await self.db.rollback()
            raise

        if late_capture:
            return await self._refund_late_capture(booking, log_context)

        logger.info(
            "Webhook already processed",
            extra={
                **log_context,
                "booking_id": str(booking.id),
                "booking_status": booking.status,
                "payment_session_status": session.status,
            }
        )
        return ReconciliationResult(WebhookResult.ALREADY_PROCESSED, booking)

    def _reconciled(
        self,
        booking: Booking,
        outcome: TransitionOutcome,
        reason: str | None,
        log_context: dict,
    ) -> ReconciliationResult:
        if outcome is TransitionOutcome.APPLIED:
            result = WebhookResult.APPLIED
        elif outcome is TransitionOutcome.ALREADY_TERMINAL:
            result = WebhookResult.ALREADY_PROCESSED
        else:
            result = WebhookResult.IGNORED

        logger.info(
            "Payment outcome reconciled",
            extra={
                **log_context,
                "booking_id": str(booking.id),
                "booking_status": booking.status,
                "transition": outcome.value,
                "reason": reason,
            }
        )
        return ReconciliationResult(result, booking)

    @staticmethod
    def _is_late_capture(booking: Booking, session: PaymentSession) -> bool:
        """Money was taken for a booking that already gave up on this payment."""
        status = PaymentSessionStatus(session.status)
        if status is PaymentSessionStatus.CREATED:
            return booking.is_terminal
        return status is PaymentSessionStatus.FAILED and session.failure_reason in LATE_CAPTURE_REASONS

    async def _refund_late_capture(self, booking: Booking, log_context: dict) -> ReconciliationResult:
        logger.warning(
            "Payment captured after booking ended - refunding",
            extra={
                **log_context,
                "booking_id": str(booking.id),
                "booking_status": booking.status,
                "status_reason": booking.status_reason,
            }
        )
        refunded = await PaymentService(self.db, self.providers).refund_captured(
            booking, reason=booking.status_reason or "booking_cancelled"
        )
        return ReconciliationResult(
            WebhookResult.REFUNDED if refunded is not None else WebhookResult.ALREADY_PROCESSED,
            booking,
        )

    def _classify(
        self,
        booking: Booking,
        capture: CaptureResult,
        log_context: dict,
    ) -> tuple[LifecycleEvent, PaymentSessionStatus, str | None]:
        """Map a settled provider outcome to a lifecycle event, checking captured amounts."""
        if capture.outcome is CallbackOutcome.DENIED:
            return LifecycleEvent.PAYMENT_DENIED, PaymentSessionStatus.FAILED, capture.failure_reason or "payment_denied"

        amount_matches = capture.amount is None or capture.amount == booking.total_amount
        currency_matches = capture.currency is None or capture.currency.upper() == booking.currency
        if not (amount_matches and currency_matches):
            logger.error(
                "Captured amount does not match booking total",
                extra={
                    **log_context,
                    "booking_id": str(booking.id),
                    "expected_amount": booking.total_amount,
                    "expected_currency": booking.currency,
                    "captured_amount": capture.amount,
                    "captured_currency": capture.currency,
                }
            )
            return LifecycleEvent.PAYMENT_DENIED, PaymentSessionStatus.FAILED, "amount_mismatch"

        return LifecycleEvent.PAYMENT_CAPTURED, PaymentSessionStatus.CAPTURED, None

    async def reconcile_stale_pending(self, now: datetime | None = None, batch_size: int = 100) -> SweepSummary:
        """
        Re-query providers for pending bookings whose callback never arrived.

        Bookings older than ``payment_reconciliation_age_minutes`` with an open
        session are checked with their provider; those older than
        ``pending_payment_timeout_minutes`` that are still unsettled become
        ``payment_failed`` with reason ``payment_timeout``.
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=settings.payment_reconciliation_age_minutes)
        timeout_cutoff = now - timedelta(minutes=settings.pending_payment_timeout_minutes)

        bookings = await self.repository.find_pending_created_before(cutoff, batch_size)
        await self.db.commit()

        counts = dict(checked=0, confirmed=0, failed=0, timed_out=0, still_pending=0, errors=0)
        for booking in bookings:
            counts["checked"] += 1
            try:
                outcome = await self._reconcile_one(booking, timeout_cutoff)
            except ProviderError as exc:
                counts["errors"] += 1
                logger.warning(
                    "Payment reconciliation deferred - provider error",
                    extra={"booking_id": str(booking.id), "error": exc.problem_details.get("detail")}
                )
                outcome = None
                if booking.created_at <= timeout_cutoff:
                    outcome = await self._time_out(booking)
            if outcome:
                counts[outcome] += 1

        summary = SweepSummary(**counts)
        if summary.checked:
            logger.info("Payment reconciliation finished", extra=counts)
        return summary

    async def _reconcile_one(self, booking: Booking, timeout_cutoff: datetime) -> str:
        session = await self.repository.get_active_session(booking.id)
        await self.db.commit()

        if session is not None and session.provider in self.providers:
            provider = self.providers.get(session.provider)
            capture = await provider.capture_result(session.provider_session_id)
            if capture.outcome in (CallbackOutcome.CAPTURED, CallbackOutcome.DENIED):
                log_context = {
                    "provider": provider.provider_id,
                    "event_type": "reconciliation",
                    "provider_session_id": session.provider_session_id,
                    "outcome": capture.outcome.value,
                }
                result = await self._apply_outcome(provider, session.provider_session_id, capture, log_context)
                if result.result is WebhookResult.APPLIED and result.booking is not None:
                    return "confirmed" if result.booking.status == BookingStatus.CONFIRMED.value else "failed"
                return "still_pending"

        if booking.created_at <= timeout_cutoff:
            return await self._time_out(booking)
        return "still_pending"

    async def _time_out(self, booking: Booking) -> str:
        """Fail a pending booking whose payment never settled."""
        try:
            booking = await self.repository.get_or_raise(booking.id, for_update=True)
            session = await self.repository.get_active_session(booking.id)
            if session is not None:
                await self.repository.settle_payment_session(
                    session.id, PaymentSessionStatus.FAILED, failure_reason="payment_timeout"
                )
            decision = await self.transitions.apply(
                booking, LifecycleEvent.PAYMENT_DENIED, actor=SYSTEM_ACTOR, reason="payment_timeout"
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if decision.applies:
            logger.warning(
                "Pending booking timed out waiting for payment",
                extra={"booking_id": str(booking.id), "created_at": booking.created_at.isoformat()}
            )
            return "timed_out"
        return "still_pending"
