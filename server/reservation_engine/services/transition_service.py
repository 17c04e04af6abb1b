"""Applies state machine decisions to persisted bookings."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConflictError
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus
from .booking_repository import BookingRepository
from .state_machine import DOMAIN_EVENTS, LifecycleEvent, Transition, decide

logger = logging.getLogger(__name__)

# Statuses only move forward, so a booking can lose at most this many races in a row
_MAX_ATTEMPTS = len(BookingStatus)


class BookingTransitionService:
    """Moves a booking through its lifecycle with compare-and-set, audit and outbox writes."""

    def __init__(self, db: AsyncSession, repository: BookingRepository | None = None):
        self.db = db
        self.repository = repository or BookingRepository(db)

    async def apply(
        self,
        booking: Booking,
        event: LifecycleEvent,
        actor: str,
        reason: str | None = None,
    ) -> Transition:
        """
        Offer ``event`` to ``booking`` and persist the result.

        The status change, its audit entry and its domain event are staged in
        the caller's transaction; nothing is committed here. If a concurrent
        writer changes the status first, the booking is re-read and the
        decision retaken against the new status.

        Returns:
            The final decision; ``booking`` is refreshed when it applied
        """
        for _ in range(_MAX_ATTEMPTS):
            decision = decide(booking.status, event)
            if not decision.applies:
                break

            won = await self.repository.compare_and_set_status(
                booking.id, decision.from_status, decision.to_status, reason
            )
            if won:
                await self.db.refresh(booking)
                await self.repository.append_audit(
                    booking_id=booking.id,
                    event=event.value,
                    from_status=decision.from_status,
                    to_status=decision.to_status,
                    actor=actor,
                    reason=reason,
                )
                event_type = DOMAIN_EVENTS.get(decision.to_status)
                if event_type:
                    await self.repository.enqueue_event(booking, event_type, {"reason": reason})

                logger.info(
                    "Booking transition applied",
                    extra={
                        "booking_id": str(booking.id),
                        "event": event.value,
                        "from_status": decision.from_status.value,
                        "to_status": decision.to_status.value,
                        "actor": actor,
                        "reason": reason,
                        "version": booking.version,
                    }
                )
                break

            logger.info(
                "Booking status changed concurrently, re-deciding",
                extra={"booking_id": str(booking.id), "event": event.value}
            )
            booking = await self.repository.get_or_raise(booking.id)
        else:
            raise ConflictError(detail=f"Booking {booking.id} kept changing while applying {event.value}")

        metrics_collector.record_transition(event.value, decision.to_status.value, decision.outcome.value)
        if not decision.applies:
            logger.info(
                "Booking transition not applied",
                extra={
                    "booking_id": str(booking.id),
                    "event": event.value,
                    "status": decision.from_status.value,
                    "outcome": decision.outcome.value,
                }
            )
        return decision
