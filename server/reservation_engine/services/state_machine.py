"""Reservation lifecycle state machine."""

from dataclasses import dataclass
from enum import Enum

from ..models.booking import TERMINAL_STATUSES, BookingStatus


class LifecycleEvent(str, Enum):
    """Events that drive a booking through its lifecycle."""
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_DENIED = "payment_denied"
    CANCEL_REQUESTED = "cancel_requested"
    END_DATE_PASSED = "end_date_passed"


class TransitionOutcome(str, Enum):
    """What happened when an event was offered to a booking."""
    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    IGNORED = "ignored"


TRANSITIONS: dict[tuple[BookingStatus, LifecycleEvent], BookingStatus] = {
    (BookingStatus.PENDING, LifecycleEvent.PAYMENT_CAPTURED): BookingStatus.CONFIRMED,
    (BookingStatus.PENDING, LifecycleEvent.PAYMENT_DENIED): BookingStatus.PAYMENT_FAILED,
    (BookingStatus.PENDING, LifecycleEvent.CANCEL_REQUESTED): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, LifecycleEvent.CANCEL_REQUESTED): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, LifecycleEvent.END_DATE_PASSED): BookingStatus.COMPLETED,
}

# Domain events announced to the notification dispatcher on entering a status
DOMAIN_EVENTS: dict[BookingStatus, str] = {
    BookingStatus.PENDING: "booking.created",
    BookingStatus.CONFIRMED: "booking.confirmed",
    BookingStatus.PAYMENT_FAILED: "booking.payment_failed",
    BookingStatus.CANCELLED: "booking.cancelled",
}


@dataclass(frozen=True)
class Transition:
    """Decision for one (status, event) pair."""

    from_status: BookingStatus
    event: LifecycleEvent
    to_status: BookingStatus
    outcome: TransitionOutcome

    @property
    def applies(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


def is_terminal(status: BookingStatus | str) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def decide(current: BookingStatus | str, event: LifecycleEvent | str) -> Transition:
    """
    Decide what ``event`` does to a booking currently in ``current``.

    Terminal statuses absorb every event as an ``already_terminal`` no-op so
    retried webhooks and repeated cancellations never raise. Events with no
    edge from a non-terminal status (a duplicate capture on a confirmed
    booking, for example) are ``ignored``.
    """
    status = BookingStatus(current)
    lifecycle_event = LifecycleEvent(event)

    if status in TERMINAL_STATUSES:
        return Transition(status, lifecycle_event, status, TransitionOutcome.ALREADY_TERMINAL)

    target = TRANSITIONS.get((status, lifecycle_event))
    if target is None:
        return Transition(status, lifecycle_event, status, TransitionOutcome.IGNORED)

    return Transition(status, lifecycle_event, target, TransitionOutcome.APPLIED)
