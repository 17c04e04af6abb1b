"""Models module exporting all database models."""

from .audit import BookingAuditEntry
from .booking import ACTIVE_STATUSES, TERMINAL_STATUSES, Booking, BookingStatus
from .outbox import OutboxEvent, OutboxStatus
from .payment import PaymentSession, PaymentSessionStatus
from .vehicle import Vehicle

__all__ = [
    # Catalog projection
    "Vehicle",

    # Booking entities
    "Booking",
    "BookingStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "BookingAuditEntry",

    # Payment entities
    "PaymentSession",
    "PaymentSessionStatus",

    # Domain event outbox
    "OutboxEvent",
    "OutboxStatus",
]
