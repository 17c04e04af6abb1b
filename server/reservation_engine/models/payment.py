"""Payment session model definition."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.clock import utcnow
from ..core.database import Base

if TYPE_CHECKING:
    from .booking import Booking


class PaymentSessionStatus(str, Enum):
    """Payment session status enumeration."""
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentSession(Base):
    """Checkout session opened with an external payment provider for one booking."""

    __tablename__ = "payment_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PaymentSessionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentSessionStatus.CREATED,
        index=True
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_session_amount_non_negative"),
        CheckConstraint("length(currency) = 3", name="ck_payment_session_currency_length"),
        UniqueConstraint("provider", "provider_session_id", name="uq_payment_session_provider_ref"),
        # At most one open session per booking
        Index(
            "uq_payment_sessions_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'created'"),
            sqlite_where=text("status = 'created'"),
        ),
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="payment_sessions")

    def __repr__(self) -> str:
        return (
            f"<PaymentSession(id={self.id}, booking_id={self.booking_id}, provider='{self.provider}', "
            f"provider_session_id='{self.provider_session_id}', status={self.status})>"
        )
