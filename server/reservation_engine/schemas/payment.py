"""Payment-related Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models.payment import PaymentSession, PaymentSessionStatus
from .common import Money


class CallbackOutcome(str, Enum):
    """Provider-neutral payment outcome."""
    CAPTURED = "captured"
    DENIED = "denied"
    REQUIRES_CAPTURE = "requires_capture"
    PENDING = "pending"
    IGNORED = "ignored"


class ProviderSession(BaseModel):
    """Checkout session as opened by a provider."""

    provider_session_id: str
    redirect_url: Optional[str] = None


class CaptureResult(BaseModel):
    """Authoritative payment status reported by a provider."""

    outcome: CallbackOutcome
    amount: Optional[int] = Field(None, description="Captured amount in minor units")
    currency: Optional[str] = None
    failure_reason: Optional[str] = None


class ProviderCallback(BaseModel):
    """A webhook payload normalized across providers."""

    event_id: Optional[str] = None
    event_type: str
    provider_session_id: Optional[str] = None
    outcome: CallbackOutcome
    amount: Optional[int] = Field(None, description="Reported amount in minor units")
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)


class RefundResult(BaseModel):
    """Refund accepted by a provider."""

    refund_id: str
    status: str


class OpenPaymentSessionRequest(BaseModel):
    """Request schema for opening a payment session."""

    booking_id: UUID = Field(..., description="Pending booking to pay for")
    provider_id: str = Field(..., min_length=1, max_length=32, description="Payment provider, e.g. paypal or transfi")


class PaymentSessionResponse(BaseModel):
    """Payment session response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID
    provider: str
    provider_session_id: str
    status: PaymentSessionStatus
    amount: Money
    redirect_url: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_session(cls, session: PaymentSession) -> "PaymentSessionResponse":
        return cls(
            id=session.id,
            booking_id=session.booking_id,
            provider=session.provider,
            provider_session_id=session.provider_session_id,
            status=PaymentSessionStatus(session.status),
            amount=Money(amount=session.amount, currency=session.currency),
            redirect_url=session.redirect_url,
            created_at=session.created_at,
        )


class WebhookResult(str, Enum):
    """How a provider callback was handled."""
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    DROPPED = "dropped"
    REFUNDED = "refunded"


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = True
    result: WebhookResult
    booking_id: Optional[UUID] = None
    booking_status: Optional[str] = None
