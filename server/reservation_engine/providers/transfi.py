"""TransFi payment intent adapter."""

import hashlib
import hmac
import json
import logging
from typing import Any, Mapping

import httpx

from ..core.exceptions import ValidationError
from ..models.booking import Booking
from ..schemas.payment import CallbackOutcome, CaptureResult, ProviderCallback, ProviderSession, RefundResult
from ..services.pricing import from_minor_units, parse_amount
from .base import PaymentProvider, load_callback_body, lower_headers

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-transfi-signature"

_EVENT_OUTCOMES = {
    "payment.completed": CallbackOutcome.CAPTURED,
    "payment.failed": CallbackOutcome.DENIED,
    "payment.expired": CallbackOutcome.DENIED,
}

_INTENT_OUTCOMES = {
    "completed": CallbackOutcome.CAPTURED,
    "succeeded": CallbackOutcome.CAPTURED,
    "paid": CallbackOutcome.CAPTURED,
    "failed": CallbackOutcome.DENIED,
    "expired": CallbackOutcome.DENIED,
    "cancelled": CallbackOutcome.DENIED,
}


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body``."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TransFiProvider(PaymentProvider):
    """TransFi: API-key bearer auth with HMAC-signed request bodies."""

    provider_id = "transfi"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        secret_key: str,
        webhook_secret: str,
        return_url: str,
        cancel_url: str,
        timeout: float | None = None,
    ):
        super().__init__(client, timeout)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.return_url = return_url
        self.cancel_url = cancel_url

    async def _signed_post(self, operation: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        # The signature covers the exact bytes sent
        body = json.dumps(payload, separators=(",", ":")).encode()
        response = await self._request(
            operation,
            "POST",
            f"{self.base_url}{path}",
            content=body,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "X-Signature": sign(self.secret_key, body),
                "Content-Type": "application/json",
            },
        )
        return self._json(response, operation)

    async def open_session(self, booking: Booking) -> ProviderSession:
        payload = {
            "amount": str(from_minor_units(booking.total_amount, booking.currency)),
            "currency": booking.currency,
            "description": f"Vehicle reservation {booking.id}",
            "reference_id": f"booking-{booking.id}",
            "customer": {"id": booking.renter_id},
            "metadata": {
                "booking_id": str(booking.id),
                "vehicle_id": str(booking.vehicle_id),
                "renter_id": booking.renter_id,
                "start_date": booking.start_date.isoformat(),
                "end_date": booking.end_date.isoformat(),
            },
            "payment_methods": ["card", "bank_transfer", "crypto"],
            "return_url": self.return_url,
            "cancel_url": self.cancel_url,
        }
        body = await self._signed_post("create_intent", "/payments/intent", payload)
        logger.info(
            "TransFi payment intent created",
            extra={"booking_id": str(booking.id), "intent_id": body.get("id")}
        )
        return ProviderSession(provider_session_id=body["id"], redirect_url=body.get("payment_url"))

    async def capture_result(self, provider_session_id: str) -> CaptureResult:
        response = await self._request(
            "get_intent",
            "GET",
            f"{self.base_url}/payments/intent/{provider_session_id}",
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        body = self._json(response, "get_intent")
        status = str(body.get("status", "")).lower()
        outcome = _INTENT_OUTCOMES.get(status, CallbackOutcome.PENDING)
        amount, currency = _amount_of(body)
        return CaptureResult(
            outcome=outcome,
            amount=amount,
            currency=currency,
            failure_reason=f"transfi_{status}" if outcome is CallbackOutcome.DENIED else None,
        )

    async def verify_callback(self, raw: bytes, headers: Mapping[str, str]) -> bool:
        signature = lower_headers(headers).get(SIGNATURE_HEADER)
        if not signature or not self.webhook_secret:
            return False
        return hmac.compare_digest(signature, sign(self.webhook_secret, raw))

    def parse_callback(self, raw: bytes) -> ProviderCallback:
        body = load_callback_body(raw)
        if body is None:
            raise ValidationError(detail="TransFi callback body is not a JSON object")

        event_type = body.get("event") or body.get("type") or ""
        data = body.get("data") or {}
        outcome = _EVENT_OUTCOMES.get(event_type, CallbackOutcome.IGNORED)
        amount, currency = _amount_of(data)

        return ProviderCallback(
            event_id=body.get("id"),
            event_type=event_type,
            provider_session_id=data.get("payment_intent_id") or data.get("id"),
            outcome=outcome,
            amount=amount,
            currency=currency,
            failure_reason=(data.get("failure_reason") or event_type) if outcome is CallbackOutcome.DENIED else None,
            raw=body,
        )

    async def refund(
        self,
        provider_session_id: str,
        amount: int,
        currency: str,
        reason: str | None = None,
    ) -> RefundResult:
        payload = {
            "payment_intent_id": provider_session_id,
            "amount": str(from_minor_units(amount, currency)),
            "currency": currency,
            "reason": reason or "customer_request",
            "reference_id": f"refund-{provider_session_id}",
        }
        body = await self._signed_post("refund", "/refunds", payload)
        return RefundResult(refund_id=body.get("id", ""), status=body.get("status", "unknown"))


def _amount_of(data: dict[str, Any]) -> tuple[int | None, str | None]:
    """TransFi reports major-unit amounts next to a currency code."""
    if data.get("amount") is None:
        return None, None
    currency = data.get("currency") or "USD"
    return parse_amount(data["amount"], currency), currency
