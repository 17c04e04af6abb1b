"""PayPal Orders v2 adapter."""

import asyncio
import logging
import time
from typing import Any, Callable, Mapping
from uuid import uuid4

import httpx

from ..core.exceptions import ProviderUnavailableError, ValidationError
from ..models.booking import Booking
from ..schemas.payment import CallbackOutcome, CaptureResult, ProviderCallback, ProviderSession, RefundResult
from ..services.pricing import from_minor_units, parse_amount
from .base import PaymentProvider, load_callback_body, lower_headers

logger = logging.getLogger(__name__)

# Headers PayPal signs every webhook delivery with
_TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_EVENT_OUTCOMES = {
    "CHECKOUT.ORDER.APPROVED": CallbackOutcome.REQUIRES_CAPTURE,
    "PAYMENT.CAPTURE.COMPLETED": CallbackOutcome.CAPTURED,
    "PAYMENT.CAPTURE.DENIED": CallbackOutcome.DENIED,
    "PAYMENT.CAPTURE.DECLINED": CallbackOutcome.DENIED,
    "CHECKOUT.ORDER.VOIDED": CallbackOutcome.DENIED,
}

_CAPTURE_OUTCOMES = {
    "COMPLETED": CallbackOutcome.CAPTURED,
    "DECLINED": CallbackOutcome.DENIED,
    "FAILED": CallbackOutcome.DENIED,
}

# Refresh the OAuth token after this share of its advertised lifetime
TOKEN_REFRESH_RATIO = 0.9


class PayPalProvider(PaymentProvider):
    """PayPal checkout: OAuth client credentials, order approval then capture."""

    provider_id = "paypal"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        return_url: str,
        cancel_url: str,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client, timeout)
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.return_url = return_url
        self.cancel_url = cancel_url
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def _access_token(self) -> str:
        """Client-credentials token, cached until 90% of its lifetime has passed."""
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            response = await self._request(
                "oauth_token",
                "POST",
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            body = self._json(response, "oauth_token")
            token = body.get("access_token")
            if not token:
                raise ProviderUnavailableError(self.provider_id, "oauth_token", detail="PayPal returned no access token")

            self._token = token
            self._token_expires_at = self._clock() + float(body.get("expires_in", 0)) * TOKEN_REFRESH_RATIO
            logger.debug("PayPal access token refreshed", extra={"expires_in": body.get("expires_in")})
            return token

    async def _headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def open_session(self, booking: Booking) -> ProviderSession:
        order = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": f"booking-{booking.id}",
                "custom_id": str(booking.id),
                "description": f"Vehicle reservation {booking.id} ({booking.start_date} to {booking.end_date})",
                "amount": {
                    "currency_code": booking.currency,
                    "value": str(from_minor_units(booking.total_amount, booking.currency)),
                },
            }],
            "application_context": {
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            },
        }
        response = await self._request(
            "create_order",
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            json=order,
            headers=await self._headers(request_id=str(uuid4())),
        )
        body = self._json(response, "create_order")

        approve_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info(
            "PayPal order created",
            extra={"booking_id": str(booking.id), "order_id": body.get("id"), "status": body.get("status")}
        )
        return ProviderSession(provider_session_id=body["id"], redirect_url=approve_url)

    async def _get_order(self, order_id: str, operation: str) -> dict[str, Any]:
        response = await self._request(
            operation,
            "GET",
            f"{self.base_url}/v2/checkout/orders/{order_id}",
            headers=await self._headers(),
        )
        return self._json(response, operation)

    async def capture_result(self, provider_session_id: str) -> CaptureResult:
        order = await self._get_order(provider_session_id, "get_order")
        status = order.get("status")

        if status == "APPROVED":
            response = await self._request(
                "capture_order",
                "POST",
                f"{self.base_url}/v2/checkout/orders/{provider_session_id}/capture",
                json={},
                headers=await self._headers(request_id=f"capture-{provider_session_id}"),
            )
            order = self._json(response, "capture_order")
            status = order.get("status")

        if status == "COMPLETED":
            capture = _first_capture(order)
            if capture is None:
                return CaptureResult(outcome=CallbackOutcome.PENDING)
            outcome = _CAPTURE_OUTCOMES.get(capture.get("status", ""), CallbackOutcome.PENDING)
            amount, currency = _amount_of(capture.get("amount"))
            return CaptureResult(outcome=outcome, amount=amount, currency=currency)

        if status == "VOIDED":
            return CaptureResult(outcome=CallbackOutcome.DENIED, failure_reason="order_voided")

        return CaptureResult(outcome=CallbackOutcome.PENDING)

    async def verify_callback(self, raw: bytes, headers: Mapping[str, str]) -> bool:
        """Ask PayPal to verify the transmission signature against our webhook id."""
        event = load_callback_body(raw)
        lowered = lower_headers(headers)
        if event is None or not self.webhook_id:
            return False
        if any(not lowered.get(header) for header in _TRANSMISSION_HEADERS.values()):
            return False

        verification = {field: lowered[header] for field, header in _TRANSMISSION_HEADERS.items()}
        verification["webhook_id"] = self.webhook_id
        verification["webhook_event"] = event

        response = await self._request(
            "verify_webhook",
            "POST",
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            json=verification,
            headers=await self._headers(),
        )
        return self._json(response, "verify_webhook").get("verification_status") == "SUCCESS"

    def parse_callback(self, raw: bytes) -> ProviderCallback:
        body = load_callback_body(raw)
        if body is None:
            raise ValidationError(detail="PayPal callback body is not a JSON object")

        event_type = body.get("event_type", "")
        resource = body.get("resource") or {}
        outcome = _EVENT_OUTCOMES.get(event_type, CallbackOutcome.IGNORED)

        if event_type.startswith("CHECKOUT.ORDER."):
            order_id = resource.get("id")
            units = resource.get("purchase_units") or [{}]
            amount, currency = _amount_of(units[0].get("amount"))
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            order_id = related.get("order_id")
            amount, currency = _amount_of(resource.get("amount"))

        return ProviderCallback(
            event_id=body.get("id"),
            event_type=event_type,
            provider_session_id=order_id,
            outcome=outcome,
            amount=amount,
            currency=currency,
            failure_reason=event_type.lower() if outcome is CallbackOutcome.DENIED else None,
            raw=body,
        )

    async def refund(
        self,
        provider_session_id: str,
        amount: int,
        currency: str,
        reason: str | None = None,
    ) -> RefundResult:
        order = await self._get_order(provider_session_id, "get_order")
        capture = _first_capture(order)
        if capture is None or not capture.get("id"):
            raise ProviderUnavailableError(
                self.provider_id, "refund", detail=f"PayPal order {provider_session_id} has no capture to refund"
            )

        response = await self._request(
            "refund",
            "POST",
            f"{self.base_url}/v2/payments/captures/{capture['id']}/refund",
            json={
                "amount": {"value": str(from_minor_units(amount, currency)), "currency_code": currency},
                "note_to_payer": reason or "Refund for cancelled vehicle reservation",
            },
            headers=await self._headers(request_id=f"refund-{provider_session_id}"),
        )
        body = self._json(response, "refund")
        return RefundResult(refund_id=body.get("id", ""), status=body.get("status", "UNKNOWN"))


def _first_capture(order: dict[str, Any]) -> dict[str, Any] | None:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


def _amount_of(amount: dict[str, Any] | None) -> tuple[int | None, str | None]:
    """PayPal ``{"value": "300.00", "currency_code": "USD"}`` to minor units."""
    if not amount or "value" not in amount:
        return None, None
    currency = amount.get("currency_code", "USD")
    return parse_amount(amount["value"], currency), currency
