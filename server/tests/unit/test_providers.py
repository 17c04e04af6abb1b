"""Unit tests for the payment provider adapters."""

import json
from datetime import date
from uuid import uuid4

import httpx
import pytest

from reservation_engine.core.exceptions import (
    NotFoundError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from reservation_engine.core.config import Settings
from reservation_engine.models import Booking
from reservation_engine.providers.paypal import PayPalProvider
from reservation_engine.providers.registry import ProviderRegistry, build_provider_registry
from reservation_engine.providers.transfi import SIGNATURE_HEADER, TransFiProvider, sign
from reservation_engine.schemas.payment import CallbackOutcome

PAYPAL_URL = "https://paypal.test"
TRANSFI_URL = "https://transfi.test/v1"

PAYPAL_SIGNATURE_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2025-06-01T12:00:00Z",
}


def make_booking() -> Booking:
    return Booking(
        id=uuid4(),
        vehicle_id=uuid4(),
        renter_id="renter_1",
        start_date=date(2025, 6, 10),
        end_date=date(2025, 6, 13),
        status="pending",
        nights=3,
        nightly_rate_amount=10000,
        total_amount=30000,
        currency="USD",
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class PayPalStub:
    """Minimal PayPal API answering with canned bodies and recording requests."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.order_status = "APPROVED"
        self.verification_status = "SUCCESS"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": 100})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(201, json={
                "id": "ORDER-1",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"{PAYPAL_URL}/v2/checkout/orders/ORDER-1"},
                    {"rel": "approve", "href": "https://www.paypal.test/checkoutnow?token=ORDER-1"},
                ],
            })
        if path == "/v2/checkout/orders/ORDER-1" and request.method == "GET":
            if self.order_status == "COMPLETED":
                return httpx.Response(200, json=_completed_order())
            return httpx.Response(200, json={"id": "ORDER-1", "status": self.order_status})
        if path == "/v2/checkout/orders/ORDER-1/capture":
            return httpx.Response(201, json=_completed_order())
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        if path == "/v2/payments/captures/CAPTURE-1/refund":
            return httpx.Response(201, json={"id": "REFUND-1", "status": "COMPLETED"})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


def _completed_order() -> dict:
    return {
        "id": "ORDER-1",
        "status": "COMPLETED",
        "purchase_units": [{
            "payments": {
                "captures": [{
                    "id": "CAPTURE-1",
                    "status": "COMPLETED",
                    "amount": {"value": "300.00", "currency_code": "USD"},
                }],
            },
        }],
    }


@pytest.fixture
def paypal_stub():
    return PayPalStub()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def paypal(paypal_stub, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(paypal_stub))
    return PayPalProvider(
        client=client,
        base_url=PAYPAL_URL,
        client_id="client",
        client_secret="secret",
        webhook_id="WH-1",
        return_url="https://app.test/return",
        cancel_url="https://app.test/cancel",
        timeout=2.0,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_paypal_open_session_creates_order(paypal, paypal_stub):
    booking = make_booking()

    session = await paypal.open_session(booking)

    assert session.provider_session_id == "ORDER-1"
    assert session.redirect_url == "https://www.paypal.test/checkoutnow?token=ORDER-1"

    order_request = paypal_stub.requests[-1]
    body = json.loads(order_request.content)
    assert body["intent"] == "CAPTURE"
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "300.00"}
    assert body["purchase_units"][0]["custom_id"] == str(booking.id)
    assert order_request.headers["Authorization"] == "Bearer token-1"
    assert order_request.headers["PayPal-Request-Id"]


@pytest.mark.asyncio
async def test_paypal_token_cached_until_ninety_percent_of_lifetime(paypal, paypal_stub, clock):
    await paypal.open_session(make_booking())
    clock.now += 89
    await paypal.open_session(make_booking())

    assert paypal_stub.token_calls == 1

    clock.now += 2
    await paypal.open_session(make_booking())

    assert paypal_stub.token_calls == 2
    assert paypal_stub.requests[-1].headers["Authorization"] == "Bearer token-2"


@pytest.mark.asyncio
async def test_paypal_token_request_uses_client_credentials(paypal, paypal_stub):
    await paypal.open_session(make_booking())

    token_request = paypal_stub.requests[0]
    assert token_request.content == b"grant_type=client_credentials"
    assert token_request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_paypal_capture_result_captures_approved_order(paypal, paypal_stub):
    result = await paypal.capture_result("ORDER-1")

    assert result.outcome is CallbackOutcome.CAPTURED
    assert result.amount == 30000
    assert result.currency == "USD"
    capture_request = paypal_stub.requests[-1]
    assert capture_request.url.path == "/v2/checkout/orders/ORDER-1/capture"
    assert capture_request.headers["PayPal-Request-Id"] == "capture-ORDER-1"


@pytest.mark.asyncio
async def test_paypal_capture_result_of_completed_order_does_not_recapture(paypal, paypal_stub):
    paypal_stub.order_status = "COMPLETED"

    result = await paypal.capture_result("ORDER-1")

    assert result.outcome is CallbackOutcome.CAPTURED
    assert all(not r.url.path.endswith("/capture") for r in paypal_stub.requests)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,outcome",
    [("CREATED", CallbackOutcome.PENDING), ("VOIDED", CallbackOutcome.DENIED)],
)
async def test_paypal_capture_result_other_statuses(paypal, paypal_stub, status, outcome):
    paypal_stub.order_status = status

    result = await paypal.capture_result("ORDER-1")

    assert result.outcome is outcome


@pytest.mark.asyncio
async def test_paypal_verify_callback(paypal, paypal_stub):
    raw = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}).encode()

    assert await paypal.verify_callback(raw, PAYPAL_SIGNATURE_HEADERS) is True

    verification = json.loads(paypal_stub.requests[-1].content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_id"] == "tx-1"
    assert verification["webhook_event"]["id"] == "WH-EVT-1"


@pytest.mark.asyncio
async def test_paypal_verify_callback_failure(paypal, paypal_stub):
    paypal_stub.verification_status = "FAILURE"
    raw = json.dumps({"id": "WH-EVT-1"}).encode()

    assert await paypal.verify_callback(raw, PAYPAL_SIGNATURE_HEADERS) is False


@pytest.mark.asyncio
async def test_paypal_verify_callback_without_headers_skips_remote_call(paypal, paypal_stub):
    raw = json.dumps({"id": "WH-EVT-1"}).encode()

    assert await paypal.verify_callback(raw, {}) is False
    assert paypal_stub.requests == []


def test_paypal_parse_capture_completed(paypal):
    raw = json.dumps({
        "id": "WH-EVT-2",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAPTURE-1",
            "amount": {"value": "300.00", "currency_code": "USD"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        },
    }).encode()

    callback = paypal.parse_callback(raw)

    assert callback.outcome is CallbackOutcome.CAPTURED
    assert callback.provider_session_id == "ORDER-1"
    assert callback.amount == 30000
    assert callback.event_id == "WH-EVT-2"


def test_paypal_parse_order_approved(paypal):
    raw = json.dumps({
        "id": "WH-EVT-3",
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "resource": {"id": "ORDER-1", "purchase_units": [{"amount": {"value": "300.00", "currency_code": "USD"}}]},
    }).encode()

    callback = paypal.parse_callback(raw)

    assert callback.outcome is CallbackOutcome.REQUIRES_CAPTURE
    assert callback.provider_session_id == "ORDER-1"


def test_paypal_parse_unrelated_event_ignored(paypal):
    callback = paypal.parse_callback(json.dumps({"event_type": "BILLING.PLAN.CREATED", "resource": {}}).encode())

    assert callback.outcome is CallbackOutcome.IGNORED


@pytest.mark.asyncio
async def test_paypal_refund_uses_capture_id(paypal, paypal_stub):
    paypal_stub.order_status = "COMPLETED"

    result = await paypal.refund("ORDER-1", 30000, "USD", "booking_cancelled")

    assert result.refund_id == "REFUND-1"
    refund_body = json.loads(paypal_stub.requests[-1].content)
    assert refund_body["amount"] == {"value": "300.00", "currency_code": "USD"}


# Error mapping

def _provider_with(handler) -> TransFiProvider:
    return TransFiProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url=TRANSFI_URL,
        api_key="api-key",
        secret_key="secret-key",
        webhook_secret="webhook-secret",
        return_url="https://app.test/return",
        cancel_url="https://app.test/cancel",
        timeout=2.0,
    )


@pytest.mark.asyncio
async def test_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderTimeoutError) as exc_info:
        await _provider_with(handler).capture_result("pi_1")

    assert exc_info.value.status_code == 504
    assert exc_info.value.problem_details["retryable"] is True


@pytest.mark.asyncio
async def test_transport_error_maps_to_provider_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await _provider_with(handler).capture_result("pi_1")

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [500, 502, 429])
async def test_server_errors_map_to_provider_unavailable(status_code):
    with pytest.raises(ProviderUnavailableError):
        await _provider_with(lambda request: httpx.Response(status_code)).capture_result("pi_1")


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 422])
async def test_client_errors_map_to_provider_rejected(status_code):
    with pytest.raises(ProviderRejectedError) as exc_info:
        await _provider_with(lambda request: httpx.Response(status_code, json={})).capture_result("pi_1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.problem_details["retryable"] is False


@pytest.mark.asyncio
async def test_malformed_body_maps_to_provider_unavailable():
    with pytest.raises(ProviderUnavailableError):
        await _provider_with(lambda request: httpx.Response(200, content=b"<html>")).capture_result("pi_1")


# TransFi

@pytest.mark.asyncio
async def test_transfi_open_session_signs_request_body():
    seen: list[httpx.Request] = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "pi_1", "payment_url": "https://pay.transfi.test/pi_1"})

    session = await _provider_with(handler).open_session(make_booking())

    assert session.provider_session_id == "pi_1"
    assert session.redirect_url == "https://pay.transfi.test/pi_1"
    request = seen[0]
    assert request.url.path == "/v1/payments/intent"
    assert request.headers["Authorization"] == "Bearer api-key"
    assert request.headers["X-Signature"] == sign("secret-key", request.content)
    assert json.loads(request.content)["amount"] == "300.00"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,outcome",
    [
        ("completed", CallbackOutcome.CAPTURED),
        ("failed", CallbackOutcome.DENIED),
        ("expired", CallbackOutcome.DENIED),
        ("processing", CallbackOutcome.PENDING),
    ],
)
async def test_transfi_capture_result_status_mapping(status, outcome):
    body = {"id": "pi_1", "status": status, "amount": "300.00", "currency": "USD"}

    result = await _provider_with(lambda request: httpx.Response(200, json=body)).capture_result("pi_1")

    assert result.outcome is outcome
    assert result.amount == 30000


@pytest.mark.asyncio
async def test_transfi_verify_callback_hmac():
    provider = _provider_with(lambda request: httpx.Response(500))
    raw = b'{"event":"payment.completed","data":{"payment_intent_id":"pi_1"}}'

    assert await provider.verify_callback(raw, {"X-TransFi-Signature": sign("webhook-secret", raw)}) is True
    assert await provider.verify_callback(raw, {SIGNATURE_HEADER: sign("wrong-secret", raw)}) is False
    assert await provider.verify_callback(raw, {}) is False


def test_transfi_parse_callback():
    provider = _provider_with(lambda request: httpx.Response(500))
    raw = json.dumps({
        "id": "evt_1",
        "event": "payment.completed",
        "data": {"payment_intent_id": "pi_1", "amount": "300.00", "currency": "USD"},
    }).encode()

    callback = provider.parse_callback(raw)

    assert callback.outcome is CallbackOutcome.CAPTURED
    assert callback.provider_session_id == "pi_1"
    assert callback.amount == 30000
    assert callback.currency == "USD"


def test_transfi_parse_failed_callback():
    provider = _provider_with(lambda request: httpx.Response(500))
    raw = json.dumps({"event": "payment.failed", "data": {"id": "pi_1", "failure_reason": "insufficient_funds"}}).encode()

    callback = provider.parse_callback(raw)

    assert callback.outcome is CallbackOutcome.DENIED
    assert callback.failure_reason == "insufficient_funds"


@pytest.mark.asyncio
async def test_transfi_refund():
    seen: list[httpx.Request] = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "rf_1", "status": "pending"})

    result = await _provider_with(handler).refund("pi_1", 30000, "USD", "booking_cancelled")

    assert result.refund_id == "rf_1"
    body = json.loads(seen[0].content)
    assert body == {
        "payment_intent_id": "pi_1",
        "amount": "300.00",
        "currency": "USD",
        "reason": "booking_cancelled",
        "reference_id": "refund-pi_1",
    }


# Registry

def test_registry_only_registers_configured_providers():
    client = httpx.AsyncClient()
    config = Settings(
        transfi_api_key="key",
        transfi_secret_key="secret",
        paypal_client_id="",
        paypal_client_secret="",
    )

    registry = build_provider_registry(client, config)

    assert registry.provider_ids == ["transfi"]
    assert "paypal" not in registry


def test_registry_unknown_provider():
    with pytest.raises(NotFoundError):
        ProviderRegistry().get("paypal")
