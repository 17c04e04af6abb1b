"""Integration tests for API endpoints."""

from uuid import uuid4

import pytest

from conftest import FAKE_SIGNATURE, FAKE_SIGNATURE_HEADER, auth_headers, callback_body, future_date
from reservation_engine.core.exceptions import ProviderRejectedError
from reservation_engine.models import BookingStatus

RENTER_HEADERS = auth_headers("renter_1")


def reservation_data(vehicle, start_offset: int = 30, nights: int = 3) -> dict:
    return {
        "vehicle_id": str(vehicle.id),
        "start_date": future_date(start_offset).isoformat(),
        "end_date": future_date(start_offset + nights).isoformat(),
    }


async def create_reservation(test_client, vehicle, **kwargs) -> dict:
    response = await test_client.post(
        "/v1/reservation/create", json=reservation_data(vehicle, **kwargs), headers=RENTER_HEADERS
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_reservation_endpoint(test_client, vehicle):
    response = await test_client.post(
        "/v1/reservation/create", json=reservation_data(vehicle), headers=RENTER_HEADERS
    )

    assert response.status_code == 201
    data = response.json()
    assert data["renter_id"] == "renter_1"
    assert data["status"] == "pending"
    assert data["nights"] == 3
    assert data["nightly_rate"] == {"amount": 10000, "currency": "USD"}
    assert data["total"] == {"amount": 30000, "currency": "USD"}
    assert data["version"] == 1
    assert "id" in data
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_create_reservation_missing_auth(test_client, vehicle):
    response = await test_client.post("/v1/reservation/create", json=reservation_data(vehicle))

    assert response.status_code == 401
    data = response.json()
    assert data["status"] == 401
    assert "authorization" in data["title"].lower()


@pytest.mark.asyncio
async def test_create_reservation_bad_token(test_client, vehicle):
    response = await test_client.post(
        "/v1/reservation/create",
        json=reservation_data(vehicle),
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_reservation_for_someone_else_requires_admin(test_client, vehicle):
    data = {**reservation_data(vehicle), "renter_id": "renter_2"}

    forbidden = await test_client.post("/v1/reservation/create", json=data, headers=RENTER_HEADERS)
    allowed = await test_client.post("/v1/reservation/create", json=data, headers=auth_headers("ops", ["admin"]))

    assert forbidden.status_code == 403
    assert allowed.status_code == 201
    assert allowed.json()["renter_id"] == "renter_2"


@pytest.mark.asyncio
async def test_create_reservation_rejects_timestamps(test_client, vehicle):
    data = {**reservation_data(vehicle), "start_date": f"{future_date(30).isoformat()}T10:00:00"}

    response = await test_client.post("/v1/reservation/create", json=data, headers=RENTER_HEADERS)

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == 400
    assert "violations" in body
    assert body["violations"][0]["path"] == "start_date"


@pytest.mark.asyncio
async def test_create_reservation_end_before_start(test_client, vehicle):
    data = {
        "vehicle_id": str(vehicle.id),
        "start_date": future_date(30).isoformat(),
        "end_date": future_date(30).isoformat(),
    }

    response = await test_client.post("/v1/reservation/create", json=data, headers=RENTER_HEADERS)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_reservation_unknown_vehicle(test_client):
    data = {
        "vehicle_id": str(uuid4()),
        "start_date": future_date(30).isoformat(),
        "end_date": future_date(32).isoformat(),
    }

    response = await test_client.post("/v1/reservation/create", json=data, headers=RENTER_HEADERS)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_overlapping_reservation_conflict(test_client, vehicle):
    first = await create_reservation(test_client, vehicle, start_offset=30, nights=5)

    response = await test_client.post(
        "/v1/reservation/create",
        json=reservation_data(vehicle, start_offset=34, nights=4),
        headers=auth_headers("renter_2"),
    )

    assert response.status_code == 409
    conflict = response.json()["conflicting_resource"]
    assert conflict["booking_id"] == first["id"]
    assert conflict["start_date"] == first["start_date"]
    assert conflict["end_date"] == first["end_date"]


@pytest.mark.asyncio
async def test_cancel_reservation_endpoint(test_client, vehicle):
    booking = await create_reservation(test_client, vehicle)

    response = await test_client.post(
        "/v1/reservation/cancel", json={"booking_id": booking["id"]}, headers=RENTER_HEADERS
    )
    repeat = await test_client.post(
        "/v1/reservation/cancel", json={"booking_id": booking["id"]}, headers=RENTER_HEADERS
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "applied"
    assert response.json()["reservation"]["status"] == "cancelled"
    assert repeat.status_code == 200
    assert repeat.json()["outcome"] == "already_terminal"


@pytest.mark.asyncio
async def test_get_reservation_access_control(test_client, vehicle):
    booking = await create_reservation(test_client, vehicle)
    payload = {"booking_id": booking["id"]}

    as_owner = await test_client.post("/v1/reservation/get", json=payload, headers=auth_headers("host_1"))
    as_stranger = await test_client.post("/v1/reservation/get", json=payload, headers=auth_headers("someone"))
    missing = await test_client.post(
        "/v1/reservation/get", json={"booking_id": str(uuid4())}, headers=RENTER_HEADERS
    )

    assert as_owner.status_code == 200
    assert as_owner.json()["id"] == booking["id"]
    assert as_stranger.status_code == 403
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_audit_trail_endpoint(test_client, vehicle):
    booking = await create_reservation(test_client, vehicle)
    await test_client.post("/v1/reservation/cancel", json={"booking_id": booking["id"]}, headers=RENTER_HEADERS)

    response = await test_client.post(
        "/v1/reservation/audit", json={"booking_id": booking["id"]}, headers=RENTER_HEADERS
    )

    assert response.status_code == 200
    entries = response.json()["entries"]
    assert [(e["sequence"], e["to_status"]) for e in entries] == [(1, "pending"), (2, "cancelled")]
    assert entries[1]["reason"] == "cancelled_by_renter"


@pytest.mark.asyncio
async def test_sweep_completed_requires_operator(test_client, vehicle, make_booking):
    await make_booking(vehicle, future_date(-5), future_date(-2), status=BookingStatus.CONFIRMED)
    payload = {"as_of": future_date(0).isoformat()}

    forbidden = await test_client.post("/v1/reservation/sweep-completed", json=payload, headers=RENTER_HEADERS)
    allowed = await test_client.post(
        "/v1/reservation/sweep-completed", json=payload, headers=auth_headers("cron", ["operator"])
    )

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json() == {"as_of": payload["as_of"], "completed_count": 1}


@pytest.mark.asyncio
async def test_payment_flow_through_webhook(test_client, vehicle, fake_provider):
    booking = await create_reservation(test_client, vehicle)

    opened = await test_client.post(
        "/v1/payment/open-session",
        json={"booking_id": booking["id"], "provider_id": "fake"},
        headers=RENTER_HEADERS,
    )
    assert opened.status_code == 201
    session = opened.json()
    assert session["status"] == "created"
    assert session["amount"] == {"amount": 30000, "currency": "USD"}

    body = callback_body(session["provider_session_id"], "captured", amount=30000)
    headers = {FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE, "Content-Type": "application/json"}
    delivered = await test_client.post("/v1/payment/webhook/fake", content=body, headers=headers)
    redelivered = await test_client.post("/v1/payment/webhook/fake", content=body, headers=headers)

    assert delivered.status_code == 200
    assert delivered.json()["result"] == "applied"
    assert delivered.json()["booking_status"] == "confirmed"
    assert redelivered.status_code == 200
    assert redelivered.json()["result"] == "already_processed"

    fetched = await test_client.post("/v1/reservation/get", json={"booking_id": booking["id"]}, headers=RENTER_HEADERS)
    assert fetched.json()["status"] == "confirmed"
    assert fetched.json()["payment_provider"] == "fake"


@pytest.mark.asyncio
async def test_open_session_unknown_provider(test_client, vehicle):
    booking = await create_reservation(test_client, vehicle)

    response = await test_client.post(
        "/v1/payment/open-session",
        json={"booking_id": booking["id"], "provider_id": "stripe"},
        headers=RENTER_HEADERS,
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_invalid_signature(test_client):
    response = await test_client.post(
        "/v1/payment/webhook/fake",
        content=callback_body("fake-anything", "captured", amount=100),
        headers={FAKE_SIGNATURE_HEADER: "forged"},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_webhook_unknown_session_acknowledged(test_client):
    response = await test_client.post(
        "/v1/payment/webhook/fake",
        content=callback_body("never-opened", "captured", amount=100),
        headers={FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "result": "dropped", "booking_id": None, "booking_status": None}


@pytest.mark.asyncio
async def test_webhook_provider_failure_answers_bare_503(test_client, vehicle, fake_provider):
    booking = await create_reservation(test_client, vehicle)
    opened = await test_client.post(
        "/v1/payment/open-session",
        json={"booking_id": booking["id"], "provider_id": "fake"},
        headers=RENTER_HEADERS,
    )
    fake_provider.fail_with = ProviderRejectedError("fake", "capture_result", detail="order ORDER-1 rejected: token=abc")

    response = await test_client.post(
        "/v1/payment/webhook/fake",
        content=callback_body(opened.json()["provider_session_id"], "requires_capture"),
        headers={FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE},
    )

    assert response.status_code == 503
    assert response.content == b""

    fetched = await test_client.post("/v1/reservation/get", json={"booking_id": booking["id"]}, headers=RENTER_HEADERS)
    assert fetched.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_metrics_endpoint(test_client):
    """Test the Prometheus metrics endpoint."""
    response = await test_client.get("/metrics")

    assert response.status_code == 200
    assert "reservations_created_total" in response.text


def test_openapi_documents_problem_responses(test_app):
    schema = test_app.openapi()

    assert {"Problem", "ConflictingInterval", "Violation"} <= set(schema["components"]["schemas"])
    create = schema["paths"]["/v1/reservation/create"]["post"]["responses"]
    assert {"201", "401", "403", "409"} <= set(create)
