from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from bookme import auth
from bookme.auth import get_current_user
from bookme.database import get_db
from bookme.main import app
from bookme.services.blockchain_service import get_blockchain_service
from bookme.services.dispatcher import get_dispatcher
from bookme.services.eip712_signer import chain_booking_id_for, get_signer
from bookme.services.points_service import PointsService
from bookme.utils.time_utils import utcnow


@pytest.fixture
def session_user():
    return SimpleNamespace(user=None)


@pytest.fixture
def client(db, dispatcher, signer, session_user):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: session_user.user
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_signer] = lambda: signer
    app.dependency_overrides[get_blockchain_service] = lambda: None
    # No context manager: skips the lifespan hook and its create_all
    yield TestClient(app)
    app.dependency_overrides.clear()


def _as(session_user, user):
    session_user.user = user


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_create_booking_returns_authorization(client, session_user, service, customer):
    _as(session_user, customer)
    response = client.post(
        "/api/bookings",
        json={"service_id": str(service.id), "scheduled_at": (utcnow() + timedelta(days=2)).isoformat()},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["payment_status"] == "authorization_issued"
    assert body["booking"]["status"] == "pending_payment"
    assert body["authorization"]["amount"] == "100000000"
    assert body["blockchain_booking_id"] == chain_booking_id_for(body["booking"]["id"])


def test_slot_conflict_returns_conflicting_bookings(client, session_user, service, customer, factory):
    start = utcnow().replace(microsecond=0) + timedelta(days=2)
    existing = factory.booking(service, factory.user(), status="confirmed", scheduled_at=start)
    _as(session_user, customer)

    response = client.post(
        "/api/bookings",
        json={"service_id": str(service.id), "scheduled_at": (start + timedelta(minutes=15)).isoformat()},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Time slot not available"
    assert [b["id"] for b in body["conflicting_bookings"]] == [str(existing.id)]


def test_other_users_cannot_read_booking(client, session_user, service, customer, factory):
    booking = factory.booking(service, customer)
    _as(session_user, factory.user())
    response = client.get(f"/api/bookings/{booking.id}")
    assert response.status_code == 403
    assert response.json() == {"error": "Access denied"}


def test_unknown_booking(client, session_user, customer):
    _as(session_user, customer)
    response = client.get("/api/bookings/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404


def test_provider_confirms_over_patch(client, session_user, service, customer, provider, factory):
    booking = factory.booking(service, customer, status="paid")
    _as(session_user, provider)
    response = client.patch(f"/api/bookings/{booking.id}", json={"status": "confirmed"})
    assert response.status_code == 200
    assert response.json()["booking"]["status"] == "confirmed"


def test_invalid_transition_over_patch(client, session_user, service, customer, provider, factory):
    booking = factory.booking(service, customer, status="pending")
    _as(session_user, provider)
    response = client.patch(f"/api/bookings/{booking.id}", json={"status": "completed"})
    assert response.status_code == 403
    assert response.json()["error"] == "Only customer can mark service as complete"


@pytest.mark.parametrize("participant", ["customer", "provider"])
def test_patch_cannot_issue_payment_authorization(client, session_user, service, factory, participant, request):
    customer = request.getfixturevalue("customer")
    booking = factory.booking(service, customer, status="pending")
    _as(session_user, request.getfixturevalue(participant))

    response = client.patch(f"/api/bookings/{booking.id}", json={"status": "pending_payment"})
    assert response.status_code == 403
    assert response.json()["error"] == "Payment authorization is issued by the system"
    assert client.get(f"/api/bookings/{booking.id}").json()["booking"]["status"] == "pending"


def test_policies_and_refund_preview(client, session_user, policies, service, customer, factory):
    booking = factory.booking(service, customer, status="confirmed", starts_in=timedelta(hours=4))
    _as(session_user, customer)

    listed = client.get(f"/api/bookings/{booking.id}/cancellation-policies").json()["policies"]
    assert [p["reason_key"] for p in listed] == ["customer_late_cancel"]

    preview = client.post(f"/api/bookings/{booking.id}/refund-breakdown", json={"policy_id": listed[0]["id"]})
    assert preview.status_code == 200
    assert preview.json()["breakdown"]["customer_refund"] == "50.00"

    wrong = client.post(
        f"/api/bookings/{booking.id}/refund-breakdown", json={"policy_id": str(policies["customer_early_cancel"].id)}
    )
    assert wrong.status_code == 400


def test_cancel_with_policy_requires_acknowledgement(client, session_user, policies, service, customer, factory):
    booking = factory.booking(service, customer, status="confirmed", starts_in=timedelta(days=3))
    _as(session_user, customer)
    policy_id = str(policies["customer_early_cancel"].id)

    refused = client.post(
        f"/api/bookings/{booking.id}/cancel-with-policy", json={"policy_id": policy_id, "acknowledge_policy": False}
    )
    assert refused.status_code == 400
    assert refused.json()["error"] == "Must acknowledge cancellation policy"

    accepted = client.post(
        f"/api/bookings/{booking.id}/cancel-with-policy", json={"policy_id": policy_id, "acknowledge_policy": True}
    )
    assert accepted.status_code == 200
    assert accepted.json()["booking"]["status"] == "cancelled"
    assert accepted.json()["booking"]["refund_amount"] == "100.00"


def test_backend_completion_requires_internal_key(client, service, customer, factory, monkeypatch):
    booking = factory.booking(service, customer, status="in_progress", starts_in=timedelta(hours=-2))
    url = f"/api/bookings/{booking.id}/complete-service-backend"

    monkeypatch.setattr(auth, "INTERNAL_API_KEY", None)
    assert client.post(url, json={}).status_code == 503

    monkeypatch.setattr(auth, "INTERNAL_API_KEY", "s3cret")
    assert client.post(url, json={}, headers={"X-Internal-API-Key": "wrong"}).status_code == 401

    response = client.post(url, json={}, headers={"X-Internal-API-Key": "s3cret"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"


def test_availability_endpoint(client, session_user, factory, provider, customer):
    service = factory.service(provider, weekly_schedule={"monday": {"enabled": True, "start": "09:00", "end": "11:00"}})
    _as(session_user, customer)

    response = client.get(f"/api/services/{service.id}/availability", params={"date": "2030-01-07"})
    assert response.status_code == 200
    assert response.json()["available_slots"] == ["09:00", "09:30", "10:00"]

    assert client.get(f"/api/services/{service.id}/availability").status_code == 400
    assert client.get(f"/api/services/{service.id}/availability", params={"month": "2030-13"}).status_code == 400


def test_points_balance(client, session_user, db, customer):
    PointsService(db).award_points(customer.id, 1250, "Welcome bonus")
    _as(session_user, customer)

    body = client.get("/api/points/balance").json()
    assert body["balance"] == 1250
    assert body["available_usd"] == "12.50"

    history = client.get("/api/points/history").json()["transactions"]
    assert [t["amount"] for t in history] == [1250]
