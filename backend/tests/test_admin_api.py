import base64
import json
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from receptionist.main import app
from receptionist.services import call_ledger
from receptionist.services.calcom_client import CalcomClient
from receptionist.services.clock import utcnow
from receptionist.services.errors import SlotUnavailable
from receptionist.services.transcript_sequencer import get_sequencer


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def calcom():
    mock = AsyncMock()
    mock.create_booking.return_value = {"id": 11, "uid": "uid-11"}
    with patch("receptionist.services.booking_bridge.CalcomClient", return_value=mock):
        yield mock


def booking_body(business_id, **overrides):
    body = {
        "businessId": business_id,
        "name": "Jane Doe",
        "email": "jane@example.com",
        "phone": "+15559870000",
        "start": (utcnow() + timedelta(days=2)).replace(microsecond=0).isoformat(),
    }
    body.update(overrides)
    return body


def test_health(client):
    assert client.get("/").json() == {"status": "ok"}


class TestBookingEndpoints:
    def test_book_success(self, client, business, calcom):
        response = client.post("/api/calcom/book", json=booking_body(business["id"]))
        assert response.status_code == 201
        assert response.json()["status"] == "confirmed"
        assert response.json()["calcom_uid"] == "uid-11"

    def test_past_start_is_400(self, client, business, calcom):
        past = (utcnow() - timedelta(days=1)).isoformat()
        response = client.post("/api/calcom/book", json=booking_body(business["id"], start=past))
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

    def test_missing_business_is_400(self, client, calcom):
        response = client.post("/api/calcom/book", json=booking_body(None))
        assert response.status_code == 400

    def test_unknown_business_is_404(self, client, calcom):
        response = client.post("/api/calcom/book", json=booking_body("no-such-business"))
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_slot_taken_is_409(self, client, business, calcom):
        calcom.create_booking.side_effect = SlotUnavailable("taken")
        response = client.post("/api/calcom/book", json=booking_body(business["id"]))
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "slot_unavailable"

    def test_not_connected_is_400(self, client, plain_business, calcom):
        response = client.post("/api/calcom/book", json=booking_body(plain_business["id"]))
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "not_configured"

    def test_availability(self, client, business, calcom):
        calcom.available_slots.return_value = ["2030-01-15T14:00:00.000Z"]
        response = client.get("/api/calcom/availability", params={"businessId": business["id"], "date": "2030-01-15"})
        assert response.status_code == 200
        assert response.json()["availableSlots"] == [{"iso": "2030-01-15T14:00:00.000Z", "time": "9:00 AM"}]
        assert response.json()["count"] == 1

    def test_get_cancel_reschedule(self, client, business, calcom):
        booking = client.post("/api/calcom/book", json=booking_body(business["id"])).json()
        calcom.reschedule_booking.return_value = {"uid": "uid-12"}
        new_start = (utcnow() + timedelta(days=5)).replace(microsecond=0).isoformat()

        fetched = client.get(f"/api/calcom/bookings/{booking['id']}")
        moved = client.post(f"/api/calcom/bookings/{booking['id']}/reschedule", json={"businessId": business["id"], "start": new_start})
        cancelled = client.post(f"/api/calcom/bookings/{booking['id']}/cancel", json={"businessId": business["id"], "reason": "Sick"})

        assert fetched.json()["id"] == booking["id"]
        assert moved.json()["calcom_uid"] == "uid-12"
        assert cancelled.json()["status"] == "cancelled"
        calcom.cancel_booking.assert_awaited_once_with("access-1", "uid-12", "Sick")

    def test_unknown_booking_is_404(self, client):
        assert client.get("/api/calcom/bookings/nope").status_code == 404


class TestCalcomOAuth:
    @pytest.fixture(autouse=True)
    def oauth_env(self, monkeypatch):
        monkeypatch.setenv("CALCOM_CLIENT_ID", "client-1")
        monkeypatch.setenv("CALCOM_CLIENT_SECRET", "secret-1")
        monkeypatch.setenv("CALCOM_REDIRECT_URI", "https://api.test/api/calcom/oauth")

    def test_connect_returns_authorization_url(self, client, plain_business):
        response = client.get("/api/calcom/connect", params={"businessId": plain_business["id"]})
        assert response.status_code == 200
        assert "client_id=client-1" in response.json()["authorizationUrl"]

    def test_callback_stores_credentials(self, client, plain_business, store, monkeypatch):
        monkeypatch.setenv("DASHBOARD_URL", "https://dash.test/settings")
        encoded = CalcomClient().encode_state(plain_business["id"])
        with patch.object(CalcomClient, "exchange_code", AsyncMock(return_value={
            "access_token": "a1", "refresh_token": "r1", "expires_at": "2030-01-01T00:00:00+00:00",
        })), patch.object(CalcomClient, "list_event_types", AsyncMock(return_value=[
            {"id": 7, "hidden": True}, {"id": 8, "hidden": False},
        ])):
            response = client.get("/api/calcom/oauth", params={"code": "c1", "state": encoded}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "https://dash.test/settings?calcom=connected"
        stored = store.get_business(plain_business["id"])
        assert stored["calcom_enabled"] is True
        assert stored["calcom_event_type_id"] == 8
        assert stored["calcom_access_token"] == "a1"

    def test_callback_with_bad_state(self, client):
        response = client.get("/api/calcom/oauth", params={"code": "c1", "state": "garbage"}, follow_redirects=False)
        assert response.status_code == 400

    def test_callback_with_forged_state_stores_nothing(self, client, plain_business, store):
        forged = base64.b64encode(json.dumps({"businessId": plain_business["id"]}).encode()).decode()
        with patch.object(CalcomClient, "exchange_code", AsyncMock()) as exchange:
            response = client.get("/api/calcom/oauth", params={"code": "c1", "state": forged}, follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Invalid state"
        exchange.assert_not_awaited()
        assert store.get_business(plain_business["id"]).get("calcom_access_token") is None


class TestCallEndpoints:
    def test_list_and_get_with_turns(self, client, business):
        call = call_ledger.upsert_call(business["id"], "vapi-1", {"status": "in-progress", "from_phone": "+15559870000"})
        get_sequencer().append_turn(call["id"], "user", "Hello")

        listing = client.get("/api/calls/", params={"businessId": business["id"]}).json()
        detail = client.get(f"/api/calls/{call['id']}").json()

        assert listing["total"] == 1
        assert listing["items"][0]["id"] == call["id"]
        assert detail["turns"][0]["text"] == "Hello"
        assert detail["turns"][0]["sequence_number"] == 1

    def test_missing_call_is_404(self, client):
        assert client.get("/api/calls/nope").status_code == 404


class TestDigestTrigger:
    def test_secret_not_configured_is_500(self, client):
        assert client.post("/api/cron/daily-digest").status_code == 500

    def test_wrong_secret_is_401(self, client, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "cron-1")
        assert client.post("/api/cron/daily-digest", headers={"x-cron-secret": "nope"}).status_code == 401

    def test_run_reports_counts(self, client, business, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "cron-1")
        monkeypatch.setenv("RESEND_API_KEY", "re_test")
        monkeypatch.setenv("EMAIL_FROM", "digest@receptionist.test")
        resend = Mock()
        resend.Emails.send.return_value = {"id": "email_1"}
        with patch("receptionist.services.email_client.resend", resend):
            response = client.post("/api/cron/daily-digest", params={"window": "today"}, headers={"x-cron-secret": "cron-1"})

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "sent": 1, "errors": []}
        params = resend.Emails.send.call_args.args[0]
        assert params["to"] == ["front@acme.test"]
        assert params["from"] == "digest@receptionist.test"

    def test_email_not_configured_is_400(self, client, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "cron-1")
        response = client.post("/api/cron/daily-digest", headers={"x-cron-secret": "cron-1"})
        assert response.status_code == 400
