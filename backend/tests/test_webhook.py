from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from receptionist.main import app
from receptionist.services.clock import utcnow

WEBHOOK = "/api/vapi/webhook"
BUSINESS_PHONE = "+15551230000"
CALLER_PHONE = "+15559870000"


@pytest.fixture
def client():
    return TestClient(app)


def event(event_type, call_id="vapi-call-1", dialed=BUSINESS_PHONE, **fields):
    message = {
        "type": event_type,
        "call": {
            "id": call_id,
            "type": "inboundPhoneCall",
            "phoneNumber": {"number": dialed},
            "customer": {"number": CALLER_PHONE},
        },
    }
    message.update(fields)
    return {"message": message}


def function_call(fn, **parameters):
    return event("function-call", functionCall={"name": fn, "parameters": parameters})


def only_call(store):
    assert len(store.calls) == 1
    return next(iter(store.calls.values()))


class TestAssistantRequest:
    def test_unmapped_number_gets_generic_assistant(self, client, store):
        response = client.post(WEBHOOK, json=event("assistant-request", dialed="+19998887777"))

        assert response.status_code == 200
        assistant = response.json()["assistant"]
        assert assistant["metadata"]["profile"] == "generic"
        assert "functions" not in assistant["model"]
        assert store.calls == {}

    def test_scheduling_business_gets_booking_functions(self, client, business, store):
        response = client.post(WEBHOOK, json=event("assistant-request"))

        assistant = response.json()["assistant"]
        assert assistant["metadata"] == {"profile": "scheduling", "business_id": business["id"]}
        assert [f["name"] for f in assistant["model"]["functions"]] == ["checkAvailability", "createBooking"]
        assert "Acme Dental" in assistant["firstMessage"]
        call = only_call(store)
        assert call["status"] == "queued"
        assert call["from_phone"] == CALLER_PHONE
        assert call["to_phone"] == BUSINESS_PHONE

    def test_business_without_calendar_gets_callback_assistant(self, client, plain_business):
        response = client.post(WEBHOOK, json=event("assistant-request", dialed="+15550001111"))
        assistant = response.json()["assistant"]
        assert assistant["metadata"]["profile"] == "receptionist"
        assert "functions" not in assistant["model"]

    def test_store_failure_still_returns_assistant(self, client, business, store, monkeypatch):
        def broken(row):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "insert_call", broken)
        response = client.post(WEBHOOK, json=event("assistant-request"))

        assert response.status_code == 200
        assert response.json()["assistant"]["metadata"]["profile"] == "scheduling"


class TestTranscript:
    def test_two_final_turns_get_two_sequence_numbers(self, client, business, store):
        client.post(WEBHOOK, json=event("transcript", role="user", transcriptType="final", transcript="Hi, I need a cleaning."))
        client.post(WEBHOOK, json=event("transcript", role="assistant", transcriptType="final", transcript="Sure, which day?"))

        call = only_call(store)
        turns = store.list_transcript_turns(call["id"])
        assert [(t["sequence_number"], t["role"]) for t in turns] == [(1, "user"), (2, "assistant")]

    def test_partial_transcripts_are_skipped(self, client, business, store):
        response = client.post(WEBHOOK, json=event("transcript", role="user", transcriptType="partial", transcript="Hi I ne"))
        assert response.json() == {"received": True}
        assert store.transcripts == []

    def test_transcript_without_call_id_is_ignored(self, client, business, store):
        for text in ("Hello?", "Is anyone there?"):
            response = client.post(WEBHOOK, json=event("transcript", call_id=None, role="user", transcriptType="final", transcript=text))
            assert response.json() == {"received": True}
        assert store.calls == {}
        assert store.transcripts == []

    def test_assistant_request_without_call_id_records_nothing(self, client, business, store):
        response = client.post(WEBHOOK, json=event("assistant-request", call_id=None))
        assert response.json()["assistant"]["metadata"]["profile"] == "scheduling"
        assert store.calls == {}

    def test_status_update_without_call_id_is_ignored(self, client, business, store):
        response = client.post(WEBHOOK, json=event("status-update", call_id=None, status="in-progress"))
        assert response.json() == {"received": True}
        assert store.calls == {}

    def test_transcript_before_assistant_request_creates_call(self, client, business, store):
        client.post(WEBHOOK, json=event("transcript", role="user", transcriptType="final", transcript="Hello?"))
        client.post(WEBHOOK, json=event("assistant-request"))
        assert len(store.calls) == 1


class TestFunctionCall:
    def test_booking_in_the_past_returns_error_sentence(self, client, business, store):
        past = (utcnow() - timedelta(hours=1)).isoformat()
        with patch("receptionist.services.booking_bridge.CalcomClient") as calcom_cls:
            response = client.post(WEBHOOK, json=function_call(
                "createBooking", name="Jane Doe", email="jane@example.com", startTime=past,
            ))

        assert response.status_code == 200
        body = response.json()
        assert "future" in body["error"]
        assert "result" not in body
        calcom_cls.assert_not_called()
        assert store.bookings == {}

    def test_booking_success_links_call(self, client, business, store):
        start = (utcnow() + timedelta(days=2)).replace(microsecond=0).isoformat()
        calcom = AsyncMock()
        calcom.create_booking.return_value = {"id": 5, "uid": "uid-5"}
        with patch("receptionist.services.booking_bridge.CalcomClient", return_value=calcom):
            response = client.post(WEBHOOK, json=function_call(
                "createBooking", name="Jane Doe", email="jane@example.com", startTime=start,
            ))

        assert "You're all set, Jane Doe" in response.json()["result"]
        booking = next(iter(store.bookings.values()))
        call = only_call(store)
        assert booking["call_id"] == call["id"]
        assert booking["customer_phone"] == CALLER_PHONE

    def test_check_availability_speaks_local_times(self, client, business):
        calcom = AsyncMock()
        calcom.available_slots.return_value = ["2030-01-15T14:00:00.000Z", "2030-01-15T18:00:00.000Z"]
        with patch("receptionist.services.booking_bridge.CalcomClient", return_value=calcom):
            response = client.post(WEBHOOK, json=function_call("checkAvailability", date="2030-01-15", timePreference="any"))

        result = response.json()["result"]
        assert "9:00 AM and 1:00 PM" in result
        assert "2030-01-15T14:00:00.000Z" in result

    def test_slot_taken_prompts_reselection(self, client, business):
        from receptionist.services.errors import SlotUnavailable

        start = (utcnow() + timedelta(days=2)).isoformat()
        calcom = AsyncMock()
        calcom.create_booking.side_effect = SlotUnavailable("taken")
        with patch("receptionist.services.booking_bridge.CalcomClient", return_value=calcom):
            response = client.post(WEBHOOK, json=function_call(
                "createBooking", name="Jane Doe", email="jane@example.com", startTime=start,
            ))

        assert "other available times" in response.json()["error"]

    def test_parameters_as_json_string(self, client, business):
        payload = event("function-call", functionCall={"name": "checkAvailability", "parameters": '{"date": "not-a-date"}'})
        response = client.post(WEBHOOK, json=payload)
        assert "Which day" in response.json()["error"]

    def test_unknown_function(self, client, business):
        response = client.post(WEBHOOK, json=function_call("transferToPluto"))
        assert response.status_code == 200
        assert "error" in response.json()

    def test_unmapped_number_cannot_book(self, client):
        response = client.post(WEBHOOK, json=event(
            "function-call",
            dialed="+19998887777",
            functionCall={"name": "createBooking", "parameters": {}},
        ))
        assert "call you back" in response.json()["error"]


class TestEndOfCallReport:
    def report(self, **fields):
        base = {
            "endedReason": "customer-ended-call",
            "startedAt": "2024-01-15T14:00:00.000Z",
            "endedAt": "2024-01-15T14:03:00.000Z",
            "transcript": "User: I'd like to book an appointment.\nAI: Sure, thanks for calling!",
            "analysis": {"summary": "Caller asked to book an appointment."},
            "recordingUrl": "https://recordings.test/1.wav",
        }
        base.update(fields)
        return event("end-of-call-report", **base)

    def test_report_finalizes_call(self, client, business, store):
        response = client.post(WEBHOOK, json=self.report())

        assert response.json() == {"received": True}
        call = only_call(store)
        assert call["status"] == "completed"
        assert call["summary"] == "Caller asked to book an appointment."
        assert call["intent"] == "booking"
        assert call["duration_seconds"] == 180
        assert call["recording_url"] == "https://recordings.test/1.wav"
        assert call["ai_handled"] is True

    def test_repeated_report_is_idempotent(self, client, business, store):
        client.post(WEBHOOK, json=self.report())
        first = dict(only_call(store))
        client.post(WEBHOOK, json=self.report())
        second = only_call(store)

        for key in ("status", "summary", "intent", "sentiment", "duration_seconds", "ended_at"):
            assert first[key] == second[key]

    def test_late_status_update_does_not_regress(self, client, business, store):
        client.post(WEBHOOK, json=self.report())
        client.post(WEBHOOK, json=event("status-update", status="in-progress"))
        assert only_call(store)["status"] == "completed"

    def test_busy_call_marked_missed(self, client, business, store):
        client.post(WEBHOOK, json=self.report(endedReason="customer-busy", transcript=None, analysis=None))
        call = only_call(store)
        assert call["status"] == "busy"
        assert call["missed"] is True

    def test_escalation_keywords_flagged(self, client, business, store):
        client.post(WEBHOOK, json=self.report(transcript="User: This is an emergency, there's a gas leak."))
        assert only_call(store)["escalation_required"] is True

    def test_transcript_rebuilt_from_turns(self, client, business, store):
        client.post(WEBHOOK, json=event("transcript", role="user", transcriptType="final", transcript="What are your hours?"))
        client.post(WEBHOOK, json=self.report(transcript=None))
        assert only_call(store)["full_transcript"] == "user: What are your hours?"


class TestEnvelope:
    def test_malformed_body_acknowledged(self, client):
        response = client.post(WEBHOOK, content="not json", headers={"content-type": "application/json"})
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_unknown_event_type_acknowledged(self, client, business, store):
        response = client.post(WEBHOOK, json=event("speech-update", status="started"))
        assert response.json() == {"received": True}
        assert store.calls == {}

    def test_status_update_lifecycle(self, client, business, store):
        client.post(WEBHOOK, json=event("status-update", status="ringing"))
        client.post(WEBHOOK, json=event("status-update", status="in-progress", timestamp=1705327200000))
        call = only_call(store)
        assert call["status"] == "in-progress"
        assert call["started_at"] == "2024-01-15T14:00:00+00:00"

    def test_secret_required_when_configured(self, client, business, monkeypatch):
        monkeypatch.setenv("VAPI_WEBHOOK_SECRET", "s3cret")
        assert client.post(WEBHOOK, json=event("status-update", status="ringing")).status_code == 401
        ok = client.post(WEBHOOK, json=event("status-update", status="ringing"), headers={"x-vapi-secret": "s3cret"})
        assert ok.status_code == 200
