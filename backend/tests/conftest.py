"""Shared fixtures: every test runs against a fresh in-memory store."""
from datetime import timedelta

import pytest

from receptionist import db as db_module
from receptionist.services import transcript_sequencer
from receptionist.services.clock import utcnow

PROVIDER_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "VAPI_WEBHOOK_SECRET",
    "CRON_SECRET",
    "RESEND_API_KEY",
    "EMAIL_FROM",
    "DASHBOARD_URL",
    "GROQ_API_KEY",
    "OPENAI_API_KEY",
    "DEFAULT_TIMEZONE",
    "CALCOM_CLIENT_ID",
    "CALCOM_CLIENT_SECRET",
    "CALCOM_REDIRECT_URI",
)

BUSINESS_PHONE = "+15551230000"
CALLER_PHONE = "+15559870000"


@pytest.fixture(autouse=True)
def store(monkeypatch):
    """Fresh InMemoryDB installed as the process-wide store."""
    for var in PROVIDER_ENV:
        monkeypatch.delenv(var, raising=False)
    memory = db_module.InMemoryDB()
    monkeypatch.setattr(db_module, "_db_instance", memory)
    monkeypatch.setattr(transcript_sequencer, "_sequencer", None)
    return memory


@pytest.fixture
def business(store):
    """Active business with a mapped number and a connected calendar."""
    record = store.add_business(
        name="Acme Dental",
        email="front@acme.test",
        timezone="America/New_York",
        calcom_enabled=True,
        calcom_access_token="access-1",
        calcom_refresh_token="refresh-1",
        calcom_token_expires_at=(utcnow() + timedelta(days=7)).isoformat(),
        calcom_event_type_id=42,
    )
    store.add_phone_number(record["id"], BUSINESS_PHONE)
    return record


@pytest.fixture
def plain_business(store):
    """Active business without any scheduling integration."""
    record = store.add_business(name="Bob's Plumbing", email="bob@plumbing.test")
    store.add_phone_number(record["id"], "+15550001111")
    return record
