"""Assistant configuration returned to the voice provider at call start.

The payload is data, not logic: a profile is picked from the tenant's
feature flags and rendered into the provider's assistant schema.
"""
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from .clock import utcnow
from .tenant_directory import tenant_timezone


BASE_PROMPT = (
    "You are a friendly and professional receptionist answering calls for {business_name}.\n\n"
    "Your goals:\n"
    "1. Greet the caller warmly\n"
    "2. Ask how you can help them today\n"
    "3. Listen actively and respond naturally\n"
    "4. Collect their name and contact details if they want a callback\n"
    "5. Thank them for calling before ending\n\n"
    "Be conversational, empathetic, and efficient. Keep responses concise (1-2 sentences max).\n"
    "Today is {today} ({timezone})."
)

SCHEDULING_PROMPT = (
    "\n\nYou can book appointments. When the caller wants one:\n"
    "- Ask which day they prefer and whether morning, afternoon or evening suits them.\n"
    "- Call checkAvailability with the date (YYYY-MM-DD) and time preference, then offer up to three times.\n"
    "- Collect their full name and email address, and read the email back to confirm it.\n"
    "- Call createBooking with the chosen startTime exactly as returned by checkAvailability.\n"
    "- If the time was taken, apologise and offer other times.\n"
    "Never promise a booking before createBooking confirms it."
)

CALLBACK_PROMPT = (
    "\n\nYou cannot book appointments directly. If the caller wants one, take their name, "
    "phone number and preferred time and tell them the team will call back to confirm."
)

CHECK_AVAILABILITY_FUNCTION: Dict[str, Any] = {
    "name": "checkAvailability",
    "description": "Look up open appointment times for a given day.",
    "parameters": {
        "type": "object",
        "properties": {
            "date": {"type": "string", "description": "Day to check, formatted YYYY-MM-DD"},
            "timePreference": {
                "type": "string",
                "enum": ["morning", "afternoon", "evening", "any"],
                "description": "Part of the day the caller prefers",
            },
        },
        "required": ["date"],
    },
}

CREATE_BOOKING_FUNCTION: Dict[str, Any] = {
    "name": "createBooking",
    "description": "Book an appointment at a start time returned by checkAvailability.",
    "parameters": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Caller's full name"},
            "email": {"type": "string", "description": "Caller's email address"},
            "phone": {"type": "string", "description": "Caller's phone number, if different from the calling number"},
            "startTime": {"type": "string", "description": "Appointment start as an ISO 8601 instant"},
            "notes": {"type": "string", "description": "Reason for the appointment"},
        },
        "required": ["name", "email", "startTime"],
    },
}


@dataclass(frozen=True)
class AssistantProfile:
    key: str
    first_message: str
    end_call_message: str
    prompt_suffix: str = ""
    functions: tuple = ()


GENERIC_PROFILE = AssistantProfile(
    key="generic",
    first_message="Hello! Thanks for calling. How can I help you today?",
    end_call_message="Thank you for calling! Have a great day.",
)

RECEPTIONIST_PROFILE = AssistantProfile(
    key="receptionist",
    first_message="Hello! Thanks for calling {business_name}. How can I help you today?",
    end_call_message="Thank you for calling {business_name}! Have a great day.",
    prompt_suffix=CALLBACK_PROMPT,
)

SCHEDULING_PROFILE = AssistantProfile(
    key="scheduling",
    first_message="Hello! Thanks for calling {business_name}. How can I help you today?",
    end_call_message="Thank you for calling {business_name}! Have a great day.",
    prompt_suffix=SCHEDULING_PROMPT,
    functions=(CHECK_AVAILABILITY_FUNCTION, CREATE_BOOKING_FUNCTION),
)


def select_profile(tenant: Optional[Dict[str, Any]], scheduling_enabled: bool) -> AssistantProfile:
    if not tenant:
        return GENERIC_PROFILE
    if scheduling_enabled:
        return SCHEDULING_PROFILE
    return RECEPTIONIST_PROFILE


def _model_settings() -> Dict[str, Any]:
    return {
        "provider": os.getenv("VAPI_MODEL_PROVIDER", "openai"),
        "model": os.getenv("VAPI_MODEL", "gpt-4o-mini"),
        "temperature": 0.7,
        "maxTokens": 150,
    }


def _voice_settings() -> Dict[str, Any]:
    return {
        "provider": os.getenv("VAPI_VOICE_PROVIDER", "11labs"),
        "voiceId": os.getenv("VAPI_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
    }


def build_assistant_config(tenant: Optional[Dict[str, Any]], scheduling_enabled: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
    profile = select_profile(tenant, scheduling_enabled)
    tz_name = tenant_timezone(tenant)
    local_now = (now or utcnow()).astimezone(ZoneInfo(tz_name))
    values = {
        "business_name": (tenant or {}).get("name") or "our office",
        "today": f"{local_now.strftime('%A, %B')} {local_now.day}, {local_now.year}",
        "timezone": tz_name,
    }
    model = _model_settings()
    model["messages"] = [{"role": "system", "content": (BASE_PROMPT + profile.prompt_suffix).format(**values)}]
    functions: List[Dict[str, Any]] = list(profile.functions)
    if functions:
        model["functions"] = functions

    config: Dict[str, Any] = {
        "name": f"{values['business_name']} receptionist"[:40],
        "model": model,
        "voice": _voice_settings(),
        "firstMessage": profile.first_message.format(**values),
        "endCallMessage": profile.end_call_message.format(**values),
        "recordingEnabled": True,
        "metadata": {"profile": profile.key},
    }
    if tenant:
        config["metadata"]["business_id"] = tenant["id"]
    return config
