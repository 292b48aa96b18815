"""Scheduling operations requested by the voice assistant or by administrative callers."""
import re
import logging
from datetime import date as date_cls, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..db import get_db
from .calcom_client import CalcomClient
from .call_ledger import merge_call_fields
from .clock import parse_timestamp, utcnow
from .errors import DuplicateRecord, NotConfigured, NotFound, SlotUnavailable, UpstreamError, ValidationError
from .tenant_directory import get_tenant, tenant_timezone

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)
TIME_PREFERENCES = {
    "morning": (6, 12),
    "afternoon": (12, 17),
    "evening": (17, 21),
    "any": (0, 24),
}
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DEFAULT_DURATION_MINUTES = 30


async def get_valid_access_token(tenant: Dict[str, Any], client: CalcomClient) -> str:
    """Return a usable Cal.com token, refreshing it when it expires within five minutes."""
    token = tenant.get("calcom_access_token")
    if not token:
        raise NotConfigured("Business not connected to Cal.com")
    expires_at = parse_timestamp(tenant.get("calcom_token_expires_at"))
    if expires_at is None or expires_at >= utcnow() + REFRESH_MARGIN:
        return token

    refresh_token = tenant.get("calcom_refresh_token")
    if not refresh_token:
        raise NotConfigured("Cal.com token expired and no refresh token is stored")
    logger.info(f"Refreshing Cal.com token for business {tenant['id']}")
    try:
        tokens = await client.refresh_token(refresh_token)
    except (UpstreamError, NotConfigured) as e:
        raise NotConfigured("Could not refresh Cal.com credentials") from e
    fields = {
        "calcom_access_token": tokens["access_token"],
        "calcom_refresh_token": tokens.get("refresh_token") or refresh_token,
        "calcom_token_expires_at": tokens["expires_at"],
    }
    get_db().update_business(tenant["id"], fields)
    tenant.update(fields)
    return tokens["access_token"]


def _require_event_type(tenant: Dict[str, Any]) -> Any:
    event_type_id = tenant.get("calcom_event_type_id")
    if not event_type_id:
        raise NotConfigured("No default event type configured for business")
    return event_type_id


def parse_date(value: Optional[str]) -> date_cls:
    if not value or not DATE_PATTERN.match(value):
        raise ValidationError("date must be in YYYY-MM-DD format", {"field": "date"})
    try:
        return date_cls.fromisoformat(value)
    except ValueError as e:
        raise ValidationError("date must be a real calendar date", {"field": "date"}) from e


def parse_start_time(value: Any, now: Optional[datetime] = None) -> datetime:
    """Validate a booking start: a well-formed instant strictly in the future."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("start time is required (ISO 8601 format)", {"field": "start_time"})
    start = parse_timestamp(value)
    if start is None:
        raise ValidationError("start time must be a valid ISO 8601 date-time string", {"field": "start_time"})
    if start <= (now or utcnow()):
        raise ValidationError("Appointment must be in the future", {"field": "start_time"})
    return start


def filter_slots_by_preference(slots: List[str], preference: str, tz_name: str) -> List[str]:
    lower, upper = TIME_PREFERENCES[preference]
    tz = ZoneInfo(tz_name)
    kept = []
    for slot in slots:
        dt = parse_timestamp(slot)
        if dt and lower <= dt.astimezone(tz).hour < upper:
            kept.append(slot)
    return kept


@retry(stop=stop_after_attempt(2), wait=wait_fixed(0.5), retry=retry_if_exception_type(UpstreamError), reraise=True)
async def _fetch_slots(client: CalcomClient, token: str, event_type_id: Any, start: str, end: str) -> List[str]:
    return await client.available_slots(token, event_type_id, start, end)


async def check_availability(tenant_id: str, day: str, time_preference: str = "any", client: Optional[CalcomClient] = None) -> List[str]:
    preference = (time_preference or "any").lower()
    if preference not in TIME_PREFERENCES:
        raise ValidationError(
            f"timePreference must be one of: {', '.join(TIME_PREFERENCES)}", {"field": "time_preference"}
        )
    requested = parse_date(day)
    tenant = get_tenant(tenant_id)
    event_type_id = _require_event_type(tenant)
    client = client or CalcomClient()
    token = await get_valid_access_token(tenant, client)

    tz_name = tenant_timezone(tenant)
    tz = ZoneInfo(tz_name)
    start = datetime.combine(requested, time.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(requested + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    slots = await _fetch_slots(client, token, event_type_id, start.isoformat(), end.isoformat())
    slots = filter_slots_by_preference(slots, preference, tz_name)
    logger.info(f"Found {len(slots)} available slots for business {tenant_id} on {day} ({preference})")
    return slots


def _validate_customer(customer: Dict[str, Any]) -> Dict[str, Any]:
    name = (customer.get("name") or "").strip()
    email = (customer.get("email") or "").strip()
    if not name:
        raise ValidationError("Customer name is required", {"field": "name"})
    if not email:
        raise ValidationError("Customer email is required", {"field": "email"})
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Please provide a valid email address", {"field": "email"})
    return {"name": name, "email": email, "phone": customer.get("phone")}


async def create_booking(
    tenant_id: str,
    call_id: Optional[str],
    customer: Dict[str, Any],
    start_time: str,
    notes: Optional[str] = None,
    client: Optional[CalcomClient] = None,
) -> Dict[str, Any]:
    start = parse_start_time(start_time)
    customer = _validate_customer(customer or {})
    tenant = get_tenant(tenant_id)
    event_type_id = _require_event_type(tenant)
    db = get_db()

    if call_id:
        existing = db.get_booking_for_call(call_id)
        if existing:
            logger.info(f"Call {call_id} already has booking {existing['id']}; not creating another")
            return existing

    client = client or CalcomClient()
    token = await get_valid_access_token(tenant, client)
    payload = {
        "eventTypeId": event_type_id,
        "start": start.isoformat().replace("+00:00", "Z"),
        "attendee": {
            "name": customer["name"],
            "email": customer["email"],
            "timeZone": tenant_timezone(tenant),
            "language": "en",
        },
        "guests": [],
        "metadata": {
            "source": "ai-receptionist",
            "phone": customer.get("phone") or "",
            "notes": notes or "",
        },
    }
    external = await client.create_booking(token, payload)
    logger.info(f"Cal.com booking {external.get('uid')} created for business {tenant_id}")

    row = {
        "business_id": tenant_id,
        "call_id": call_id,
        "calcom_booking_id": external.get("id"),
        "calcom_uid": external.get("uid"),
        "calcom_event_type_id": event_type_id,
        "customer_name": customer["name"],
        "customer_email": customer["email"],
        "customer_phone": customer.get("phone"),
        "scheduled_at": start.isoformat(),
        "duration_minutes": external.get("duration") or DEFAULT_DURATION_MINUTES,
        "status": "confirmed",
        "notes": notes,
        "metadata": {
            "confirmation_url": external.get("confirmationUrl"),
            "reschedule_url": external.get("rescheduleUrl"),
            "cancel_url": external.get("cancelUrl"),
        },
    }
    try:
        booking = db.insert_booking(row)
    except DuplicateRecord:
        booking = db.get_booking_for_call(call_id) if call_id else None
        if booking is None:
            raise
        logger.warning(f"Concurrent booking detected for call {call_id}; keeping {booking['id']}")
        return booking

    if call_id:
        call = db.get_call(call_id)
        if call:
            updates = merge_call_fields(call, {"metadata": {"booking_id": booking["id"]}})
            if updates:
                db.update_call(call_id, updates)
    logger.info(f"Booking {booking['id']} stored for business {tenant_id}")
    return booking


def get_booking(booking_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
    booking = get_db().get_booking(booking_id)
    if not booking or (tenant_id and booking.get("business_id") != tenant_id):
        raise NotFound(f"Booking {booking_id} not found")
    return booking


async def cancel_booking(tenant_id: str, booking_id: str, reason: str = "Cancelled by customer", client: Optional[CalcomClient] = None) -> Dict[str, Any]:
    booking = get_booking(booking_id, tenant_id)
    if booking.get("status") == "cancelled":
        return booking
    if booking.get("calcom_uid"):
        tenant = get_tenant(tenant_id)
        client = client or CalcomClient()
        token = await get_valid_access_token(tenant, client)
        await client.cancel_booking(token, booking["calcom_uid"], reason)
    updated = get_db().update_booking(booking_id, {
        "status": "cancelled",
        "cancelled_at": utcnow().isoformat(),
        "metadata": {**(booking.get("metadata") or {}), "cancellation_reason": reason},
    })
    logger.info(f"Booking {booking_id} cancelled")
    return updated


async def reschedule_booking(tenant_id: str, booking_id: str, new_start: str, client: Optional[CalcomClient] = None) -> Dict[str, Any]:
    start = parse_start_time(new_start)
    booking = get_booking(booking_id, tenant_id)
    if booking.get("status") == "cancelled":
        raise ValidationError("A cancelled booking cannot be rescheduled", {"field": "status"})
    fields: Dict[str, Any] = {"scheduled_at": start.isoformat()}
    if booking.get("calcom_uid"):
        tenant = get_tenant(tenant_id)
        client = client or CalcomClient()
        token = await get_valid_access_token(tenant, client)
        external = await client.reschedule_booking(token, booking["calcom_uid"], start.isoformat().replace("+00:00", "Z"))
        if external.get("uid"):
            fields["calcom_uid"] = external["uid"]
        if external.get("id"):
            fields["calcom_booking_id"] = external["id"]
    fields["metadata"] = {**(booking.get("metadata") or {}), "previous_scheduled_at": booking.get("scheduled_at")}
    updated = get_db().update_booking(booking_id, fields)
    logger.info(f"Booking {booking_id} rescheduled to {fields['scheduled_at']}")
    return updated


def describe_error(exc: Exception) -> str:
    """Caller-facing sentence for a booking failure. Never technical."""
    if isinstance(exc, SlotUnavailable):
        return "I'm sorry, that time was just taken. Would you like me to check other available times?"
    if isinstance(exc, ValidationError):
        field = exc.details.get("field")
        if field == "start_time":
            return "I need a date and time in the future for that appointment. What time would work for you?"
        if field == "email":
            return "I didn't quite get a valid email address. Could you spell it out for me?"
        if field == "name":
            return "Could I get your name for the booking?"
        if field in ("date", "time_preference"):
            return "Which day would you like me to check, and do you prefer morning, afternoon or evening?"
        return "I'm missing a detail for that booking. Could you repeat the day and time you'd like?"
    if isinstance(exc, (NotConfigured, NotFound)):
        return (
            "I'm not able to book appointments directly right now, but I can take your details "
            "and have someone from the team call you back to confirm a time."
        )
    return "I'm having trouble reaching the calendar at the moment. Could I take your details so the team can follow up?"


def format_time_for_speech(value: Any, tz_name: str) -> str:
    dt = parse_timestamp(value).astimezone(ZoneInfo(tz_name))
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{dt.hour % 12 or 12}:{dt.minute:02d} {suffix}"


def format_datetime_for_speech(value: Any, tz_name: str) -> str:
    dt = parse_timestamp(value).astimezone(ZoneInfo(tz_name))
    return f"{dt.strftime('%A, %B')} {dt.day} at {format_time_for_speech(dt, tz_name)}"


def format_slots_for_speech(slots: List[str], tz_name: str, limit: int = 5) -> str:
    spoken = [format_time_for_speech(slot, tz_name) for slot in slots[:limit]]
    if len(spoken) == 1:
        return spoken[0]
    return f"{', '.join(spoken[:-1])} and {spoken[-1]}"
