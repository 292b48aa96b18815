from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse
from typing import Optional
from urllib.parse import urlencode
import os
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import (
    AvailabilityResponse,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingRead,
    BookingRescheduleRequest,
)
from ..services import booking_bridge
from ..services.calcom_client import CalcomClient
from ..services.errors import NotConfigured, ReceptionistError, ValidationError
from ..services.tenant_directory import get_tenant, tenant_timezone
from .http_errors import to_http_exception

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/availability", response_model=AvailabilityResponse)
async def availability(businessId: str, date: str, timePreference: str = "any"):
    try:
        slots = await booking_bridge.check_availability(businessId, date, timePreference)
        tz_name = tenant_timezone(get_tenant(businessId))
    except ReceptionistError as e:
        logger.warning(f"Availability check failed for business {businessId}: {e.kind} {e.message}")
        raise to_http_exception(e)
    return {
        "success": True,
        "date": date,
        "timePreference": timePreference,
        "availableSlots": [{"iso": s, "time": booking_bridge.format_time_for_speech(s, tz_name)} for s in slots],
        "count": len(slots),
    }


@router.post("/book", response_model=BookingRead, status_code=201)
async def book(payload: BookingCreateRequest):
    if not payload.businessId:
        raise to_http_exception(ValidationError("businessId is required", {"field": "businessId"}))
    logger.info(f"Admin booking request for business {payload.businessId} at {payload.start}")
    try:
        return await booking_bridge.create_booking(
            payload.businessId,
            payload.callId,
            {"name": payload.name, "email": payload.email, "phone": payload.phone},
            payload.start,
            notes=payload.notes,
        )
    except ReceptionistError as e:
        logger.warning(f"Booking failed for business {payload.businessId}: {e.kind} {e.message}")
        raise to_http_exception(e)


@router.get("/bookings/{booking_id}", response_model=BookingRead)
async def get_booking(booking_id: str, businessId: Optional[str] = None):
    try:
        return booking_bridge.get_booking(booking_id, businessId)
    except ReceptionistError as e:
        raise to_http_exception(e)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(booking_id: str, payload: BookingCancelRequest):
    try:
        return await booking_bridge.cancel_booking(payload.businessId, booking_id, payload.reason or "Cancelled by customer")
    except ReceptionistError as e:
        logger.warning(f"Cancel failed for booking {booking_id}: {e.kind} {e.message}")
        raise to_http_exception(e)


@router.post("/bookings/{booking_id}/reschedule", response_model=BookingRead)
async def reschedule_booking(booking_id: str, payload: BookingRescheduleRequest):
    try:
        return await booking_bridge.reschedule_booking(payload.businessId, booking_id, payload.start)
    except ReceptionistError as e:
        logger.warning(f"Reschedule failed for booking {booking_id}: {e.kind} {e.message}")
        raise to_http_exception(e)


@router.get("/connect")
async def connect(businessId: str):
    try:
        get_tenant(businessId)
        url = CalcomClient().authorization_url(businessId)
    except ReceptionistError as e:
        raise to_http_exception(e)
    return {"authorizationUrl": url}


def _dashboard_redirect(**params) -> RedirectResponse:
    base = os.getenv("DASHBOARD_URL", "/")
    return RedirectResponse(url=f"{base}?{urlencode(params)}", status_code=302)


@router.get("/oauth")
async def oauth_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = Query(default=None)):
    if error:
        logger.warning(f"Cal.com OAuth denied: {error}")
        return _dashboard_redirect(calcom="error", reason=error)
    if not code or not state:
        raise HTTPException(status_code=400, detail={"error": "validation_error", "message": "code and state are required"})
    client = CalcomClient()
    business_id = client.decode_state(state)
    if not business_id:
        raise HTTPException(status_code=400, detail={"error": "validation_error", "message": "Invalid state"})

    try:
        get_tenant(business_id)
        tokens = await client.exchange_code(code)
        event_types = await client.list_event_types(tokens["access_token"])
    except ReceptionistError as e:
        logger.error(f"Cal.com OAuth failed for business {business_id}: {e.kind} {e.message}")
        return _dashboard_redirect(calcom="error", reason=e.kind)

    active = [et for et in event_types if not et.get("hidden")]
    event_type_id = active[0].get("id") if active else None
    if event_type_id is None:
        logger.warning(f"No active Cal.com event type for business {business_id}")
    get_db().update_business(business_id, {
        "calcom_enabled": event_type_id is not None,
        "calcom_access_token": tokens["access_token"],
        "calcom_refresh_token": tokens.get("refresh_token"),
        "calcom_token_expires_at": tokens["expires_at"],
        "calcom_event_type_id": event_type_id,
    })
    logger.info(f"Cal.com connected for business {business_id} (event type {event_type_id})")
    if event_type_id is None:
        return _dashboard_redirect(calcom="error", reason=NotConfigured.kind)
    return _dashboard_redirect(calcom="connected")
