from fastapi import APIRouter, Request, HTTPException
from typing import Any, Awaitable, Callable, Dict, Optional
import os
import hmac
import logging

from ..schemas.pydantic_schemas import VapiMessage, VapiWebhook
from ..services.assistant_config import build_assistant_config
from ..services.booking_bridge import (
    check_availability,
    create_booking,
    describe_error,
    format_datetime_for_speech,
    format_slots_for_speech,
)
from ..services.call_analyzer import CallAnalyzer
from ..services.call_ledger import TERMINAL_STATUSES, finalize_call, find_call, map_provider_status, upsert_call
from ..services.clock import isoformat, utcnow
from ..services.errors import NotConfigured, ReceptionistError
from ..services.escalation import detect_escalation_keywords
from ..services.tenant_directory import find_tenant_by_phone, scheduling_ready, tenant_timezone
from ..services.transcript_sequencer import get_sequencer

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()

ACK = {"received": True}


def verify_secret(provided: Optional[str]) -> bool:
    secret = os.getenv("VAPI_WEBHOOK_SECRET")
    if not secret:
        return True  # allow in local dev
    return hmac.compare_digest(secret, provided or "")


def dialed_number(message: VapiMessage) -> Optional[str]:
    if message.call and message.call.phoneNumber and message.call.phoneNumber.number:
        return message.call.phoneNumber.number
    return message.phoneNumber.number if message.phoneNumber else None


def customer_number(message: VapiMessage) -> Optional[str]:
    if message.call and message.call.customer and message.call.customer.number:
        return message.call.customer.number
    return message.customer.number if message.customer else None


def provider_call_id(message: VapiMessage) -> Optional[str]:
    return message.call.id if message.call else None


def call_fields(message: VapiMessage) -> Dict[str, Any]:
    """Fields every event can contribute to the call record."""
    call = message.call
    customer = customer_number(message)
    direction = "outbound" if call and (call.type or "").lower().startswith("outbound") else "inbound"
    fields: Dict[str, Any] = {
        "direction": direction,
        "from_phone": customer if direction == "inbound" else dialed_number(message),
        "to_phone": dialed_number(message) if direction == "inbound" else customer,
        "customer_phone": customer,
        "started_at": (call.startedAt if call else None) or message.startedAt,
        "ended_at": (call.endedAt if call else None) or message.endedAt,
    }
    if call and call.type:
        fields["metadata"] = {"vapi_call_type": call.type}
    return fields


async def handle_assistant_request(message: VapiMessage) -> Dict[str, Any]:
    tenant = find_tenant_by_phone(dialed_number(message))
    scheduling = scheduling_ready(tenant)
    call_id = provider_call_id(message)
    if tenant and not call_id:
        logger.warning("Assistant request without call id; not recording call")
    elif tenant:
        try:
            fields = call_fields(message)
            if not find_call(tenant["id"], call_id):
                fields["status"] = "queued"
            upsert_call(tenant["id"], call_id, fields)
        except Exception:
            logger.exception(f"Failed to record call {call_id} at assistant request; continuing")
    try:
        config = build_assistant_config(tenant, scheduling)
    except Exception:
        logger.exception(f"Failed to build assistant config for business {(tenant or {}).get('id')}; using generic")
        config = build_assistant_config(None, False)
    logger.info(f"Assistant config for call {call_id}: profile={config['metadata']['profile']}")
    return {"assistant": config}


async def handle_status_update(message: VapiMessage) -> Dict[str, Any]:
    tenant = find_tenant_by_phone(dialed_number(message))
    if not tenant:
        return ACK
    call_id = provider_call_id(message)
    if not call_id:
        logger.warning("Status update without call id; ignoring")
        return ACK
    try:
        status = map_provider_status(message.status, message.endedReason)
        fields = call_fields(message)
        fields["status"] = status
        fields["ended_reason"] = message.endedReason
        event_time = isoformat(message.timestamp) or utcnow().isoformat()
        if status == "in-progress" and not fields.get("started_at"):
            fields["started_at"] = event_time
        if status in TERMINAL_STATUSES and not fields.get("ended_at"):
            fields["ended_at"] = event_time
        call = upsert_call(tenant["id"], call_id, fields)
        logger.info(f"Call {call['id']} status now {call.get('status')} (provider said {message.status})")
    except Exception:
        logger.exception(f"Failed to apply status update for call {call_id}; continuing")
    return ACK


async def handle_transcript(message: VapiMessage) -> Dict[str, Any]:
    if message.transcriptType and message.transcriptType != "final":
        return ACK
    tenant = find_tenant_by_phone(dialed_number(message))
    if not tenant:
        return ACK
    call_id = provider_call_id(message)
    if not call_id:
        logger.warning("Transcript without call id; ignoring")
        return ACK
    try:
        call = upsert_call(tenant["id"], call_id, call_fields(message))
        turn = get_sequencer().append_turn(call["id"], message.role, message.transcript or "", spoken_at=message.timestamp)
        logger.info(f"Stored turn {turn['sequence_number']} ({turn['role']}) for call {call['id']}")
    except Exception:
        logger.exception(f"Failed to store transcript turn for call {call_id}; continuing")
    return ACK


async def _check_availability_function(tenant: Dict[str, Any], message: VapiMessage, params: Dict[str, Any]) -> str:
    day = params.get("date")
    preference = params.get("timePreference") or "any"
    slots = await check_availability(tenant["id"], day, preference)
    if not slots:
        return f"I don't see any open times on {day}. Would you like me to check another day?"
    tz_name = tenant_timezone(tenant)
    return (
        f"I have {format_slots_for_speech(slots, tz_name)} available on that day. Which works best for you? "
        f"Use these exact startTime values when booking: {', '.join(slots[:5])}."
    )


async def _create_booking_function(tenant: Dict[str, Any], message: VapiMessage, params: Dict[str, Any]) -> str:
    call_id = provider_call_id(message)
    internal_call_id = None
    if call_id:
        internal_call_id = upsert_call(tenant["id"], call_id, call_fields(message))["id"]
    customer = {
        "name": params.get("name"),
        "email": params.get("email"),
        "phone": params.get("phone") or customer_number(message),
    }
    booking = await create_booking(
        tenant["id"],
        internal_call_id,
        customer,
        params.get("startTime") or params.get("start"),
        notes=params.get("notes"),
    )
    when = format_datetime_for_speech(booking["scheduled_at"], tenant_timezone(tenant))
    return (
        f"You're all set, {booking['customer_name']}. Your appointment is booked for {when}. "
        f"A confirmation will be sent to {booking['customer_email']}."
    )


FUNCTION_HANDLERS: Dict[str, Callable[[Dict[str, Any], VapiMessage, Dict[str, Any]], Awaitable[str]]] = {
    "checkAvailability": _check_availability_function,
    "createBooking": _create_booking_function,
}


async def handle_function_call(message: VapiMessage) -> Dict[str, Any]:
    function_call = message.functionCall
    if not function_call:
        return {"error": "Sorry, I didn't catch what you needed. Could you say that again?"}
    name = function_call.name
    handler = FUNCTION_HANDLERS.get(name)
    if handler is None:
        logger.warning(f"Function {name} not implemented")
        return {"error": "Sorry, that's not something I can do on this call, but I can take a message for the team."}
    tenant = find_tenant_by_phone(dialed_number(message))
    if not tenant:
        return {"error": describe_error(NotConfigured("No business for this number"))}
    logger.info(f"Function call {name} for call {provider_call_id(message)}: {function_call.parameters}")
    try:
        return {"result": await handler(tenant, message, function_call.parameters)}
    except ReceptionistError as e:
        logger.warning(f"Function {name} failed with {e.kind}: {e.message}")
        return {"error": describe_error(e)}
    except Exception as e:
        logger.exception(f"Function {name} failed unexpectedly")
        return {"error": describe_error(e)}


def _transcript_from_turns(call: Optional[Dict[str, Any]]) -> Optional[str]:
    if not call:
        return None
    turns = get_sequencer().list_turns(call["id"])
    return "\n".join(f"{t['role']}: {t['text']}" for t in turns) or None


async def handle_end_of_call_report(message: VapiMessage) -> Dict[str, Any]:
    tenant = find_tenant_by_phone(dialed_number(message))
    call_id = provider_call_id(message)
    if not tenant or not call_id:
        return ACK
    internal_call_id = None
    try:
        existing = find_call(tenant["id"], call_id)
        internal_call_id = existing["id"] if existing else None
        artifact = message.artifact or {}
        analysis = message.analysis or {}
        structured = analysis.get("structuredData") or {}
        transcript = message.transcript or artifact.get("transcript") or _transcript_from_turns(existing)

        report: Dict[str, Any] = {
            "started_at": message.startedAt or (message.call.startedAt if message.call else None),
            "ended_at": message.endedAt or (message.call.endedAt if message.call else None),
            "duration_seconds": message.durationSeconds if message.durationSeconds is not None else (message.call.duration if message.call else None),
            "ended_reason": message.endedReason,
            "recording_url": message.recordingUrl or (message.recording or {}).get("url") or artifact.get("recordingUrl"),
            "full_transcript": transcript,
            "summary": analysis.get("summary") or message.summary,
            "intent": structured.get("intent"),
            "sentiment": structured.get("sentiment"),
            "escalation_required": bool(structured.get("escalationRequired")) or detect_escalation_keywords(transcript or ""),
            "customer_phone": customer_number(message),
        }
        stored = existing or {}
        missing = [k for k in ("summary", "intent", "sentiment") if not report.get(k) and not stored.get(k)]
        if missing and transcript:
            analyzed = await CallAnalyzer().analyze(transcript)
            for key in missing:
                report[key] = analyzed.get(key)

        call = finalize_call(tenant["id"], call_id, report)
        internal_call_id = call["id"]
    except Exception:
        logger.exception(f"Failed to finalize call {call_id}; continuing")
    finally:
        if internal_call_id:
            get_sequencer().release(internal_call_id)
    return ACK


EVENT_HANDLERS: Dict[str, Callable[[VapiMessage], Awaitable[Dict[str, Any]]]] = {
    "assistant-request": handle_assistant_request,
    "status-update": handle_status_update,
    "transcript": handle_transcript,
    "function-call": handle_function_call,
    "end-of-call-report": handle_end_of_call_report,
}


@router.post("/webhook")
async def vapi_webhook(request: Request):
    if not verify_secret(request.headers.get("x-vapi-secret")):
        logger.warning("Webhook secret verification failed")
        raise HTTPException(status_code=401, detail="Invalid secret")

    try:
        body = await request.json()
        envelope = VapiWebhook.model_validate(body)
    except Exception as e:
        logger.error(f"Failed to parse webhook payload: {str(e)}")
        return ACK

    message = envelope.message
    logger.info(f"Vapi event received: {message.type} for call {provider_call_id(message)}")
    handler = EVENT_HANDLERS.get(message.type)
    if handler is None:
        logger.info(f"Unhandled event type: {message.type}")
        return ACK
    try:
        return await handler(message)
    except Exception:
        logger.exception(f"Unhandled error in {message.type} handler")
        if message.type == "assistant-request":
            return {"assistant": build_assistant_config(None, False)}
        if message.type == "function-call":
            return {"error": describe_error(RuntimeError("handler failed"))}
        return ACK
