"""Per-call record ownership: creation, field merging, lifecycle status and finalization.

Every webhook handler writes through ``upsert_call`` so that the four
independent event types touching one call converge on the same row no matter
the order in which the provider delivers them.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..db import get_db
from .clock import isoformat, parse_timestamp, utcnow
from .errors import DuplicateRecord, NotFound

logger = logging.getLogger(__name__)

CALL_STATUSES = ("queued", "ringing", "in-progress", "completed", "failed", "busy", "no-answer")
TERMINAL_STATUSES = frozenset({"completed", "failed", "busy", "no-answer"})
MISSED_STATUSES = frozenset({"no-answer", "busy", "failed"})
SENTIMENTS = frozenset({"positive", "neutral", "negative"})

MERGEABLE_FIELDS = frozenset({
    "direction",
    "from_phone",
    "to_phone",
    "customer_phone",
    "status",
    "started_at",
    "ended_at",
    "duration_seconds",
    "ended_reason",
    "recording_url",
    "full_transcript",
    "summary",
    "intent",
    "sentiment",
    "missed",
    "ai_handled",
    "escalation_required",
    "metadata",
})

_TIMESTAMP_FIELDS = ("started_at", "ended_at")


def classify_ended_reason(ended_reason: Optional[str]) -> str:
    """Terminal status implied by the provider's ended reason."""
    reason = (ended_reason or "").lower()
    if not reason:
        return "completed"
    if "busy" in reason:
        return "busy"
    if "did-not-answer" in reason or "no-answer" in reason:
        return "no-answer"
    if "error" in reason or "failed" in reason or "fault" in reason:
        return "failed"
    return "completed"


def map_provider_status(status: Optional[str], ended_reason: Optional[str] = None) -> Optional[str]:
    if not status:
        return None
    status = status.lower()
    if status in ("queued", "ringing", "in-progress"):
        return status
    if status == "forwarding":
        return "in-progress"
    if status == "ended":
        return classify_ended_reason(ended_reason)
    if status in TERMINAL_STATUSES:
        return status
    logger.warning(f"Unrecognised provider status {status!r}")
    return None


def _normalize(fields: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if value is None:
            continue
        if key in _TIMESTAMP_FIELDS:
            value = isoformat(value)
            if value is None:
                logger.warning(f"Dropping malformed {key}")
                continue
        elif key == "sentiment":
            value = str(value).lower()
            if value not in SENTIMENTS:
                logger.warning(f"Dropping unsupported sentiment {value!r}")
                continue
        elif key == "duration_seconds":
            try:
                value = int(round(float(value)))
            except (TypeError, ValueError):
                continue
        clean[key] = value
    return clean


def merge_call_fields(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Column updates produced by merging ``incoming`` over ``existing``.

    Non-null incoming values win per field. A terminal status is never
    regressed to a non-terminal one, and an ``ended_at`` before ``started_at``
    is not applied.
    """
    existing = existing or {}
    updates: Dict[str, Any] = {}
    for key, value in _normalize(incoming).items():
        if key not in MERGEABLE_FIELDS:
            continue
        if key == "metadata":
            merged = dict(existing.get("metadata") or {})
            merged.update(value or {})
            if merged != (existing.get("metadata") or {}):
                updates["metadata"] = merged
            continue
        if key == "status":
            if value not in CALL_STATUSES:
                logger.warning(f"Ignoring invalid status {value!r}")
                continue
            current = existing.get("status")
            if current in TERMINAL_STATUSES and value not in TERMINAL_STATUSES:
                logger.info(f"Keeping terminal status {current!r}; ignoring {value!r}")
                continue
        if existing.get(key) != value:
            updates[key] = value

    started = parse_timestamp(updates.get("started_at", existing.get("started_at")))
    ended = parse_timestamp(updates.get("ended_at", existing.get("ended_at")))
    if started and ended and ended < started:
        if "ended_at" in updates:
            logger.warning("Dropping ended_at earlier than started_at")
            updates.pop("ended_at")
        else:
            logger.warning("Dropping started_at later than ended_at")
            updates.pop("started_at", None)
    return updates


def _apply(db, existing: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    updates = merge_call_fields(existing, fields)
    if not updates:
        return existing
    return db.update_call(existing["id"], updates) or {**existing, **updates}


def upsert_call(tenant_id: str, provider_call_id: Optional[str], fields: Dict[str, Any]) -> Dict[str, Any]:
    db = get_db()
    if provider_call_id:
        existing = db.get_call_by_provider_id(tenant_id, provider_call_id)
        if existing:
            return _apply(db, existing, fields)

    row = merge_call_fields({}, fields)
    row["business_id"] = tenant_id
    row["vapi_call_id"] = provider_call_id
    try:
        created = db.insert_call(row)
        logger.info(f"Created call {created['id']} for provider call {provider_call_id}")
        return created
    except DuplicateRecord:
        # Another event for the same call inserted first
        existing = db.get_call_by_provider_id(tenant_id, provider_call_id) if provider_call_id else None
        if existing is None:
            raise
        return _apply(db, existing, fields)


def finalize_call(tenant_id: str, provider_call_id: str, report: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the end-of-call report. Safe to repeat with the same report."""
    db = get_db()
    existing = db.get_call_by_provider_id(tenant_id, provider_call_id) or {}

    status = classify_ended_reason(report.get("ended_reason"))
    started_at = isoformat(report.get("started_at")) or existing.get("started_at")
    ended_at = isoformat(report.get("ended_at")) or existing.get("ended_at") or utcnow().isoformat()

    duration = report.get("duration_seconds")
    if duration is None:
        start_dt, end_dt = parse_timestamp(started_at), parse_timestamp(ended_at)
        if start_dt and end_dt and end_dt >= start_dt:
            duration = int((end_dt - start_dt).total_seconds())
        else:
            duration = existing.get("duration_seconds")

    transcript = report.get("full_transcript")
    missed = status in MISSED_STATUSES
    fields = {
        "status": status,
        "started_at": started_at,
        "ended_at": ended_at,
        "duration_seconds": duration,
        "ended_reason": report.get("ended_reason"),
        "recording_url": report.get("recording_url"),
        "full_transcript": transcript,
        "summary": report.get("summary"),
        "intent": report.get("intent"),
        "sentiment": report.get("sentiment"),
        "escalation_required": report.get("escalation_required"),
        "missed": missed,
        "ai_handled": bool(transcript or existing.get("full_transcript")) and not missed,
        "customer_phone": report.get("customer_phone"),
        "from_phone": report.get("from_phone"),
        "to_phone": report.get("to_phone"),
        "metadata": report.get("metadata"),
    }
    call = upsert_call(tenant_id, provider_call_id, fields)
    logger.info(f"Finalized call {call['id']} with status {call.get('status')}")
    return call


def get_call(call_id: str) -> Dict[str, Any]:
    call = get_db().get_call(call_id)
    if not call:
        raise NotFound(f"Call {call_id} not found")
    return call


def find_call(tenant_id: str, provider_call_id: str) -> Optional[Dict[str, Any]]:
    return get_db().get_call_by_provider_id(tenant_id, provider_call_id)


def list_calls(tenant_id: Optional[str], status: Optional[str] = None, page: int = 1, page_size: int = 20) -> Tuple[List[Dict[str, Any]], int]:
    return get_db().list_calls(business_id=tenant_id, status=status, page=page, page_size=page_size)


def calls_in_window(tenant_id: str, start_utc, end_utc) -> List[Dict[str, Any]]:
    return get_db().list_calls_between(tenant_id, start_utc.isoformat(), end_utc.isoformat())
