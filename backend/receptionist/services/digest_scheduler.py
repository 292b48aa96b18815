"""Daily digest scheduling, driven by a fixed UTC tick.

Each tick decides per tenant whether "now" is the tenant's configured local
send minute, and guarantees at most one digest per tenant per local calendar
day by comparing local dates (not elapsed time) against ``last_digest_sent_at``.
"""
import os
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from ..db import get_db
from .call_ledger import MISSED_STATUSES, calls_in_window
from .clock import parse_timestamp, utcnow
from .digest_email import render_digest_email
from .email_client import EmailClient
from .errors import NotConfigured, NotFound
from .tenant_directory import effective_timezone

logger = logging.getLogger(__name__)

DEFAULT_DIGEST_TIME = "08:00"
PREVIOUS_DAY = "previous-day"
WINDOW_ALIASES = {
    "previous-day": PREVIOUS_DAY,
    "today": "today",
    "today-so-far": "today",
    "last24": "last24",
    "last-24-hours": "last24",
}


def normalize_window(window: Optional[str]) -> str:
    return WINDOW_ALIASES.get((window or PREVIOUS_DAY).strip().lower(), PREVIOUS_DAY)


def parse_digest_time(value: Optional[str]) -> Optional[Tuple[int, int]]:
    try:
        # Postgres time columns come back as HH:MM:SS
        hour, minute = (int(part) for part in (value or DEFAULT_DIGEST_TIME).split(":")[:2])
    except ValueError:
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour, minute


def local_date(instant: datetime, tz_name: str):
    return instant.astimezone(ZoneInfo(tz_name)).date()


def should_send_digest_now(tenant: Dict[str, Any], tz_name: str, now: datetime) -> bool:
    target = parse_digest_time(tenant.get("digest_time_local"))
    if target is None:
        logger.warning(f"Business {tenant.get('id')} has invalid digest_time_local {tenant.get('digest_time_local')!r}")
        return False
    local_now = now.astimezone(ZoneInfo(tz_name))
    if (local_now.hour, local_now.minute) != target:
        return False
    last_sent = parse_timestamp(tenant.get("last_digest_sent_at"))
    if last_sent is None:
        return True
    return local_date(last_sent, tz_name) != local_now.date()


def _local_midnight_utc(day, tz: ZoneInfo) -> datetime:
    # Offset is resolved for that date, not for today
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def _format_label(day) -> str:
    return f"{day.strftime('%B')} {day.day}, {day.year}"


def digest_window(window: str, tz_name: str, now: datetime) -> Tuple[datetime, datetime, str]:
    """Reporting window as ``(start_utc, end_utc, label)``, end exclusive."""
    tz = ZoneInfo(tz_name)
    today = now.astimezone(tz).date()
    window = normalize_window(window)
    if window == "today":
        start = _local_midnight_utc(today, tz)
        return start, now.astimezone(timezone.utc), f"{_format_label(today)} (today so far)"
    if window == "last24":
        end = now.astimezone(timezone.utc)
        return end - timedelta(hours=24), end, f"Last 24 hours (ending {_format_label(today)})"
    yesterday = today - timedelta(days=1)
    return _local_midnight_utc(yesterday, tz), _local_midnight_utc(today, tz), _format_label(yesterday)


def build_call_stats(calls: List[Dict[str, Any]]) -> Dict[str, Any]:
    stats: Dict[str, Any] = {"total": len(calls), "missed": 0, "intents": {}}
    for call in calls:
        if call.get("status") in MISSED_STATUSES:
            stats["missed"] += 1
        intent = call.get("intent") or "unknown"
        stats["intents"][intent] = stats["intents"].get(intent, 0) + 1
    return stats


def resolve_recipient_email(tenant: Dict[str, Any]) -> Optional[str]:
    if tenant.get("email"):
        return tenant["email"]
    db = get_db()
    owner_id = db.get_owner_user_id(tenant["id"])
    if not owner_id:
        return None
    try:
        return db.get_user_email(owner_id)
    except Exception:
        logger.exception(f"Failed to load owner email for business {tenant['id']}")
        return None


async def send_tenant_digest(tenant: Dict[str, Any], window: str, now: datetime, email_client: EmailClient) -> bool:
    """Send one tenant's digest. Returns False when it was not due."""
    tz_name = effective_timezone(tenant)
    guarded = window == PREVIOUS_DAY
    if guarded and not should_send_digest_now(tenant, tz_name, now):
        return False

    start_utc, end_utc, label = digest_window(window, tz_name, now)
    calls = calls_in_window(tenant["id"], start_utc, end_utc)
    stats = build_call_stats(calls)

    recipient = resolve_recipient_email(tenant)
    if not recipient:
        logger.warning(f"No digest recipient for business {tenant['id']}")
        raise NotFound("No digest recipient")

    email = render_digest_email(
        business=tenant,
        recipient=recipient,
        tz_name=tz_name,
        label=label,
        calls=calls,
        stats=stats,
        dashboard_url=os.getenv("DASHBOARD_URL"),
    )
    await email_client.send(email["to"], email["subject"], email["html"], email["text"])

    if guarded:
        get_db().update_business(tenant["id"], {"last_digest_sent_at": now.isoformat()})
    logger.info(f"Digest sent to {recipient} for business {tenant['id']} ({label})")
    return True


async def run_digest_tick(now: Optional[datetime] = None, window: Optional[str] = None, email_client: Optional[EmailClient] = None) -> Dict[str, Any]:
    now = (now or utcnow()).astimezone(timezone.utc)
    window = normalize_window(window)
    email_client = email_client or EmailClient()
    if not email_client.configured:
        raise NotConfigured("Email provider not configured")

    tenants = get_db().list_digest_businesses()
    processed = 0
    sent = 0
    errors: List[Dict[str, str]] = []
    for tenant in tenants:
        processed += 1
        try:
            if await send_tenant_digest(tenant, window, now, email_client):
                sent += 1
        except Exception as e:
            logger.exception(f"Digest error for business {tenant.get('id')}")
            errors.append({"tenantId": str(tenant.get("id")), "error": str(e)})
    logger.info(f"Digest tick {now.isoformat()} ({window}): processed={processed} sent={sent} errors={len(errors)}")
    return {"processed": processed, "sent": sent, "errors": errors}
