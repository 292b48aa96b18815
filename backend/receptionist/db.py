from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
import os
import logging

# Lightweight adapter over Supabase client. Keeps an in-memory fallback when SUPABASE_URL is missing.
from supabase import create_client, Client
from postgrest.exceptions import APIError

from .services.clock import parse_timestamp, utcnow
from .services.errors import DuplicateRecord

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

CALL_DEFAULTS: Dict[str, Any] = {
    "direction": "inbound",
    "status": "queued",
    "from_phone": "unknown",
    "to_phone": "unknown",
    "customer_phone": "unknown",
    "missed": False,
    "ai_handled": False,
    "escalation_required": False,
}

BUSINESS_DEFAULTS: Dict[str, Any] = {
    "email": None,
    "timezone": "America/New_York",
    "calcom_enabled": False,
    "digest_enabled": True,
    "digest_time_local": "08:00",
    "digest_timezone": None,
    "last_digest_sent_at": None,
    "active": True,
    "calcom_access_token": None,
    "calcom_refresh_token": None,
    "calcom_token_expires_at": None,
    "calcom_event_type_id": None,
}


def _now_iso() -> str:
    return utcnow().isoformat()


class InMemoryDB:
    def __init__(self) -> None:
        self.businesses: Dict[str, Dict[str, Any]] = {}
        self.phone_numbers: List[Dict[str, Any]] = []
        self.business_users: List[Dict[str, Any]] = []
        # Stand-in for the identity provider's user directory
        self.users: Dict[str, Dict[str, Any]] = {}
        self.calls: Dict[str, Dict[str, Any]] = {}
        self.transcripts: List[Dict[str, Any]] = []
        self.bookings: Dict[str, Dict[str, Any]] = {}

    # Seeding helpers (onboarding is handled outside this service)
    def add_business(self, **fields) -> Dict[str, Any]:
        bid = str(fields.pop("id", None) or uuid4())
        obj = dict(BUSINESS_DEFAULTS)
        obj.update(fields)
        obj["id"] = bid
        obj.setdefault("name", "Business")
        obj["created_at"] = _now_iso()
        self.businesses[bid] = obj
        return obj

    def add_phone_number(self, business_id: str, phone_number: str, active: bool = True) -> Dict[str, Any]:
        if any(p["phone_number"] == phone_number for p in self.phone_numbers):
            raise DuplicateRecord(f"phone number {phone_number} already mapped")
        obj = {"id": str(uuid4()), "business_id": business_id, "phone_number": phone_number, "active": active}
        self.phone_numbers.append(obj)
        return obj

    def add_user(self, email: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        uid = user_id or str(uuid4())
        self.users[uid] = {"id": uid, "email": email}
        return self.users[uid]

    def add_business_user(self, business_id: str, user_id: str, role: str = "owner") -> None:
        self.business_users.append({"business_id": business_id, "user_id": user_id, "role": role})

    # Businesses
    def get_business(self, business_id: str) -> Optional[Dict[str, Any]]:
        obj = self.businesses.get(str(business_id))
        return dict(obj) if obj else None

    def get_business_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        for mapping in self.phone_numbers:
            if mapping["phone_number"] == phone_number and mapping["active"]:
                business = self.businesses.get(mapping["business_id"])
                if business and business.get("active"):
                    return dict(business)
        return None

    def list_digest_businesses(self) -> List[Dict[str, Any]]:
        return [dict(b) for b in self.businesses.values() if b.get("digest_enabled") and b.get("active")]

    def update_business(self, business_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        obj = self.businesses.get(str(business_id))
        if obj is None:
            return None
        obj.update(fields)
        obj["updated_at"] = _now_iso()
        return dict(obj)

    def get_owner_user_id(self, business_id: str) -> Optional[str]:
        for member in self.business_users:
            if member["business_id"] == business_id and member["role"] == "owner":
                return member["user_id"]
        return None

    def get_user_email(self, user_id: str) -> Optional[str]:
        return (self.users.get(user_id) or {}).get("email")

    # Calls
    def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        obj = self.calls.get(str(call_id))
        return dict(obj) if obj else None

    def get_call_by_provider_id(self, business_id: str, vapi_call_id: str) -> Optional[Dict[str, Any]]:
        for call in self.calls.values():
            if call.get("vapi_call_id") == vapi_call_id and call.get("business_id") == business_id:
                return dict(call)
        return None

    def insert_call(self, row: Dict[str, Any]) -> Dict[str, Any]:
        vapi_call_id = row.get("vapi_call_id")
        if vapi_call_id and any(c.get("vapi_call_id") == vapi_call_id for c in self.calls.values()):
            raise DuplicateRecord(f"call {vapi_call_id} already exists")
        cid = str(uuid4())
        obj = dict(CALL_DEFAULTS)
        obj.update({k: v for k, v in row.items() if v is not None})
        obj.setdefault("metadata", {})
        obj["id"] = cid
        obj.setdefault("created_at", _now_iso())
        obj["updated_at"] = obj["created_at"]
        self.calls[cid] = obj
        return dict(obj)

    def update_call(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        obj = self.calls.get(str(call_id))
        if obj is None:
            return None
        obj.update(fields)
        obj["updated_at"] = _now_iso()
        return dict(obj)

    def list_calls(self, business_id: Optional[str], status: Optional[str], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], int]:
        items = list(self.calls.values())
        if business_id:
            items = [c for c in items if c.get("business_id") == business_id]
        if status:
            items = [c for c in items if c.get("status") == status]
        items.sort(key=lambda c: c.get("created_at") or "", reverse=True)
        total = len(items)
        start = (page - 1) * page_size
        end = start + page_size
        return [dict(c) for c in items[start:end]], total

    def list_calls_between(self, business_id: str, start_iso: str, end_iso: str) -> List[Dict[str, Any]]:
        start, end = parse_timestamp(start_iso), parse_timestamp(end_iso)
        items = []
        for call in self.calls.values():
            if call.get("business_id") != business_id:
                continue
            created = parse_timestamp(call.get("created_at"))
            if created and start <= created < end:
                items.append(dict(call))
        items.sort(key=lambda c: parse_timestamp(c["created_at"]), reverse=True)
        return items

    # Transcripts
    def max_sequence_number(self, call_id: str) -> int:
        numbers = [t["sequence_number"] for t in self.transcripts if t["call_id"] == call_id]
        return max(numbers) if numbers else 0

    def insert_transcript_turn(self, row: Dict[str, Any]) -> Dict[str, Any]:
        for t in self.transcripts:
            if t["call_id"] == row["call_id"] and t["sequence_number"] == row["sequence_number"]:
                raise DuplicateRecord(f"sequence {row['sequence_number']} already used for call {row['call_id']}")
        obj = dict(row)
        obj["id"] = str(uuid4())
        obj.setdefault("spoken_at", _now_iso())
        obj["created_at"] = _now_iso()
        self.transcripts.append(obj)
        return dict(obj)

    def list_transcript_turns(self, call_id: str) -> List[Dict[str, Any]]:
        turns = [dict(t) for t in self.transcripts if t["call_id"] == str(call_id)]
        return sorted(turns, key=lambda t: t["sequence_number"])

    # Bookings
    def get_booking(self, booking_id: str) -> Optional[Dict[str, Any]]:
        obj = self.bookings.get(str(booking_id))
        return dict(obj) if obj else None

    def get_booking_for_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        for booking in self.bookings.values():
            if booking.get("call_id") == call_id:
                return dict(booking)
        return None

    def insert_booking(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if row.get("call_id") and self.get_booking_for_call(row["call_id"]):
            raise DuplicateRecord(f"call {row['call_id']} already has a booking")
        bid = str(uuid4())
        obj = dict(row)
        obj["id"] = bid
        obj.setdefault("metadata", {})
        obj["created_at"] = _now_iso()
        obj["updated_at"] = obj["created_at"]
        self.bookings[bid] = obj
        return dict(obj)

    def update_booking(self, booking_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        obj = self.bookings.get(str(booking_id))
        if obj is None:
            return None
        obj.update(fields)
        obj["updated_at"] = _now_iso()
        return dict(obj)


class SupabaseDB:
    def __init__(self, client: Client) -> None:
        self.client = client

    @staticmethod
    def _first(res) -> Optional[Dict[str, Any]]:
        return (res.data or [None])[0]

    @staticmethod
    def _is_unique_violation(exc: APIError) -> bool:
        return getattr(exc, "code", None) == UNIQUE_VIOLATION

    # Businesses
    def get_business(self, business_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("businesses").select("*").eq("id", str(business_id)).limit(1).execute()
        return self._first(res)

    def get_business_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        res = (
            self.client.table("phone_numbers")
            .select("business_id, businesses(*)")
            .eq("phone_number", phone_number)
            .eq("active", True)
            .limit(1)
            .execute()
        )
        mapping = self._first(res)
        if not mapping:
            return None
        business = mapping.get("businesses")
        if not business or not business.get("active"):
            return None
        return business

    def list_digest_businesses(self) -> List[Dict[str, Any]]:
        res = (
            self.client.table("businesses")
            .select("id, name, email, timezone, digest_enabled, digest_time_local, digest_timezone, last_digest_sent_at, active")
            .eq("digest_enabled", True)
            .eq("active", True)
            .execute()
        )
        return res.data or []

    def update_business(self, business_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        res = self.client.table("businesses").update(fields).eq("id", str(business_id)).execute()
        return self._first(res)

    def get_owner_user_id(self, business_id: str) -> Optional[str]:
        res = (
            self.client.table("business_users")
            .select("user_id, role")
            .eq("business_id", business_id)
            .eq("role", "owner")
            .limit(1)
            .execute()
        )
        owner = self._first(res)
        return owner["user_id"] if owner else None

    def get_user_email(self, user_id: str) -> Optional[str]:
        res = self.client.auth.admin.get_user_by_id(user_id)
        user = getattr(res, "user", None)
        return getattr(user, "email", None)

    # Calls
    def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("calls").select("*").eq("id", str(call_id)).limit(1).execute()
        return self._first(res)

    def get_call_by_provider_id(self, business_id: str, vapi_call_id: str) -> Optional[Dict[str, Any]]:
        res = (
            self.client.table("calls")
            .select("*")
            .eq("business_id", business_id)
            .eq("vapi_call_id", vapi_call_id)
            .limit(1)
            .execute()
        )
        return self._first(res)

    def insert_call(self, row: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(CALL_DEFAULTS)
        payload.update({k: v for k, v in row.items() if v is not None})
        try:
            res = self.client.table("calls").insert(payload).execute()
        except APIError as e:
            if self._is_unique_violation(e):
                raise DuplicateRecord(f"call {row.get('vapi_call_id')} already exists") from e
            raise
        return (res.data or [])[0]

    def update_call(self, call_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        res = self.client.table("calls").update(fields).eq("id", str(call_id)).execute()
        return self._first(res)

    def list_calls(self, business_id: Optional[str], status: Optional[str], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], int]:
        query = self.client.table("calls").select("*", count="exact")
        if business_id:
            query = query.eq("business_id", business_id)
        if status:
            query = query.eq("status", status)
        start = (page - 1) * page_size
        end = start + page_size - 1
        res = query.order("created_at", desc=True).range(start, end).execute()
        items = res.data or []
        total = res.count if res.count is not None else len(items)
        return items, total

    def list_calls_between(self, business_id: str, start_iso: str, end_iso: str) -> List[Dict[str, Any]]:
        res = (
            self.client.table("calls")
            .select("id, created_at, from_phone, customer_phone, status, intent, summary")
            .eq("business_id", business_id)
            .gte("created_at", start_iso)
            .lt("created_at", end_iso)
            .order("created_at", desc=True)
            .execute()
        )
        return res.data or []

    # Transcripts
    def max_sequence_number(self, call_id: str) -> int:
        res = (
            self.client.table("call_transcripts")
            .select("sequence_number")
            .eq("call_id", call_id)
            .order("sequence_number", desc=True)
            .limit(1)
            .execute()
        )
        row = self._first(res)
        return row["sequence_number"] if row else 0

    def insert_transcript_turn(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            res = self.client.table("call_transcripts").insert(row).execute()
        except APIError as e:
            if self._is_unique_violation(e):
                raise DuplicateRecord(f"sequence {row['sequence_number']} already used for call {row['call_id']}") from e
            raise
        return (res.data or [])[0]

    def list_transcript_turns(self, call_id: str) -> List[Dict[str, Any]]:
        res = (
            self.client.table("call_transcripts")
            .select("*")
            .eq("call_id", str(call_id))
            .order("sequence_number", desc=False)
            .execute()
        )
        return res.data or []

    # Bookings
    def get_booking(self, booking_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("bookings").select("*").eq("id", str(booking_id)).limit(1).execute()
        return self._first(res)

    def get_booking_for_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("bookings").select("*").eq("call_id", call_id).limit(1).execute()
        return self._first(res)

    def insert_booking(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            res = self.client.table("bookings").insert(row).execute()
        except APIError as e:
            if self._is_unique_violation(e):
                raise DuplicateRecord(f"call {row.get('call_id')} already has a booking") from e
            raise
        return (res.data or [])[0]

    def update_booking(self, booking_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        res = self.client.table("bookings").update(fields).eq("id", str(booking_id)).execute()
        return self._first(res)


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db():
    global _client, _db_instance

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        logger.warning("SUPABASE_URL not set; using in-memory store")
        _db_instance = InMemoryDB()
    return _db_instance
