import os
import hmac
import json
import base64
import hashlib
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .clock import utcnow
from .errors import NotConfigured, SlotUnavailable, UpstreamError

# Set up logger
logger = logging.getLogger(__name__)

API_VERSION = "2024-08-13"
SCOPES = "read:bookings write:bookings read:availability"
STATE_MAX_AGE = timedelta(minutes=15)


class CalcomClient:
    def __init__(self) -> None:
        self.client_id = os.getenv("CALCOM_CLIENT_ID")
        self.client_secret = os.getenv("CALCOM_CLIENT_SECRET")
        self.redirect_uri = os.getenv("CALCOM_REDIRECT_URI")
        self.base_url = os.getenv("CALCOM_API_BASE", "https://api.cal.com/v2").rstrip("/")
        self.oauth_base_url = os.getenv("CALCOM_OAUTH_BASE", "https://app.cal.com/oauth").rstrip("/")
        self.timeout = float(os.getenv("CALCOM_TIMEOUT_SECONDS", "15"))

    @property
    def oauth_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    # OAuth
    def _sign(self, payload: str) -> str:
        return hmac.new(self.client_secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

    def encode_state(self, business_id: str) -> str:
        """Signed ``payload.signature`` state carrying the business id and issue time."""
        if not self.client_secret:
            raise NotConfigured("Cal.com OAuth not configured")
        body = json.dumps({"businessId": business_id, "iat": int(utcnow().timestamp())})
        payload = base64.urlsafe_b64encode(body.encode()).decode()
        return f"{payload}.{self._sign(payload)}"

    def decode_state(self, state: Optional[str]) -> Optional[str]:
        """Business id from a state issued by ``encode_state``; None if forged, malformed or expired."""
        if not self.client_secret or not state or "." not in state:
            logger.warning("Missing or unsigned OAuth state")
            return None
        payload, signature = state.rsplit(".", 1)
        if not hmac.compare_digest(self._sign(payload).encode(), signature.encode()):
            logger.warning("OAuth state signature mismatch")
            return None
        try:
            data = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8"))
        except ValueError:
            logger.warning("Could not decode OAuth state")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("iat"), int):
            logger.warning("Malformed OAuth state")
            return None
        if utcnow().timestamp() - data["iat"] > STATE_MAX_AGE.total_seconds():
            logger.warning(f"Expired OAuth state for business {data.get('businessId')}")
            return None
        return data.get("businessId")

    def authorization_url(self, business_id: str) -> str:
        if not self.client_id or not self.redirect_uri:
            raise NotConfigured("Cal.com OAuth not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "state": self.encode_state(business_id),
        }
        return f"{self.oauth_base_url}/authorize?{urlencode(params)}"

    async def _token_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.oauth_configured:
            raise NotConfigured("Cal.com OAuth not configured")
        body = {"client_id": self.client_id, "client_secret": self.client_secret, **payload}
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(f"{self.oauth_base_url}/token", json=body, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Cal.com token error: {e.response.status_code} - {e.response.text}")
            raise UpstreamError("Cal.com token request failed", status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Cal.com token request error: {str(e)}")
            raise UpstreamError("Cal.com token request failed") from e
        expires_at = utcnow() + timedelta(seconds=int(data.get("expires_in") or 0))
        return {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_at": expires_at.isoformat(),
        }

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        if not self.redirect_uri:
            raise NotConfigured("Cal.com OAuth not configured")
        return await self._token_request({
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "code": code,
        })

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        return await self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    # API
    async def request(self, access_token: str, method: str, endpoint: str, json_body: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "cal-api-version": API_VERSION,
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    headers=headers,
                    json=json_body,
                    params=params,
                    timeout=self.timeout,
                )
                logger.info(f"Cal.com {method} {endpoint}: {response.status_code}")
                response.raise_for_status()
                return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Cal.com API error on {endpoint}: {status} - {e.response.text}")
            if status == 409:
                raise SlotUnavailable("This time slot is no longer available") from e
            if status in (401, 403):
                raise NotConfigured("Cal.com rejected the stored credentials") from e
            raise UpstreamError(f"Cal.com returned {status}", status_code=status) from e
        except httpx.RequestError as e:
            logger.error(f"Cal.com request error on {endpoint}: {str(e)}")
            raise UpstreamError("Could not reach Cal.com") from e

    async def list_event_types(self, access_token: str) -> List[Dict[str, Any]]:
        response = await self.request(access_token, "GET", "/event-types")
        return response.get("data") or []

    async def available_slots(self, access_token: str, event_type_id: Any, start_time: str, end_time: str) -> List[str]:
        response = await self.request(
            access_token,
            "GET",
            "/slots/available",
            params={"eventTypeId": event_type_id, "startTime": start_time, "endTime": end_time},
        )
        return extract_slot_times(response)

    async def create_booking(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request(access_token, "POST", "/bookings", json_body=payload)
        return response.get("data") or {}

    async def get_booking(self, access_token: str, booking_uid: str) -> Dict[str, Any]:
        response = await self.request(access_token, "GET", f"/bookings/{booking_uid}")
        return response.get("data") or {}

    async def cancel_booking(self, access_token: str, booking_uid: str, reason: str) -> Dict[str, Any]:
        response = await self.request(access_token, "POST", f"/bookings/{booking_uid}/cancel", json_body={"cancellationReason": reason})
        return response.get("data") or {}

    async def reschedule_booking(self, access_token: str, booking_uid: str, new_start: str) -> Dict[str, Any]:
        response = await self.request(access_token, "POST", f"/bookings/{booking_uid}/reschedule", json_body={"start": new_start})
        return response.get("data") or {}


def extract_slot_times(response: Dict[str, Any]) -> List[str]:
    """Flatten the slots payload into a sorted list of ISO start times.

    Accepts ``{"data": {"slots": {"2024-01-15": [{"time": ...}]}}}`` as well as
    a bare ``{"slots": [...]}`` list of strings.
    """
    container = response.get("data") if isinstance(response.get("data"), dict) else response
    slots = (container or {}).get("slots") or []
    times: List[str] = []
    if isinstance(slots, dict):
        for day_slots in slots.values():
            for slot in day_slots or []:
                value = slot.get("time") or slot.get("start") if isinstance(slot, dict) else slot
                if value:
                    times.append(value)
    else:
        for slot in slots:
            value = slot.get("time") or slot.get("start") if isinstance(slot, dict) else slot
            if value:
                times.append(value)
    return sorted(times)
