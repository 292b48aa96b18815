import os
import re
import logging
from typing import Any, Dict, Optional

from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_fixed

from ..db import get_db
from .errors import NotFound

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

_PHONE_NOISE = re.compile(r"[\s\-\(\)\.]")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    cleaned = _PHONE_NOISE.sub("", str(phone))
    return cleaned or None


@retry(stop=stop_after_attempt(2), wait=wait_fixed(0.2), retry=retry_if_not_exception_type(NotFound), reraise=True)
def resolve_tenant_by_phone(phone: Optional[str]) -> Dict[str, Any]:
    """Resolve the dialed number to its active business.

    This is the only multi-tenancy discriminator for inbound webhook traffic.
    Raises NotFound when there is no active mapping.
    """
    number = normalize_phone(phone)
    if not number:
        raise NotFound("No phone number supplied")
    tenant = get_db().get_business_by_phone(number)
    if not tenant:
        raise NotFound(f"No active business for {number}")
    return tenant


def find_tenant_by_phone(phone: Optional[str]) -> Optional[Dict[str, Any]]:
    """Soft lookup used on the live-call path: None instead of an error."""
    try:
        return resolve_tenant_by_phone(phone)
    except NotFound:
        logger.info(f"No tenant mapped to {phone}; using default behaviour")
        return None
    except Exception:
        logger.exception(f"Tenant lookup failed for {phone}; using default behaviour")
        return None


def get_tenant(tenant_id: str) -> Dict[str, Any]:
    tenant = get_db().get_business(tenant_id)
    if not tenant:
        raise NotFound(f"Business {tenant_id} not found")
    return tenant


def scheduling_ready(tenant: Optional[Dict[str, Any]]) -> bool:
    if not tenant:
        return False
    return bool(
        tenant.get("calcom_enabled")
        and tenant.get("calcom_access_token")
        and tenant.get("calcom_event_type_id")
    )


def effective_timezone(tenant: Dict[str, Any]) -> str:
    return (
        tenant.get("digest_timezone")
        or tenant.get("timezone")
        or os.getenv("DEFAULT_TIMEZONE", DEFAULT_TIMEZONE)
    )


def tenant_timezone(tenant: Optional[Dict[str, Any]]) -> str:
    return (tenant or {}).get("timezone") or os.getenv("DEFAULT_TIMEZONE", DEFAULT_TIMEZONE)
