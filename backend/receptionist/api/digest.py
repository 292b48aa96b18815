from fastapi import APIRouter, Header, HTTPException
from typing import Optional
import os
import hmac
import logging

from ..schemas.pydantic_schemas import DigestRunResponse
from ..services.digest_scheduler import run_digest_tick
from ..services.errors import ReceptionistError
from .http_errors import to_http_exception

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/daily-digest", response_model=DigestRunResponse)
async def daily_digest(window: Optional[str] = None, x_cron_secret: Optional[str] = Header(default=None)):
    secret = os.getenv("CRON_SECRET")
    if not secret:
        logger.error("CRON_SECRET not configured; refusing digest run")
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    if not hmac.compare_digest(secret, x_cron_secret or ""):
        logger.warning("Digest trigger rejected: bad cron secret")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        return await run_digest_tick(window=window)
    except ReceptionistError as e:
        logger.error(f"Digest run aborted: {e.kind} {e.message}")
        raise to_http_exception(e)
