from fastapi import APIRouter, HTTPException, Query
from typing import Optional
import logging

from ..schemas.pydantic_schemas import CallRead, CallListResponse
from ..services import call_ledger
from ..services.errors import NotFound
from ..services.transcript_sequencer import get_sequencer

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=CallListResponse)
async def list_calls(
    businessId: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
):
    items, total = call_ledger.list_calls(businessId, status=status, page=page, page_size=page_size)
    return {"items": items, "total": total, "page": page, "page_size": page_size}


@router.get("/{call_id}", response_model=CallRead)
async def get_call(call_id: str):
    try:
        call = call_ledger.get_call(call_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Call not found")
    return {**call, "turns": get_sequencer().list_turns(call_id)}
