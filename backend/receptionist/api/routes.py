from fastapi import APIRouter
from .calcom import router as calcom_router
from .calls import router as calls_router
from .digest import router as digest_router
from .webhook import router as webhook_router

api_router = APIRouter()
api_router.include_router(webhook_router, prefix="/vapi", tags=["vapi"])
api_router.include_router(calcom_router, prefix="/calcom", tags=["calcom"])
api_router.include_router(calls_router, prefix="/calls", tags=["calls"])
api_router.include_router(digest_router, prefix="/cron", tags=["cron"])
