"""
API v1 Router
"""

from fastapi import APIRouter

from . import events, internal, otp, subscriptions

router = APIRouter()

router.include_router(subscriptions.router, prefix="/webhooks/subscriptions", tags=["Subscriptions"])
router.include_router(events.router, prefix="/webhooks/events", tags=["Events"])
router.include_router(otp.router, prefix="/otp", tags=["OTP"])
router.include_router(internal.router, prefix="/internal", tags=["Internal"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/webhooks/subscriptions",
            "/webhooks/events",
            "/otp/request",
            "/internal/events",
        ],
    }
