# otpcore/verification/preference_routes.py
"""
Delivery preference endpoints.

Endpoints:
- GET /api/delivery-preferences — current preferences (created with defaults)
- PUT /api/delivery-preferences — partial update, nested sections merged
- POST /api/delivery-preferences/reset — disabled, always 403 OPERATION_DISABLED
- GET /api/delivery-preferences/delivery-plan — plan against the live catalog
- GET /api/delivery-preferences/rate-limit-status
- GET /api/delivery-preferences/stats — aggregate preference counts
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from otpcore.accounts.auth import get_current_user_id
from otpcore.core import OtpCore, get_core
from otpcore.models import PreferencesUpdate
from otpcore.security.throttle import limiter
from otpcore.verification.routes import check_verification_enabled

log = logging.getLogger("otpcore.routes")

router = APIRouter(
    prefix="/api/delivery-preferences",
    tags=["Delivery Preferences"],
    dependencies=[Depends(check_verification_enabled)],
)


@router.get("", summary="Get delivery preferences")
async def get_preferences(
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
) -> Dict[str, Any]:
    prefs = await core.preferences.get_or_create(user_id)
    return {"success": True, "preferences": prefs.model_dump(mode="json")}


@router.put("", summary="Update delivery preferences")
@limiter.limit("20/minute")
async def update_preferences(
    body: PreferencesUpdate,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
) -> Dict[str, Any]:
    prefs = await core.preferences.update_preferences(user_id, body)
    return {
        "success": True,
        "message": "Delivery preferences updated successfully",
        "preferences": prefs.model_dump(mode="json"),
    }


@router.post("/reset", summary="Reset delivery preferences (disabled)")
async def reset_preferences(
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
) -> Dict[str, Any]:
    await core.preferences.reset_preferences(user_id)
    return {"success": True}


@router.get("/delivery-plan", summary="Preview the delivery plan")
async def delivery_plan(
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
) -> Dict[str, Any]:
    prefs = await core.preferences.get_or_create(user_id)
    services = core.channels.available_services()
    plan = core.preferences.resolve_delivery_plan(prefs, services)
    return {
        "success": True,
        "delivery_plan": [p.model_dump() for p in plan],
        "available_services": [s.model_dump() for s in services],
        "within_delivery_window": core.preferences.is_within_delivery_window(prefs),
    }


@router.get("/rate-limit-status", summary="Delivery rate limit status")
async def rate_limit_status(
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
) -> Dict[str, Any]:
    prefs = await core.preferences.get_or_create(user_id)
    status = await core.preferences.check_rate_limit(user_id, prefs)
    return {"success": True, "rate_limit_status": status.model_dump()}


@router.get("/stats", summary="Aggregate preference statistics")
async def preference_stats(
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
) -> Dict[str, Any]:
    return {"success": True, "stats": await core.preferences.get_preference_stats()}
