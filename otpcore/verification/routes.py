# otpcore/verification/routes.py
"""
Verification endpoints.

Endpoints:
- POST /api/verification/send-otp — issue and deliver a passcode
- POST /api/verification/verify-otp — check a passcode, flip the verified flag
- GET /api/verification/status — email/phone verification status
- GET /api/verification/service-status — delivery service catalog
- GET /api/verification/delivery-status/{delivery_id}
- GET /api/verification/delivery-history
- POST /api/verification/retry-delivery

Feature Flag:
- VERIFICATION_ENDPOINTS_ENABLED must be on (default on)

Rate Limits:
- slowapi per-IP limits on each mutating route
- Store-backed throttle: 5 requests / 15 min per user for send-otp and for
  verify-otp (separate counters)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from otpcore.accounts.auth import get_current_user_id
from otpcore.core import OtpCore, get_core
from otpcore.db import is_verification_endpoints_enabled
from otpcore.errors import (
    AlreadyVerified,
    ContactMismatch,
    NotFound,
    RateLimitExceeded,
    ValidationError,
)
from otpcore.models import normalize_contact
from otpcore.privacy_utils import build_privacy_safe_log, mask_contact
from otpcore.security.audit import RequestContext
from otpcore.security.throttle import limiter

log = logging.getLogger("otpcore.routes")

router = APIRouter(prefix="/api/verification", tags=["Verification"])


# ============================================================
# Request/Response Schemas
# ============================================================

class SendOTPInput(BaseModel):
    """Input schema for /send-otp."""

    purpose: Literal["email", "phone"] = Field(..., description="Which contact to verify")
    contact: str = Field(..., min_length=3, max_length=254, description="Email address or phone number")


class VerifyOTPInput(BaseModel):
    """Input schema for /verify-otp."""

    purpose: Literal["email", "phone"]
    contact: str = Field(..., min_length=3, max_length=254)
    code: str = Field(..., description="6-digit verification code", min_length=6, max_length=6)

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        if isinstance(v, str):
            cleaned = v.strip()
            if not cleaned.isdigit():
                raise ValueError("Code must contain only digits")
            return cleaned
        return v


class RetryDeliveryInput(BaseModel):
    delivery_id: str = Field(..., min_length=1)
    method: Optional[Literal["sms", "email"]] = None
    service: Optional[Literal["phone-email", "twilio", "smtp"]] = None


# ============================================================
# Guards
# ============================================================

def check_verification_enabled():
    """
    Dependency to check if verification endpoints are enabled.

    Raises HTTPException 503 if VERIFICATION_ENDPOINTS_ENABLED is off.
    """
    if not is_verification_endpoints_enabled():
        log.info("Verification endpoints disabled (VERIFICATION_ENDPOINTS_ENABLED=off)")
        raise HTTPException(
            status_code=503,
            detail={
                "error": {
                    "code": "VERIFICATION_DISABLED",
                    "message": "Verification endpoints are currently disabled",
                },
                "persona": "OTPCORE",
            },
        )


async def _throttle(core: OtpCore, scope: str, user_id: str) -> None:
    result = await core.throttle.hit(user_id, scope=scope)
    if not result.allowed:
        raise RateLimitExceeded(
            "Too many verification requests. Please try again later.",
            retry_after_seconds=result.retry_after_seconds,
        )


async def _check_contact(
    core: OtpCore, user_id: str, purpose: str, contact: str, action: str, ctx: RequestContext
) -> tuple:
    """Normalize the contact and check the user owns it. Returns (user, contact)."""
    normalized = normalize_contact(purpose, contact)
    if normalized is None:
        core.events.log_event(user_id, action, False, {"reason": "invalid_contact_format"}, ctx)
        label = "email address" if purpose == "email" else "phone number"
        raise ValidationError(f"Please provide a valid {label}", field="contact")

    user = await core.users.get_user(user_id)
    if not user:
        raise NotFound("User account not found")

    on_file = normalize_contact(purpose, user.get(purpose) or "")
    if on_file != normalized:
        core.events.log_event(user_id, action, False, {"reason": "contact_mismatch"}, ctx)
        raise ContactMismatch(f"The provided {purpose} does not match your account")

    return user, normalized


# ============================================================
# Endpoints
# ============================================================

@router.post(
    "/send-otp",
    responses={
        400: {"description": "Invalid contact, already verified, or outside delivery window"},
        403: {"description": "Contact does not match the account"},
        429: {"description": "Rate limit exceeded"},
        502: {"description": "All delivery services failed"},
        503: {"description": "Verification endpoints disabled"},
    },
    summary="Send verification code",
)
@limiter.limit("5/minute")
async def send_otp_endpoint(
    body: SendOTPInput,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    """
    Send a 6-digit code to the user's own email or phone, following their
    delivery preferences with fallback across services.
    """
    ctx = RequestContext.from_request(request)
    user, contact = await _check_contact(core, user_id, body.purpose, body.contact, "otp_request", ctx)

    if user.get(f"{body.purpose}_verified"):
        raise AlreadyVerified(f"Your {body.purpose} is already verified")

    await _throttle(core, "send-otp", user_id)

    result = await core.orchestrator.generate_and_send(user_id, body.purpose, contact, ctx)
    log.info("send-otp ok: %s", build_privacy_safe_log(
        user_id=user_id,
        contact=contact,
        delivery_id=result["delivery_id"],
        service=result["service_name"],
        fallbacks_used=result["fallbacks_used"],
    ))
    return {
        "success": True,
        "message": f"Verification code sent via {result['display_name']}",
        **result,
    }


@router.post(
    "/verify-otp",
    responses={
        400: {"description": "Invalid, expired, or wrong code"},
        403: {"description": "Contact does not match the account"},
        429: {"description": "Too many attempts or rate limit exceeded"},
    },
    summary="Verify code",
)
@limiter.limit("10/minute")
async def verify_otp_endpoint(
    body: VerifyOTPInput,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    ctx = RequestContext.from_request(request)
    _user, contact = await _check_contact(
        core, user_id, body.purpose, body.contact, f"{body.purpose}_verification_attempt", ctx
    )
    await _throttle(core, "verify-otp", user_id)

    result = await core.passcodes.validate_passcode(user_id, body.purpose, contact, body.code, ctx)
    return {
        "success": True,
        "message": f"Your {body.purpose} has been verified",
        "verified": result["verified"],
    }


@router.get("/status", summary="Verification status")
async def verification_status(
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    user = await core.users.get_user(user_id)
    if not user:
        raise NotFound("User account not found")
    return {
        "success": True,
        "verification": {
            purpose: {
                "verified": bool(user.get(f"{purpose}_verified")),
                "verified_at": user.get(f"{purpose}_verified_at"),
                "contact": mask_contact(user.get(purpose)) if user.get(purpose) else None,
            }
            for purpose in ("email", "phone")
        },
    }


@router.get("/service-status", summary="Delivery service catalog")
async def service_status(
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    return {
        "success": True,
        "services": [s.model_dump() for s in core.channels.available_services()],
        "metrics": core.orchestrator.get_service_metrics(),
        "delivery_metrics": await core.passcodes.get_delivery_metrics(),
    }


@router.get("/delivery-status/{delivery_id}", summary="Delivery status")
async def delivery_status(
    delivery_id: str,
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    status = await core.orchestrator.get_delivery_status(user_id, delivery_id)
    return {"success": True, "delivery": status}


@router.get("/delivery-history", summary="Recent deliveries")
async def delivery_history(
    limit: int = Query(10, ge=1, le=100),
    hours_back: int = Query(24, ge=1, le=24 * 30),
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    history = await core.orchestrator.get_user_delivery_history(user_id, limit, hours_back)
    summary = await core.ledger.stats_by_user_and_window(user_id)
    return {"success": True, **history, "summary_30d": summary}


@router.post(
    "/retry-delivery",
    responses={
        404: {"description": "Unknown delivery"},
        409: {"description": "Retry already in progress"},
    },
    summary="Retry a failed delivery",
)
@limiter.limit("5/minute")
async def retry_delivery_endpoint(
    body: RetryDeliveryInput,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    core: OtpCore = Depends(get_core),
    _: None = Depends(check_verification_enabled),
) -> Dict[str, Any]:
    ctx = RequestContext.from_request(request)
    result = await core.orchestrator.retry_delivery(
        user_id, body.delivery_id, body.method, body.service, ctx
    )
    return {"success": result["success"], "delivery": result}
