# otpcore/verification/__init__.py
"""
Verification Package

This package provides:
- Passcode issue and validation (bcrypt-hashed, single use, 5 attempts)
- Delivery preference storage and delivery-plan resolution
- FastAPI routes for /api/verification and /api/delivery-preferences

Feature Flags (controlled in otpcore/db.py):
- VERIFICATION_ENDPOINTS_ENABLED: every route in this package

Submodules:
- passcodes: PasscodeEngine, generate_otp, hash_otp, verify_otp_hash
- preferences: PreferenceResolver, resolve_delivery_plan, is_within_delivery_window
- routes: /api/verification/*
- preference_routes: /api/delivery-preferences/*
"""

from __future__ import annotations

__all__ = [
    # Passcodes
    "PasscodeEngine",
    "generate_otp",
    "hash_otp",
    "verify_otp_hash",
    # Preferences
    "PreferenceResolver",
    "resolve_delivery_plan",
    "is_within_delivery_window",
    # Routes
    "verification_router",
    "preferences_router",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import pattern for clean module loading."""

    if name in ("PasscodeEngine", "generate_otp", "hash_otp", "verify_otp_hash"):
        from . import passcodes
        return getattr(passcodes, name)

    if name in ("PreferenceResolver", "resolve_delivery_plan", "is_within_delivery_window"):
        from . import preferences
        return getattr(preferences, name)

    if name == "verification_router":
        from .routes import router
        return router

    if name == "preferences_router":
        from .preference_routes import router
        return router

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
