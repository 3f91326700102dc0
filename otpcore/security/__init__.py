# otpcore/security/__init__.py
"""
Security Package

This package provides:
- The audit log of security events and its background dispatcher
- Suspicious-activity detection with user and admin alerts
- Store-backed request throttling plus the shared slowapi limiter

Feature Flags (controlled in otpcore/db.py):
- SECURITY_MONITORING_ENABLED: pattern detection on every event
- SECURITY_ALERTING_ENABLED: alert notifications for high-risk activity

Submodules:
- audit: AuditLog, EventDispatcher, RequestContext
- monitor: SecurityMonitor
- throttle: RequestThrottle, limiter
"""

from __future__ import annotations

__all__ = [
    "AuditLog",
    "EventDispatcher",
    "RequestContext",
    "SecurityMonitor",
    "RequestThrottle",
    "limiter",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import pattern for clean module loading."""

    if name in ("AuditLog", "EventDispatcher", "RequestContext"):
        from . import audit
        return getattr(audit, name)

    if name == "SecurityMonitor":
        from .monitor import SecurityMonitor
        return SecurityMonitor

    if name in ("RequestThrottle", "limiter"):
        from . import throttle
        return getattr(throttle, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
