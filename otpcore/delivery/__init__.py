# otpcore/delivery/__init__.py
"""
Delivery Package

This package provides:
- Channel adapters (phone-email, twilio, smtp) and the service registry
- The delivery ledger (one row per attempt, optimistic versioning)
- Per-service circuit breakers
- The orchestrator: plan walking with fallback, retries, notifications

Submodules:
- channels: ChannelAdapter, StubChannelAdapter, ChannelRegistry
- health: ServiceHealth, CircuitBreaker
- ledger: DeliveryLedger, generate_delivery_id, next_retry_time
- orchestrator: DeliveryOrchestrator
"""

from __future__ import annotations

__all__ = [
    # Channels
    "ChannelAdapter",
    "ChannelMessage",
    "ChannelRegistry",
    "SendOutcome",
    "StubChannelAdapter",
    "get_channel_registry",
    # Health
    "CircuitBreaker",
    "ServiceHealth",
    # Ledger
    "DeliveryLedger",
    "generate_delivery_id",
    "next_retry_time",
    # Orchestrator
    "DeliveryOrchestrator",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import pattern for clean module loading."""

    if name in ("ChannelAdapter", "ChannelMessage", "ChannelRegistry", "SendOutcome",
                "StubChannelAdapter", "get_channel_registry"):
        from . import channels
        return getattr(channels, name)

    if name in ("CircuitBreaker", "ServiceHealth"):
        from . import health
        return getattr(health, name)

    if name in ("DeliveryLedger", "generate_delivery_id", "next_retry_time"):
        from . import ledger
        return getattr(ledger, name)

    if name == "DeliveryOrchestrator":
        from .orchestrator import DeliveryOrchestrator
        return DeliveryOrchestrator

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
