# otpcore/core.py
"""
Service wiring.

build_core() assembles every service over one store and one clock. The app
keeps the result on app.state.core; routes reach it through get_core().
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from otpcore.accounts.auth import UserDirectory
from otpcore.db import DocumentStore, utcnow
from otpcore.delivery.channels import ChannelRegistry, get_channel_registry
from otpcore.delivery.ledger import DeliveryLedger
from otpcore.delivery.orchestrator import DeliveryOrchestrator
from otpcore.errors import ServiceUnavailable
from otpcore.security.audit import AuditLog, EventDispatcher
from otpcore.security.monitor import SecurityMonitor
from otpcore.security.throttle import RequestThrottle
from otpcore.verification.passcodes import PasscodeEngine
from otpcore.verification.preferences import PreferenceResolver


@dataclass
class OtpCore:
    store: DocumentStore
    users: UserDirectory
    audit: AuditLog
    events: EventDispatcher
    monitor: SecurityMonitor
    ledger: DeliveryLedger
    channels: ChannelRegistry
    passcodes: PasscodeEngine
    preferences: PreferenceResolver
    orchestrator: DeliveryOrchestrator
    throttle: RequestThrottle


def build_core(
    store: DocumentStore,
    channels: Optional[ChannelRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
) -> OtpCore:
    channels = channels or get_channel_registry()
    channels.health.clock = clock
    users = UserDirectory(store, clock)
    audit = AuditLog(store, clock)
    events = EventDispatcher(audit)
    ledger = DeliveryLedger(store, clock)
    passcodes = PasscodeEngine(store, users, events, clock)
    preferences = PreferenceResolver(store, ledger, clock)
    orchestrator = DeliveryOrchestrator(passcodes, preferences, ledger, channels, events, clock)
    monitor = SecurityMonitor(audit, users, orchestrator, clock)
    events.monitor = monitor

    return OtpCore(
        store=store,
        users=users,
        audit=audit,
        events=events,
        monitor=monitor,
        ledger=ledger,
        channels=channels,
        passcodes=passcodes,
        preferences=preferences,
        orchestrator=orchestrator,
        throttle=RequestThrottle(store, clock),
    )


def get_core(request: Request) -> OtpCore:
    """FastAPI dependency: the wired services, or 503 before startup completes."""
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise ServiceUnavailable("Service is starting or the database is unavailable")
    return core
