# otpcore/security/audit.py
"""
Security audit stream.

This module provides:
- RequestContext: client IP / user agent captured at the route layer
- AuditLog: append-only security_events table (record, query, detection, stats)
- EventDispatcher: record + monitor on background tasks so that audit work
  never fails or delays the primary action

Privacy:
- details never carry plaintext codes; contacts are masked before they are
  written (see otpcore.privacy_utils)
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from otpcore.db import (
    DocumentStore,
    TABLE_SECURITY_EVENTS,
    is_destructive_operations_enabled,
    new_id,
    to_iso,
    utcnow,
)
from otpcore.errors import OperationDisabled
from otpcore.models import SecurityEvent
from otpcore.privacy_utils import hash_user_id

log = logging.getLogger("otpcore.audit")

RAPID_ATTEMPT_MIN_EVENTS = 10
RAPID_ATTEMPT_SPAN = timedelta(minutes=5)


# ============================================================
# Request Context
# ============================================================

@dataclass(frozen=True)
class RequestContext:
    ip_address: str = "unknown"
    user_agent: str = "unknown"

    @classmethod
    def from_request(cls, request) -> "RequestContext":
        """Build from a Starlette request (X-Forwarded-For first, then the socket peer)."""
        if request is None:
            return cls()
        forwarded = request.headers.get("x-forwarded-for", "")
        ip = forwarded.split(",")[0].strip() if forwarded else ""
        if not ip:
            ip = request.headers.get("x-real-ip", "") or (request.client.host if request.client else "")
        return cls(
            ip_address=ip or "unknown",
            user_agent=request.headers.get("user-agent") or "unknown",
        )


SYSTEM_CONTEXT = RequestContext(ip_address="system", user_agent="otpcore")


# ============================================================
# Audit Log
# ============================================================

class AuditLog:
    """Append-only security event store."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def record(
        self,
        user_id: Optional[str],
        action: str,
        success: bool,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> SecurityEvent:
        context = context or SYSTEM_CONTEXT
        row = {
            "id": new_id(),
            "user_id": user_id,
            "action": action,
            "success": bool(success),
            "details": details or {},
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "created_at": to_iso(self.clock()),
        }
        stored = await self.store.insert(TABLE_SECURITY_EVENTS, row)
        log.debug("Security event %s (success=%s) user=%s", action, success, hash_user_id(user_id))
        return SecurityEvent.from_db_row(stored)

    async def get_user_events(
        self,
        user_id: Optional[str],
        since: Optional[datetime] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        """
        Most recent first. user_id=None queries across all users.
        """
        filters = []
        if user_id is not None:
            filters.append(("user_id", "eq", user_id))
        if since is not None:
            filters.append(("created_at", "gte", to_iso(since)))
        if action is not None:
            filters.append(("action", "eq", action))
        if success is not None:
            filters.append(("success", "eq", success))
        rows = await self.store.select(
            TABLE_SECURITY_EVENTS, filters, order_by="created_at", desc=True, limit=limit
        )
        return [SecurityEvent.from_db_row(r) for r in rows]

    async def detect_suspicious_activity(
        self,
        user_id: str,
        window_minutes: int = 60,
        failure_threshold: int = 5,
    ) -> Dict[str, Any]:
        """
        Scan the trailing window for suspicious patterns.

        Patterns:
        - excessive_failures: per action, failures >= failure_threshold
        - rapid_attempts: >= 10 events whose first-to-last span is under 5 minutes

        Returns:
            Report dict with total_attempts, failed_attempts, suspicious_patterns
            and risk_level ("high" if any pattern matched, else "low").
        """
        since = self.clock() - timedelta(minutes=window_minutes)
        events = await self.get_user_events(user_id, since=since)
        failures = [e for e in events if not e.success]

        failures_by_action: Dict[str, List[SecurityEvent]] = defaultdict(list)
        for event in failures:
            failures_by_action[event.action].append(event)

        patterns: List[Dict[str, Any]] = []
        for action, action_failures in failures_by_action.items():
            if len(action_failures) >= failure_threshold:
                patterns.append({
                    "type": "excessive_failures",
                    "action": action,
                    "count": len(action_failures),
                    "time_window": window_minutes,
                    "first_failure": to_iso(action_failures[-1].created_at),
                    "last_failure": to_iso(action_failures[0].created_at),
                })

        if len(events) >= RAPID_ATTEMPT_MIN_EVENTS:
            span = events[0].created_at - events[-1].created_at
            if span < RAPID_ATTEMPT_SPAN:
                patterns.append({
                    "type": "rapid_attempts",
                    "count": len(events),
                    "time_span": span.total_seconds(),
                    "actions": sorted({e.action for e in events}),
                })

        return {
            "user_id": user_id,
            "time_window": window_minutes,
            "total_attempts": len(events),
            "failed_attempts": len(failures),
            "suspicious_patterns": patterns,
            "risk_level": "high" if patterns else "low",
        }

    async def get_security_stats(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, int]]:
        """Per-action totals over [since, until] (default: last 30 days)."""
        until = until or self.clock()
        since = since or until - timedelta(days=30)
        rows = await self.store.select(
            TABLE_SECURITY_EVENTS,
            [("created_at", "gte", to_iso(since)), ("created_at", "lte", to_iso(until))],
        )
        stats: Dict[str, Dict[str, int]] = {}
        for row in rows:
            entry = stats.setdefault(row["action"], {"total": 0, "successful": 0, "failed": 0})
            entry["total"] += 1
            entry["successful" if row.get("success") else "failed"] += 1
        return stats

    async def purge(self, before: datetime) -> int:
        """
        Disabled. Security events are kept; always raises OperationDisabled,
        whatever DESTRUCTIVE_OPERATIONS_ENABLED says.
        """
        log.warning(
            "Audit log cleanup attempted (before %s, destructive flag=%s)",
            to_iso(before), is_destructive_operations_enabled(),
        )
        raise OperationDisabled(
            "Audit log cleanup is disabled to prevent accidental data loss",
            operation="audit_log_cleanup",
        )


# ============================================================
# Event Dispatcher (background task queue)
# ============================================================

class EventDispatcher:
    """
    Record security events and feed them to the monitor off the request path.

    log_event() schedules the work and returns immediately. Failures are logged
    and swallowed. drain() awaits everything scheduled so far (tests, shutdown).
    """

    def __init__(self, audit: AuditLog, monitor=None):
        self.audit = audit
        self.monitor = monitor
        self._pending: Set[asyncio.Task] = set()

    def log_event(
        self,
        user_id: Optional[str],
        action: str,
        success: bool,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._process(user_id, action, success, details or {}, context)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _process(self, user_id, action, success, details, context) -> None:
        try:
            event = await self.audit.record(user_id, action, success, details, context)
        except Exception as e:
            log.error("Failed to record security event %s: %s", action, str(e)[:100])
            return

        if self.monitor is None or not user_id:
            return
        try:
            await self.monitor.monitor_activity(
                user_id, action, success, details, context, event_id=event.id
            )
        except Exception as e:
            log.error("Security monitoring failed for %s: %s", action, str(e)[:100])

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
