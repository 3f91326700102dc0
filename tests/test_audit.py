# tests/test_audit.py
"""
Security Audit Tests

Tests for:
- AuditLog record / query (most recent first, filters)
- detect_suspicious_activity (excessive failures, rapid attempts)
- Per-action security stats; audit log cleanup disabled
- EventDispatcher: background recording, failures swallowed
- RequestContext extraction

Run with: pytest tests/test_audit.py -v
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from otpcore.errors import OperationDisabled
from otpcore.security.audit import EventDispatcher, RequestContext, SYSTEM_CONTEXT

CTX = RequestContext(ip_address="203.0.113.5", user_agent="pytest")


# ============================================================
# Record / Query
# ============================================================

class TestAuditLog:
    """Tests for AuditLog."""

    async def test_record_defaults_to_system_context(self, core, clock):
        event = await core.audit.record("u1", "otp_request", True, {"purpose": "email"})

        assert event.ip_address == SYSTEM_CONTEXT.ip_address
        assert event.details == {"purpose": "email"}
        assert event.created_at == clock()

    async def test_events_most_recent_first(self, core, clock):
        for action in ("a", "b", "c"):
            await core.audit.record("u1", action, True, context=CTX)
            clock.advance(seconds=1)

        events = await core.audit.get_user_events("u1")
        assert [e.action for e in events] == ["c", "b", "a"]
        assert len(await core.audit.get_user_events("u1", limit=2)) == 2

    async def test_filters(self, core, clock):
        await core.audit.record("u1", "email_verification", False, context=CTX)
        clock.advance(minutes=10)
        await core.audit.record("u1", "email_verification", True, context=CTX)
        await core.audit.record("u2", "email_verification", False, context=CTX)

        assert len(await core.audit.get_user_events("u1", success=False)) == 1
        assert len(await core.audit.get_user_events("u1", since=clock() - timedelta(minutes=5))) == 1
        assert len(await core.audit.get_user_events(None, action="email_verification")) == 3


# ============================================================
# Detection
# ============================================================

class TestDetectSuspiciousActivity:
    """Tests for detect_suspicious_activity()."""

    async def test_low_risk_below_threshold(self, core, clock):
        for _ in range(2):
            await core.audit.record("u1", "email_verification", False, context=CTX)
            clock.advance(seconds=30)

        report = await core.audit.detect_suspicious_activity("u1", failure_threshold=3)
        assert report["risk_level"] == "low"
        assert report["failed_attempts"] == 2
        assert report["suspicious_patterns"] == []

    async def test_excessive_failures_per_action(self, core, clock):
        for _ in range(3):
            await core.audit.record("u1", "email_verification", False, context=CTX)
            clock.advance(seconds=30)
        await core.audit.record("u1", "login", False, context=CTX)

        report = await core.audit.detect_suspicious_activity("u1", failure_threshold=3)
        assert report["risk_level"] == "high"
        patterns = report["suspicious_patterns"]
        assert len(patterns) == 1
        assert patterns[0]["type"] == "excessive_failures"
        assert patterns[0]["action"] == "email_verification"
        assert patterns[0]["count"] == 3

    async def test_failures_outside_window_ignored(self, core, clock):
        for _ in range(5):
            await core.audit.record("u1", "login", False, context=CTX)
        clock.advance(minutes=61)

        report = await core.audit.detect_suspicious_activity("u1")
        assert report["total_attempts"] == 0
        assert report["risk_level"] == "low"

    async def test_rapid_attempts(self, core, clock):
        for _ in range(10):
            await core.audit.record("u1", "otp_request", True, context=CTX)
            clock.advance(seconds=10)

        report = await core.audit.detect_suspicious_activity("u1")
        types = [p["type"] for p in report["suspicious_patterns"]]
        assert types == ["rapid_attempts"]
        assert report["suspicious_patterns"][0]["time_span"] == 90.0

    async def test_slow_attempts_not_rapid(self, core, clock):
        for _ in range(10):
            await core.audit.record("u1", "otp_request", True, context=CTX)
            clock.advance(minutes=1)

        report = await core.audit.detect_suspicious_activity("u1")
        assert report["risk_level"] == "low"


# ============================================================
# Stats and Purge
# ============================================================

class TestAuditStats:

    async def test_security_stats(self, core):
        await core.audit.record("u1", "email_verification", True)
        await core.audit.record("u1", "email_verification", False)
        await core.audit.record("u2", "otp_request", True)

        stats = await core.audit.get_security_stats()
        assert stats["email_verification"] == {"total": 2, "successful": 1, "failed": 1}
        assert stats["otp_request"]["total"] == 1

    async def test_cleanup_is_disabled(self, core, clock, monkeypatch):
        monkeypatch.setenv("DESTRUCTIVE_OPERATIONS_ENABLED", "on")
        await core.audit.record("u1", "otp_request", True)
        clock.advance(days=100)
        await core.audit.record("u1", "otp_request", True)

        with pytest.raises(OperationDisabled) as exc:
            await core.audit.purge(clock() - timedelta(days=90))
        assert exc.value.code == "OPERATION_DISABLED"
        assert len(await core.audit.get_user_events("u1")) == 2


# ============================================================
# Event Dispatcher
# ============================================================

class TestEventDispatcher:
    """Tests for EventDispatcher."""

    async def test_log_event_records_in_background(self, core):
        core.events.log_event("u1", "otp_request", True, {"purpose": "email"}, CTX)
        await core.events.drain()

        events = await core.audit.get_user_events("u1")
        assert len(events) == 1
        assert events[0].ip_address == "203.0.113.5"

    async def test_record_failure_is_swallowed(self, core, monkeypatch):
        async def broken_insert(table, row):
            raise RuntimeError("database down")

        dispatcher = EventDispatcher(core.audit)
        monkeypatch.setattr(core.store, "insert", broken_insert)

        task = dispatcher.log_event("u1", "otp_request", True)
        await dispatcher.drain()
        assert task.done()
        assert task.exception() is None

    async def test_monitor_failure_is_swallowed(self, core):
        class BrokenMonitor:
            async def monitor_activity(self, *args, **kwargs):
                raise RuntimeError("boom")

        dispatcher = EventDispatcher(core.audit, BrokenMonitor())
        dispatcher.log_event("u1", "otp_request", True)
        await dispatcher.drain()

        assert len(await core.audit.get_user_events("u1")) == 1


# ============================================================
# Request Context
# ============================================================

class TestRequestContext:

    def test_forwarded_for_first_hop(self):
        request = SimpleNamespace(
            headers={"x-forwarded-for": "198.51.100.7, 10.0.0.1", "user-agent": "curl/8"},
            client=SimpleNamespace(host="10.0.0.1"),
        )
        ctx = RequestContext.from_request(request)
        assert ctx.ip_address == "198.51.100.7"
        assert ctx.user_agent == "curl/8"

    def test_falls_back_to_peer(self):
        request = SimpleNamespace(headers={}, client=SimpleNamespace(host="10.0.0.9"))
        ctx = RequestContext.from_request(request)
        assert ctx.ip_address == "10.0.0.9"
        assert ctx.user_agent == "unknown"

    def test_no_request(self):
        assert RequestContext.from_request(None) == RequestContext()
