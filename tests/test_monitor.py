# tests/test_monitor.py
"""
Security Monitor Tests

Tests for:
- Failure thresholds per action (verification 3, password change 3, default 5)
- High risk -> security_alert_triggered + alert email through the orchestrator
- Admin alert when ADMIN_ALERT_EMAIL is set, owned by no user
- Alerts never count toward the delivery rate limit
- Location change, multiple IPs, rapid requests
- Monitoring / alerting switches and runtime config

Run with: pytest tests/test_monitor.py -v
"""

import pytest

from otpcore.db import TABLE_NOTIFICATION_DELIVERIES
from otpcore.errors import NotFound
from otpcore.security.audit import RequestContext

CTX = RequestContext(ip_address="203.0.113.5", user_agent="pytest")


def _alerts(channels):
    return [m for m in channels.get("phone-email").outbox if m["subject"].startswith("Security Alert")]


@pytest.fixture(autouse=True)
def no_admin_email(monkeypatch):
    monkeypatch.delenv("ADMIN_ALERT_EMAIL", raising=False)


# ============================================================
# Thresholds
# ============================================================

class TestThresholds:

    async def test_failure_thresholds(self, core):
        assert core.monitor.get_failure_threshold("email_verification") == 3
        assert core.monitor.get_failure_threshold("phone_verification") == 3
        assert core.monitor.get_failure_threshold("password_change") == 3
        assert core.monitor.get_failure_threshold("login") == 5

    async def test_default_threshold_is_five(self, core, user, clock, channels):
        for _ in range(4):
            await core.audit.record(user["id"], "login", False, context=CTX)
            clock.advance(seconds=30)
        result = await core.monitor.monitor_activity(user["id"], "login", False, context=CTX)
        assert result["risk_level"] == "low"

        await core.audit.record(user["id"], "login", False, context=CTX)
        result = await core.monitor.monitor_activity(user["id"], "login", False, context=CTX)
        assert result["risk_level"] == "high"
        assert len(_alerts(channels)) == 1


# ============================================================
# Alerting
# ============================================================

class TestAlerting:

    async def _three_failures(self, core, user, clock):
        for _ in range(3):
            await core.audit.record(user["id"], "email_verification", False, context=CTX)
            clock.advance(seconds=30)

    async def test_excessive_failures_send_user_alert(self, core, user, clock, channels):
        await self._three_failures(core, user, clock)

        result = await core.monitor.monitor_activity(user["id"], "email_verification", False, context=CTX)

        assert result["monitored"] is True
        assert result["risk_level"] == "high"
        alerts = _alerts(channels)
        assert len(alerts) == 1
        assert alerts[0]["recipient"] == "alice@example.com"
        assert "203.0.113.5" in alerts[0]["body"]
        assert "excessive_failures" in alerts[0]["body"]

        triggered = await core.audit.get_user_events(user["id"], action="security_alert_triggered")
        assert len(triggered) == 1
        history = await core.ledger.history(user["id"])
        assert [e.notification_type for e in history] == ["securityAlert"]

    async def test_admin_alert_when_configured(self, core, user, clock, channels, monkeypatch):
        monkeypatch.setenv("ADMIN_ALERT_EMAIL", "security@example.com")
        await self._three_failures(core, user, clock)

        await core.monitor.monitor_activity(user["id"], "email_verification", False, context=CTX)

        recipients = [m["recipient"] for m in _alerts(channels)]
        assert recipients == ["alice@example.com", "security@example.com"]

    async def test_admin_alert_is_not_owned_by_the_user(self, core, user, clock, channels, monkeypatch):
        monkeypatch.setenv("ADMIN_ALERT_EMAIL", "security@example.com")
        channels.get("phone-email").fail_methods.add("email")
        channels.get("smtp").fail = True
        await self._three_failures(core, user, clock)

        await core.monitor.monitor_activity(user["id"], "email_verification", False, context=CTX)

        admin_rows = await core.store.select(
            TABLE_NOTIFICATION_DELIVERIES, [("notification_type", "eq", "adminSecurityAlert")]
        )
        assert admin_rows
        assert all(r["user_id"] is None for r in admin_rows)

        history = await core.ledger.history(user["id"])
        assert {e.notification_type for e in history} == {"securityAlert"}
        with pytest.raises(NotFound):
            await core.orchestrator.retry_delivery(user["id"], admin_rows[0]["delivery_id"])

    async def test_alerts_do_not_use_delivery_budget(self, core, user, clock, monkeypatch):
        monkeypatch.setenv("ADMIN_ALERT_EMAIL", "security@example.com")
        report = {
            "risk_level": "high",
            "suspicious_patterns": [{"type": "excessive_failures", "count": 3}],
            "total_attempts": 3,
            "failed_attempts": 3,
        }
        for _ in range(5):
            await core.monitor.handle_suspicious_activity(user["id"], report, CTX)

        prefs = await core.preferences.get_or_create(user["id"])
        status = await core.preferences.check_rate_limit(user["id"], prefs)
        assert status.allowed is True
        assert status.hourly_count == 0

        result = await core.orchestrator.generate_and_send(user["id"], "email", "alice@example.com")
        assert result["service_name"] == "phone-email"

    async def test_alerting_disabled_still_records(self, core, user, clock, channels):
        core.monitor.update_config({"alerting_enabled": False})
        await self._three_failures(core, user, clock)

        await core.monitor.monitor_activity(user["id"], "email_verification", False, context=CTX)

        assert _alerts(channels) == []
        assert len(await core.audit.get_user_events(user["id"], action="security_alert_triggered")) == 1

    async def test_monitoring_disabled(self, core, user, clock, channels):
        core.monitor.update_config({"monitoring_enabled": False})
        await self._three_failures(core, user, clock)

        result = await core.monitor.monitor_activity(user["id"], "email_verification", False)
        assert result == {"monitored": False}
        assert _alerts(channels) == []

    async def test_alert_through_event_dispatcher(self, core, user, channels):
        for _ in range(3):
            core.events.log_event(user["id"], "email_verification", False, {"reason": "invalid_code"}, CTX)
        await core.events.drain()

        assert len(_alerts(channels)) >= 1

    async def test_account_lock_is_only_recommended(self, core, user, clock):
        core.monitor.update_config({"alert_thresholds": {"account_lock_failures": 3}})
        await self._three_failures(core, user, clock)

        await core.monitor.monitor_activity(user["id"], "email_verification", False, context=CTX)

        recommended = await core.audit.get_user_events(user["id"], action="security_measures_recommended")
        assert recommended[0].details["recommended_measures"] == ["temporary_account_lock"]

    async def test_monitor_errors_are_reported_not_raised(self, core, user, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("query failed")

        monkeypatch.setattr(core.audit, "detect_suspicious_activity", broken)
        result = await core.monitor.monitor_activity(user["id"], "login", False)
        assert result["monitored"] is False


# ============================================================
# Specific Patterns
# ============================================================

class TestSpecificPatterns:

    async def test_multiple_ip_attempts(self, core, user, clock):
        for ip in ("198.51.100.1", "198.51.100.2", "198.51.100.3"):
            await core.audit.record(user["id"], "phone_verification", False,
                                    context=RequestContext(ip_address=ip))
            clock.advance(minutes=1)

        assert await core.monitor.check_multiple_ip_attempts(user["id"], "phone_verification", CTX) is True
        events = await core.audit.get_user_events(user["id"], action="multiple_ip_verification_attempts")
        assert events[0].details["unique_ip_count"] == 3

    async def test_two_ips_not_flagged(self, core, user):
        for ip in ("198.51.100.1", "198.51.100.2", "198.51.100.2"):
            await core.audit.record(user["id"], "phone_verification", False,
                                    context=RequestContext(ip_address=ip))

        assert await core.monitor.check_multiple_ip_attempts(user["id"], "phone_verification", CTX) is False

    async def test_location_change_needs_more_than_one_prior_ip(self, core, user, clock):
        await core.audit.record(user["id"], "login", True, context=RequestContext(ip_address="198.51.100.1"))
        clock.advance(minutes=1)
        new_ctx = RequestContext(ip_address="192.0.2.50")
        event = await core.audit.record(user["id"], "password_change", True, context=new_ctx)

        assert await core.monitor.check_location_change(user["id"], new_ctx, event.id) is False

    async def test_location_change_detected(self, core, user, clock):
        for ip in ("198.51.100.1", "198.51.100.2"):
            await core.audit.record(user["id"], "login", True, context=RequestContext(ip_address=ip))
            clock.advance(minutes=1)
        new_ctx = RequestContext(ip_address="192.0.2.50")
        event = await core.audit.record(user["id"], "password_change", True, context=new_ctx)

        assert await core.monitor.check_location_change(user["id"], new_ctx, event.id) is True
        detected = await core.audit.get_user_events(user["id"], action="location_change_detected")
        assert detected[0].details["current_ip"] == "192.0.2.50"

    async def test_known_ip_is_not_a_location_change(self, core, user, clock):
        for ip in ("198.51.100.1", "198.51.100.2"):
            await core.audit.record(user["id"], "login", True, context=RequestContext(ip_address=ip))
            clock.advance(minutes=1)
        ctx = RequestContext(ip_address="198.51.100.1")
        event = await core.audit.record(user["id"], "password_change", True, context=ctx)

        assert await core.monitor.check_location_change(user["id"], ctx, event.id) is False

    async def test_rapid_requests(self, core, user, clock):
        for _ in range(20):
            await core.audit.record(user["id"], "otp_request", True, context=CTX)
            clock.advance(seconds=5)

        assert await core.monitor.check_rapid_requests(user["id"], CTX) is True

    async def test_rapid_requests_below_threshold(self, core, user, clock):
        for _ in range(19):
            await core.audit.record(user["id"], "otp_request", True, context=CTX)

        assert await core.monitor.check_rapid_requests(user["id"], CTX) is False


# ============================================================
# Config and Stats
# ============================================================

class TestConfigAndStats:

    async def test_update_config_ignores_unknown_thresholds(self, core):
        core.monitor.update_config({"alert_thresholds": {"failed_login_attempts": 2, "bogus": 1}})
        assert core.monitor.get_failure_threshold("login") == 2
        assert "bogus" not in core.monitor.thresholds

    async def test_security_stats(self, core, user, clock):
        await core.audit.record(user["id"], "email_verification", False)
        await core.audit.record(user["id"], "security_alert_triggered", True)

        stats = await core.monitor.get_security_stats()
        assert stats["alert_count"] == 1
        assert stats["action_stats"]["email_verification"]["failed"] == 1
        assert stats["monitoring_enabled"] is True
