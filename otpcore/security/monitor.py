# otpcore/security/monitor.py
"""
Security monitor.

This module provides:
- SecurityMonitor.monitor_activity(): runs after every recorded security
  event (via EventDispatcher) and reacts to suspicious patterns
- Alerting: security alert emails to the user and ADMIN_ALERT_EMAIL through
  the delivery orchestrator (ledger type securityAlert / adminSecurityAlert)
- Advisory measures: recommended only, never enforced here

Detection:
- Trailing window (default 60 min) with per-action failure thresholds
  (password_change 3, verification actions 3, default 5)
- Location change: successful password change from an IP not seen in the
  user's recent successful events
- Multiple IPs: >= 3 distinct IPs on failed attempts of the same
  verification action within 30 min
- Rapid requests: >= 20 events within 5 min

Feature Flags:
- SECURITY_MONITORING_ENABLED (default on)
- SECURITY_ALERTING_ENABLED (default on)
"""

from __future__ import annotations

import os
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from otpcore.db import _flag_on, to_iso, utcnow
from otpcore.delivery.channels import ChannelMessage
from otpcore.privacy_utils import hash_user_id
from otpcore.security.audit import AuditLog, RequestContext

log = logging.getLogger("otpcore.monitor")

DEFAULT_THRESHOLDS: Dict[str, int] = {
    "failed_login_attempts": 5,
    "failed_otp_attempts": 3,
    "password_change_attempts": 3,
    "time_window_minutes": 60,
    "multiple_ip_window_minutes": 30,
    "multiple_ip_count": 3,
    "rapid_request_threshold": 20,
    "rapid_request_window_minutes": 5,
    "account_lock_failures": 10,
}

_OTP_ACTIONS = (
    "email_verification",
    "phone_verification",
    "email_otp_sent",
    "phone_otp_sent",
)


def _get_admin_alert_email() -> str:
    return os.getenv("ADMIN_ALERT_EMAIL", "").strip()


class SecurityMonitor:
    """
    Reacts to the audit stream.

    Args:
        audit: AuditLog to query and to record monitor findings into.
        users: UserDirectory, for the user's alert address.
        notifier: object with async send_notification(user_id, type, recipient,
            message), normally the DeliveryOrchestrator.
        clock: Current-time source.
    """

    def __init__(
        self,
        audit: AuditLog,
        users=None,
        notifier=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.audit = audit
        self.users = users
        self.notifier = notifier
        self.clock = clock
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        self.monitoring_enabled = _flag_on("SECURITY_MONITORING_ENABLED", default="on")
        self.alerting_enabled = _flag_on("SECURITY_ALERTING_ENABLED", default="on")

    def get_failure_threshold(self, action: str) -> int:
        if action == "password_change":
            return self.thresholds["password_change_attempts"]
        if action in _OTP_ACTIONS:
            return self.thresholds["failed_otp_attempts"]
        return self.thresholds["failed_login_attempts"]

    # ============================================================
    # Entry Point
    # ============================================================

    async def monitor_activity(
        self,
        user_id: str,
        action: str,
        success: bool,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Scan the user's recent activity after an event.

        Returns:
            {"monitored": bool, "risk_level", "patterns"}; errors are logged and
            reported as monitored=False, never raised.
        """
        if not self.monitoring_enabled:
            return {"monitored": False}

        try:
            report = await self.audit.detect_suspicious_activity(
                user_id,
                window_minutes=self.thresholds["time_window_minutes"],
                failure_threshold=self.get_failure_threshold(action),
            )
            if report["risk_level"] == "high":
                await self.handle_suspicious_activity(user_id, report, context)

            await self.check_specific_patterns(user_id, action, success, context, event_id)

            return {
                "monitored": True,
                "risk_level": report["risk_level"],
                "patterns": report["suspicious_patterns"],
            }
        except Exception as e:
            log.error("Security monitoring error for user %s: %s", hash_user_id(user_id), str(e)[:100])
            return {"monitored": False, "error": str(e)[:100]}

    # ============================================================
    # Specific Patterns
    # ============================================================

    async def check_specific_patterns(self, user_id, action, success, context, event_id=None) -> None:
        if action == "password_change" and success:
            await self.check_location_change(user_id, context, event_id)
        if "verification" in action and not success:
            await self.check_multiple_ip_attempts(user_id, action, context)
        if context is not None:
            await self.check_rapid_requests(user_id, context)

    async def check_location_change(self, user_id, context, event_id=None) -> bool:
        current_ip = (context or RequestContext()).ip_address
        recent = await self.audit.get_user_events(user_id, success=True, limit=11)
        recent_ips = []
        for event in recent:
            if event.id == event_id or not event.ip_address:
                continue
            if event.ip_address not in recent_ips:
                recent_ips.append(event.ip_address)

        if len(recent_ips) > 1 and current_ip not in recent_ips:
            await self.audit.record(user_id, "location_change_detected", True, {
                "current_ip": current_ip,
                "recent_ips": recent_ips[:3],
                "action": "password_change",
            }, context)
            log.warning("Location change detected for user %s", hash_user_id(user_id))
            return True
        return False

    async def check_multiple_ip_attempts(self, user_id, action, context) -> bool:
        window = self.thresholds["multiple_ip_window_minutes"]
        since = self.clock() - timedelta(minutes=window)
        attempts = await self.audit.get_user_events(user_id, since=since, action=action, success=False)
        unique_ips = {e.ip_address for e in attempts if e.ip_address}

        if len(unique_ips) >= self.thresholds["multiple_ip_count"]:
            await self.audit.record(user_id, "multiple_ip_verification_attempts", True, {
                "unique_ip_count": len(unique_ips),
                "time_window": window,
                "total_attempts": len(attempts),
            }, context)
            log.warning(
                "Verification attempts from %d IPs for user %s", len(unique_ips), hash_user_id(user_id)
            )
            return True
        return False

    async def check_rapid_requests(self, user_id, context) -> bool:
        window = self.thresholds["rapid_request_window_minutes"]
        since = self.clock() - timedelta(minutes=window)
        recent = await self.audit.get_user_events(user_id, since=since, limit=50)

        if len(recent) >= self.thresholds["rapid_request_threshold"]:
            await self.audit.record(user_id, "rapid_requests_detected", True, {
                "request_count": len(recent),
                "time_window": window,
                "actions": sorted({e.action for e in recent}),
            }, context)
            log.warning("Rapid requests (%d) for user %s", len(recent), hash_user_id(user_id))
            return True
        return False

    # ============================================================
    # Response
    # ============================================================

    async def handle_suspicious_activity(self, user_id, report, context=None) -> None:
        """Record the alert, notify user and admin when alerting is on, recommend measures."""
        try:
            await self.audit.record(user_id, "security_alert_triggered", True, {
                "risk_level": report["risk_level"],
                "patterns": report["suspicious_patterns"],
                "total_attempts": report["total_attempts"],
                "failed_attempts": report["failed_attempts"],
            }, context)
            log.warning(
                "Security alert for user %s (%d patterns)",
                hash_user_id(user_id), len(report["suspicious_patterns"]),
            )

            if self.alerting_enabled and self.notifier is not None:
                await self.send_security_alert(user_id, report, context)
                await self.send_admin_alert(user_id, report, context)

            await self.implement_security_measures(user_id, report)
        except Exception as e:
            log.error("Failed to handle suspicious activity: %s", str(e)[:100])

    def _pattern_lines(self, report) -> str:
        return "\n".join(
            f"- {p['type']}: {p.get('count', 0)} attempts" for p in report["suspicious_patterns"]
        )

    async def send_security_alert(self, user_id, report, context=None) -> Optional[dict]:
        if self.users is None:
            return None
        user = await self.users.get_user(user_id)
        if not user or not user.get("email"):
            return None

        ip = (context or RequestContext()).ip_address
        body = (
            "We detected suspicious activity on your account.\n"
            f"Time: {to_iso(self.clock())}\n"
            f"IP Address: {ip}\n"
            f"Total Attempts: {report['total_attempts']}\n"
            f"Failed Attempts: {report['failed_attempts']}\n"
            f"Detected Patterns:\n{self._pattern_lines(report)}\n"
            "If this was not you, please change your password immediately and contact support."
        )
        return await self.notifier.send_notification(
            user_id,
            "securityAlert",
            user["email"],
            ChannelMessage(subject="Security Alert - Suspicious Activity Detected", body=body),
        )

    async def send_admin_alert(self, user_id, report, context=None) -> Optional[dict]:
        admin_email = _get_admin_alert_email()
        if not admin_email:
            return None

        context = context or RequestContext()
        body = (
            f"User: {hash_user_id(user_id)}\n"
            f"Time: {to_iso(self.clock())}\n"
            f"IP Address: {context.ip_address}\n"
            f"User Agent: {context.user_agent}\n"
            f"Risk Level: {report['risk_level']}\n"
            f"Total Attempts: {report['total_attempts']}\n"
            f"Failed Attempts: {report['failed_attempts']}\n"
            f"Detected Patterns:\n{self._pattern_lines(report)}"
        )
        # Not owned by the user: kept out of their history, retries and delivery budget
        return await self.notifier.send_notification(
            None,
            "adminSecurityAlert",
            admin_email,
            ChannelMessage(subject=f"Security Alert - User {hash_user_id(user_id)}", body=body),
        )

    async def implement_security_measures(self, user_id, report) -> list:
        """Advisory only: record which measures would apply."""
        measures = []
        if report["failed_attempts"] >= self.thresholds["account_lock_failures"]:
            measures.append("temporary_account_lock")
        if any(p["type"] == "rapid_attempts" for p in report["suspicious_patterns"]):
            measures.append("rate_limit_increase")

        if measures:
            await self.audit.record(user_id, "security_measures_recommended", True, {
                "recommended_measures": measures,
                "reason": "suspicious_activity_detected",
            })
        return measures

    # ============================================================
    # Stats and Configuration
    # ============================================================

    async def get_security_stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        since = since or self.clock() - timedelta(days=30)
        action_stats = await self.audit.get_security_stats(since=since)
        alerts = await self.audit.get_user_events(None, since=since, action="security_alert_triggered")
        return {
            "action_stats": action_stats,
            "alert_count": len(alerts),
            "monitoring_enabled": self.monitoring_enabled,
            "alerting_enabled": self.alerting_enabled,
        }

    def update_config(self, config: Dict[str, Any]) -> None:
        """Merge thresholds and switch monitoring/alerting at runtime."""
        thresholds = config.get("alert_thresholds")
        if thresholds:
            unknown = set(thresholds) - set(self.thresholds)
            if unknown:
                log.warning("Ignoring unknown monitor thresholds: %s", ",".join(sorted(unknown)))
            self.thresholds.update({k: v for k, v in thresholds.items() if k in self.thresholds})
        if isinstance(config.get("monitoring_enabled"), bool):
            self.monitoring_enabled = config["monitoring_enabled"]
        if isinstance(config.get("alerting_enabled"), bool):
            self.alerting_enabled = config["alerting_enabled"]
