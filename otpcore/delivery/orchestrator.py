# otpcore/delivery/orchestrator.py
"""
Delivery orchestrator.

This module provides:
- DeliveryOrchestrator.generate_and_send(): window + rate-limit gates, plan,
  fresh passcode, then the plan walked in order until one adapter succeeds
- retry_delivery() / run_retry_sweep(): version-guarded retries of failed rows
- send_notification(): non-passcode messages (security alerts) through the
  same channels and ledger
- Delivery status, per-user history, in-process per-service metrics

Ledger Layout:
- One row per adapter call during the initial walk, all sharing a delivery_id
- After the walk only one row stays live: the successful one, or the first
  failure as the retry carrier; the others are closed
- A retry closes the carrier and writes a new row (pending -> sent | failed)
  with attempts + 1; that row is the carrier for the next retry

Retries of passcode deliveries re-issue the code of the same passcode record
(plaintext is never stored). A consumed or expired passcode closes the row.
"""

from __future__ import annotations

import time
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from otpcore.db import utcnow, to_iso
from otpcore.delivery.channels import ChannelMessage, ChannelRegistry, SendOutcome, verification_message
from otpcore.delivery.ledger import DeliveryLedger, generate_delivery_id, next_retry_time
from otpcore.errors import (
    DeliveryExhausted,
    InvalidOrExpired,
    NotFound,
    OtpCoreError,
    OutsideDeliveryWindow,
    RateLimitExceeded,
    RetryConflict,
    ValidationError,
)
from otpcore.models import (
    DELIVERY_MAX_RETRIES,
    METHOD_FOR_PURPOSE,
    VERIFICATION_NOTIFICATION_TYPES,
    NotificationDelivery,
    notification_type_for,
)
from otpcore.privacy_utils import hash_user_id, mask_contact

log = logging.getLogger("otpcore.orchestrator")


def _method_for_recipient(recipient: str) -> str:
    return "email" if "@" in (recipient or "") else "sms"


class DeliveryOrchestrator:
    """
    Executes delivery plans across channel adapters.

    Args:
        passcodes: PasscodeEngine.
        preferences: PreferenceResolver.
        ledger: DeliveryLedger.
        channels: ChannelRegistry.
        events: EventDispatcher (optional).
        clock: Current-time source.
    """

    def __init__(
        self,
        passcodes,
        preferences,
        ledger: DeliveryLedger,
        channels: ChannelRegistry,
        events=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.passcodes = passcodes
        self.preferences = preferences
        self.ledger = ledger
        self.channels = channels
        self.events = events
        self.clock = clock
        self._metrics: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"attempts": 0, "successes": 0, "failures": 0, "total_latency_ms": 0.0}
        )

    def _emit(self, user_id, action, success, details=None, context=None) -> None:
        if self.events is not None:
            self.events.log_event(user_id, action, success, details, context)

    # ============================================================
    # Dispatch
    # ============================================================

    async def _dispatch(
        self, service: str, method: str, recipient: str, message: ChannelMessage
    ) -> SendOutcome:
        adapter = self.channels.get(service)
        if adapter is None:
            return SendOutcome(False, error=f"Unknown service {service}", error_code="UNKNOWN_SERVICE")

        started = time.perf_counter()
        try:
            outcome = await adapter.send(method, recipient, message, adapter.display_name)
        except Exception as e:
            log.error("Adapter %s raised: %s", service, str(e)[:100])
            outcome = SendOutcome(False, error=str(e)[:200], error_code="ADAPTER_ERROR")
        latency_ms = (time.perf_counter() - started) * 1000

        stats = self._metrics[service]
        stats["attempts"] += 1
        stats["successes" if outcome.success else "failures"] += 1
        stats["total_latency_ms"] += latency_ms
        self.channels.health.record(service, outcome.success)
        return outcome

    async def _walk(
        self,
        user_id: Optional[str],
        delivery_id: str,
        notification_type: str,
        recipient: str,
        message: ChannelMessage,
        plan: List[Tuple[str, str]],
        context: Dict[str, Any],
    ) -> Tuple[Optional[NotificationDelivery], List[dict], List[NotificationDelivery]]:
        """
        Call adapters in plan order, one ledger row each, until one succeeds.

        Returns:
            (successful row or None, attempt summaries, all rows written)
        """
        summaries: List[dict] = []
        rows: List[NotificationDelivery] = []
        for service, method in plan:
            outcome = await self._dispatch(service, method, recipient, message)
            now = self.clock()
            entry = NotificationDelivery(
                user_id=user_id,
                delivery_id=delivery_id,
                notification_type=notification_type,
                channel=method,
                service=service,
                recipient=recipient,
                status="sent" if outcome.success else "failed",
                external_id=outcome.external_id,
                attempts=1,
                error=None if outcome.success else {"message": outcome.error or "Delivery failed",
                                                     "code": outcome.error_code},
                context=context,
                next_retry_at=None if outcome.success else next_retry_time(1, DELIVERY_MAX_RETRIES, now),
                max_retries=DELIVERY_MAX_RETRIES,
                estimated_delivery=outcome.estimated_delivery,
            )
            tracked = await self.ledger.track(entry)
            rows.append(tracked)
            summaries.append({
                "service": service,
                "method": method,
                "success": outcome.success,
                "error": outcome.error,
                "error_code": outcome.error_code,
            })
            if outcome.success:
                return tracked, summaries, rows
            log.warning(
                "Delivery %s via %s/%s failed (%s), trying next",
                delivery_id, service, method, outcome.error_code,
            )
        return None, summaries, rows

    # ============================================================
    # Generate and Send
    # ============================================================

    async def generate_and_send(self, user_id: str, purpose: str, contact: str, context=None) -> dict:
        """
        Issue a passcode and deliver it.

        Returns:
            Dict with delivery_id, expires_at, service_name, delivery_method,
            estimated_delivery, attempts, fallbacks_used.

        Raises:
            OutsideDeliveryWindow, RateLimitExceeded, DeliveryExhausted.
        """
        prefs = await self.preferences.get_or_create(user_id)
        now = self.clock()

        if not self.preferences.is_within_delivery_window(prefs, now):
            window = prefs.delivery_window
            raise OutsideDeliveryWindow(
                start_time=window.start_time, end_time=window.end_time, timezone=window.timezone,
            )

        rate = await self.preferences.check_rate_limit(user_id, prefs)
        if not rate.allowed:
            raise RateLimitExceeded(
                "Delivery rate limit exceeded. Please try again later.",
                hourly_count=rate.hourly_count,
                daily_count=rate.daily_count,
                hourly_limit=rate.hourly_limit,
                daily_limit=rate.daily_limit,
            )

        method = METHOD_FOR_PURPOSE[purpose]
        plan = self.preferences.resolve_delivery_plan(prefs, self.channels.available_services([method]))
        if not plan:
            log.error("No delivery service can reach %s for user %s", method, hash_user_id(user_id))
            raise DeliveryExhausted("No delivery service available", attempts=[])

        issued = await self.passcodes.create_passcode(user_id, purpose, contact, context)
        delivery_id = issued["delivery_id"]

        success, attempts, rows = await self._walk(
            user_id,
            delivery_id,
            notification_type_for(purpose),
            contact,
            verification_message(issued["code"], purpose),
            [(p.service, p.method) for p in plan],
            {"purpose": purpose},
        )

        if success is None:
            await self.ledger.close_superseded(delivery_id, keep_id=rows[0].id)
            await self.passcodes.update_delivery(delivery_id, "failed")
            log.error(
                "All %d delivery attempts failed for user %s (%s)",
                len(attempts), hash_user_id(user_id), mask_contact(contact),
            )
            self._emit(user_id, f"{purpose}_otp_send_failed", False,
                       {"delivery_id": delivery_id, "attempts": len(attempts)}, context)
            raise DeliveryExhausted(delivery_id=delivery_id, attempts=attempts)

        await self.ledger.close_superseded(delivery_id, keep_id=success.id)
        await self.passcodes.update_delivery(delivery_id, "sent", success.channel, success.service)

        fallbacks_used = len(attempts) - 1
        log.info(
            "OTP delivered for user %s via %s/%s (fallbacks=%d)",
            hash_user_id(user_id), success.service, success.channel, fallbacks_used,
        )
        self._emit(user_id, f"{purpose}_otp_sent", True, {
            "delivery_id": delivery_id,
            "service": success.service,
            "method": success.channel,
            "fallbacks_used": fallbacks_used,
        }, context)

        return {
            "delivery_id": delivery_id,
            "expires_at": to_iso(issued["expires_at"]),
            "service_name": success.service,
            "display_name": self.channels.display_name(success.service),
            "delivery_method": success.channel,
            "estimated_delivery": success.estimated_delivery,
            "attempts": attempts,
            "fallbacks_used": fallbacks_used,
        }

    # ============================================================
    # Notifications (non-passcode)
    # ============================================================

    async def send_notification(
        self,
        user_id: Optional[str],
        notification_type: str,
        recipient: str,
        message: ChannelMessage,
    ) -> dict:
        """
        Deliver a message through every service able to reach recipient, in
        catalog order, until one succeeds. The message is kept in the ledger
        row's context so retries can resend it. Failures are reported, not raised.

        user_id=None records the rows without an owner (admin alerts): no user
        can see or retry them, and the retry sweep still picks them up.
        Notifications never count toward a user's passcode delivery limits.
        """
        method = _method_for_recipient(recipient)
        plan = [(s.service_name, method) for s in self.channels.available_services([method])]
        delivery_id = generate_delivery_id(self.clock())
        if not plan:
            log.error("No service for %s notification to %s", notification_type, mask_contact(recipient))
            return {"delivery_id": delivery_id, "success": False, "attempts": []}

        success, attempts, rows = await self._walk(
            user_id, delivery_id, notification_type, recipient, message, plan,
            {"message": {"subject": message.subject, "body": message.body}},
        )
        keep = success.id if success else rows[0].id
        await self.ledger.close_superseded(delivery_id, keep_id=keep)
        return {
            "delivery_id": delivery_id,
            "success": success is not None,
            "service_name": success.service if success else None,
            "attempts": attempts,
        }

    # ============================================================
    # Retries
    # ============================================================

    def _retry_target(self, entry: NotificationDelivery, method: Optional[str], service: Optional[str]):
        method = method or entry.channel
        if method != _method_for_recipient(entry.recipient):
            raise ValidationError(f"Method {method} cannot reach this recipient", field="method")

        if service is None:
            adapter = self.channels.get(entry.service)
            if (
                adapter is not None
                and method in adapter.capabilities
                and self.channels.health.is_available(entry.service)
            ):
                service = entry.service
            else:
                available = self.channels.available_services([method])
                if not available:
                    raise ValidationError(f"No service available for {method}", field="method")
                service = available[0].service_name
        else:
            adapter = self.channels.get(service)
            if adapter is None or method not in adapter.capabilities:
                raise ValidationError(f"Service {service} does not support {method}", field="service")
        return method, service

    async def _retry_entry(
        self,
        entry: NotificationDelivery,
        method: Optional[str] = None,
        service: Optional[str] = None,
        context=None,
    ) -> dict:
        if entry.status not in ("failed", "bounced") or entry.attempts >= entry.max_retries:
            raise ValidationError(
                "Delivery cannot be retried", status=entry.status,
                attempts=entry.attempts, max_retries=entry.max_retries,
            )

        is_passcode = entry.notification_type in VERIFICATION_NOTIFICATION_TYPES
        if is_passcode:
            passcode = await self.passcodes.get_by_delivery_id(entry.delivery_id)
            if passcode is None or not passcode.is_active(self.clock()):
                await self.ledger.close(entry)
                raise InvalidOrExpired("Verification code expired. Please request a new one.")

        method, service = self._retry_target(entry, method, service)

        claimed = await self.ledger.claim(entry, {"channel": method, "service": service})
        if claimed is None:
            raise RetryConflict(delivery_id=entry.delivery_id)

        if is_passcode:
            code = await self.passcodes.reissue_code(entry.delivery_id)
            if code is None:
                await self.ledger.record_outcome(
                    claimed, False,
                    error={"message": "Passcode no longer active", "code": "PASSCODE_INACTIVE"},
                    terminal=True,
                )
                raise InvalidOrExpired("Verification code expired. Please request a new one.")
            message = verification_message(code, entry.context.get("purpose", "email"))
        else:
            stored = entry.context.get("message") or {}
            message = ChannelMessage(subject=stored.get("subject", ""), body=stored.get("body", ""))

        outcome = await self._dispatch(service, method, entry.recipient, message)
        result = await self.ledger.record_outcome(
            claimed,
            outcome.success,
            external_id=outcome.external_id,
            estimated_delivery=outcome.estimated_delivery,
            error=None if outcome.success else {"message": outcome.error or "Delivery failed",
                                                 "code": outcome.error_code},
        )
        final = result or claimed

        if is_passcode:
            purpose = entry.context.get("purpose", "email")
            status = "sent" if outcome.success else "failed"
            await self.passcodes.update_delivery(entry.delivery_id, status, method, service)
            self._emit(
                entry.user_id,
                f"{purpose}_otp_sent" if outcome.success else f"{purpose}_otp_send_failed",
                outcome.success,
                {"delivery_id": entry.delivery_id, "service": service, "retry": True,
                 "attempt": final.attempts},
                context,
            )

        log.info(
            "Retry of %s via %s/%s %s (attempt %d/%d)",
            entry.delivery_id, service, method,
            "succeeded" if outcome.success else "failed", final.attempts, final.max_retries,
        )
        return {
            "delivery_id": entry.delivery_id,
            "success": outcome.success,
            "status": final.status,
            "service_name": service,
            "delivery_method": method,
            "attempts": final.attempts,
            "max_retries": final.max_retries,
            "estimated_delivery": final.estimated_delivery,
            "next_retry_at": to_iso(final.next_retry_at),
            "error": outcome.error,
        }

    async def retry_delivery(
        self,
        user_id: str,
        delivery_id: str,
        method: Optional[str] = None,
        service: Optional[str] = None,
        context=None,
    ) -> dict:
        """
        Retry a failed delivery now, through the same or a chosen adapter.

        Raises:
            NotFound: unknown delivery id or owned by another user.
            ValidationError: terminal entry or unusable method/service.
            InvalidOrExpired: the passcode behind the delivery is gone.
            RetryConflict: another retry claimed the entry first.
        """
        entry = await self.ledger.get(delivery_id)
        if entry is None or entry.user_id != user_id:
            raise NotFound("Delivery not found", delivery_id=delivery_id)
        return await self._retry_entry(entry, method, service, context)

    async def run_retry_sweep(self) -> dict:
        """Re-dispatch every failed entry whose retry is due."""
        due = await self.ledger.failed_and_retryable(self.clock())
        summary = {"processed": len(due), "succeeded": 0, "failed": 0, "skipped": 0}
        for entry in due:
            try:
                result = await self._retry_entry(entry)
            except RetryConflict:
                summary["skipped"] += 1
                continue
            except OtpCoreError as e:
                log.info("Retry sweep skipped %s: %s", entry.delivery_id, e.code)
                summary["skipped"] += 1
                continue
            summary["succeeded" if result["success"] else "failed"] += 1
        if due:
            log.info("Retry sweep: %s", summary)
        return summary

    # ============================================================
    # Status, History, Metrics
    # ============================================================

    async def get_delivery_status(self, user_id: str, delivery_id: str) -> dict:
        entry = await self.ledger.get(delivery_id)
        if entry is None or entry.user_id != user_id:
            raise NotFound("Delivery not found", delivery_id=delivery_id)

        now = self.clock()
        status = entry.status
        expires_at = None
        verified = None
        if entry.notification_type in VERIFICATION_NOTIFICATION_TYPES:
            passcode = await self.passcodes.get_by_delivery_id(delivery_id)
            if passcode is not None:
                expires_at = passcode.expires_at
                verified = passcode.verified_at is not None
                if not passcode.verified and passcode.is_expired(now):
                    status = "expired"

        return {
            "delivery_id": delivery_id,
            "status": status,
            "service_name": entry.service,
            "delivery_method": entry.channel,
            "attempts": entry.attempts,
            "max_retries": entry.max_retries,
            "sent_at": to_iso(entry.sent_at),
            "delivered_at": to_iso(entry.delivered_at),
            "failed_at": to_iso(entry.failed_at),
            "next_retry_at": to_iso(entry.next_retry_at),
            "estimated_delivery": entry.estimated_delivery,
            "error": entry.error.model_dump() if entry.error else None,
            "can_retry": status in ("failed", "bounced") and entry.attempts < entry.max_retries,
            "expires_at": to_iso(expires_at),
            "verified": verified,
        }

    async def get_user_delivery_history(self, user_id: str, limit: int = 10, hours_back: int = 24) -> dict:
        since = self.clock() - timedelta(hours=hours_back)
        entries = await self.ledger.history(user_id, since=since)
        statuses = Counter(e.status for e in entries)
        return {
            "deliveries": [
                {
                    "delivery_id": e.delivery_id,
                    "notification_type": e.notification_type,
                    "service_name": e.service,
                    "delivery_method": e.channel,
                    "recipient": mask_contact(e.recipient),
                    "status": e.status,
                    "attempts": e.attempts,
                    "created_at": to_iso(e.created_at),
                    "sent_at": to_iso(e.sent_at),
                    "failed_at": to_iso(e.failed_at),
                    "error": e.error.model_dump() if e.error else None,
                }
                for e in entries[:limit]
            ],
            "stats": {
                "total": len(entries),
                "successful": statuses["sent"] + statuses["delivered"],
                "failed": statuses["failed"] + statuses["bounced"],
                "pending": statuses["pending"],
                "by_service": dict(Counter(e.service for e in entries)),
                "by_method": dict(Counter(e.channel for e in entries)),
            },
            "hours_back": hours_back,
        }

    def get_service_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-service attempts, successes, failures, average latency, error rate and circuit state."""
        metrics = {}
        for service, stats in self._metrics.items():
            attempts = int(stats["attempts"])
            metrics[service] = {
                "attempts": attempts,
                "successes": int(stats["successes"]),
                "failures": int(stats["failures"]),
                "average_latency_ms": round(stats["total_latency_ms"] / attempts, 2) if attempts else 0.0,
                "error_rate": round(stats["failures"] / attempts * 100, 2) if attempts else 0.0,
                "circuit_state": self.channels.health.state(service),
            }
        return metrics
