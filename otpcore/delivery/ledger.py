# otpcore/delivery/ledger.py
"""
Delivery ledger.

This module provides:
- DeliveryLedger: one notification_deliveries row per dispatch attempt
- Forward-only status transitions with automatic sent/delivered/failed stamps
- Conditional (id + version) claims used by live retries and the retry sweep
- Attempt counts and per-user statistics for rate limiting and history

Retry Schedule:
- attempts counts dispatches of a delivery, starting at 1 for the initial send
- a retry closes the failed row and writes a new pending row with attempts + 1
- on failure with attempts < max_retries: next_retry_at = now + (attempts + 1) * 15 min
- otherwise next_retry_at is cleared and the row is terminal
"""

from __future__ import annotations

import logging
import secrets
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from otpcore.db import DocumentStore, TABLE_NOTIFICATION_DELIVERIES, new_id, to_iso, utcnow
from otpcore.models import (
    NotificationDelivery,
    RETRY_BACKOFF_MINUTES,
    STATUS_TRANSITIONS,
    VERIFICATION_NOTIFICATION_TYPES,
)

log = logging.getLogger("otpcore.ledger")

_STATUS_STAMPS = {
    "sent": "sent_at",
    "delivered": "delivered_at",
    "failed": "failed_at",
    "bounced": "failed_at",
}


def generate_delivery_id(now: datetime) -> str:
    """Correlation id shared by a passcode and all of its ledger rows."""
    return f"delivery_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def next_retry_time(attempts: int, max_retries: int, now: datetime) -> Optional[datetime]:
    """When a failed row becomes eligible for retry, or None if it is terminal."""
    if attempts >= max_retries:
        return None
    return now + timedelta(minutes=(attempts + 1) * RETRY_BACKOFF_MINUTES)


class DeliveryLedger:
    """Persistence for NotificationDelivery rows."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    async def track(self, entry: NotificationDelivery) -> NotificationDelivery:
        """Insert a new ledger row, stamping the status timestamp."""
        now = self.clock()
        data = entry.model_copy(update={
            "id": entry.id or new_id(),
            "created_at": entry.created_at or now,
            "updated_at": now,
        })
        stamp = _STATUS_STAMPS.get(data.status)
        if stamp and getattr(data, stamp) is None:
            data = data.model_copy(update={stamp: now})
        if data.status in ("failed", "bounced") and data.next_retry_at is None and not data.is_terminal:
            # Unscheduled failures are due at once
            data = data.model_copy(update={"next_retry_at": now})
        stored = await self.store.insert(TABLE_NOTIFICATION_DELIVERIES, data.to_row())
        return NotificationDelivery.from_db_row(stored)

    async def _conditional_update(
        self, entry: NotificationDelivery, values: Dict[str, Any]
    ) -> Optional[NotificationDelivery]:
        values = dict(values)
        values["version"] = entry.version + 1
        values["updated_at"] = to_iso(self.clock())
        rows = await self.store.update(
            TABLE_NOTIFICATION_DELIVERIES,
            [("id", "eq", entry.id), ("version", "eq", entry.version), ("status", "eq", entry.status)],
            values,
        )
        return NotificationDelivery.from_db_row(rows[0]) if rows else None

    async def update_status(
        self,
        external_id: str,
        status: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[NotificationDelivery]:
        """
        Apply a provider status update to the row carrying external_id.

        Returns:
            The updated entry, or None if no row matched, the transition is not
            forward, or a concurrent writer won.
        """
        rows = await self.store.select(
            TABLE_NOTIFICATION_DELIVERIES,
            [("external_id", "eq", external_id)],
            order_by="created_at",
            desc=True,
            limit=1,
        )
        if not rows:
            log.warning("Status update for unknown external id %s", external_id)
            return None

        entry = NotificationDelivery.from_db_row(rows[0])
        if status == entry.status:
            return entry
        if status not in STATUS_TRANSITIONS.get(entry.status, set()) or status == "pending":
            log.warning(
                "Rejected status transition %s -> %s for %s", entry.status, status, entry.delivery_id
            )
            return None

        now = self.clock()
        values: Dict[str, Any] = {"status": status}
        stamp = _STATUS_STAMPS.get(status)
        if stamp:
            values[stamp] = to_iso(now)
        if status in ("failed", "bounced"):
            retry_at = next_retry_time(entry.attempts, entry.max_retries, now)
            values["next_retry_at"] = to_iso(retry_at)
        if extra:
            values.update(extra)
        return await self._conditional_update(entry, values)

    async def claim(
        self, entry: NotificationDelivery, values: Optional[Dict[str, Any]] = None
    ) -> Optional[NotificationDelivery]:
        """
        Claim a failed/bounced row for a retry attempt.

        The failed row is closed with an update conditional on (id, version,
        status): of two concurrent claimers exactly one wins, the other gets
        None. The winner gets a new pending row for the same delivery_id with
        attempts incremented; values override its channel/service.
        """
        if entry.status not in ("failed", "bounced") or entry.attempts >= entry.max_retries:
            return None
        closed = await self._conditional_update(
            entry, {"max_retries": entry.attempts, "next_retry_at": None}
        )
        if closed is None:
            return None

        attempt = entry.model_copy(update={
            "id": None,
            "status": "pending",
            "attempts": entry.attempts + 1,
            "max_retries": entry.max_retries,
            "external_id": None,
            "sent_at": None,
            "delivered_at": None,
            "failed_at": None,
            "error": None,
            "next_retry_at": None,
            "estimated_delivery": None,
            "version": 0,
            "created_at": None,
            **(values or {}),
        })
        return await self.track(attempt)

    async def record_outcome(
        self,
        entry: NotificationDelivery,
        success: bool,
        external_id: Optional[str] = None,
        estimated_delivery: Optional[int] = None,
        error: Optional[Dict[str, Any]] = None,
        terminal: bool = False,
    ) -> Optional[NotificationDelivery]:
        """
        Finish a claimed (pending) row with the adapter's outcome.

        terminal=True closes a failed row for good (e.g. its passcode is gone).
        """
        now = self.clock()
        if success:
            values = {
                "status": "sent",
                "sent_at": to_iso(now),
                "external_id": external_id,
                "estimated_delivery": estimated_delivery,
                "error": None,
                "next_retry_at": None,
            }
        else:
            values = {
                "status": "failed",
                "failed_at": to_iso(now),
                "error": error,
                "next_retry_at": to_iso(next_retry_time(entry.attempts, entry.max_retries, now)),
            }
            if terminal:
                values.update({"max_retries": entry.attempts, "next_retry_at": None})
        return await self._conditional_update(entry, values)

    async def close(self, entry: NotificationDelivery) -> Optional[NotificationDelivery]:
        """Make a failed row terminal without another attempt."""
        return await self._conditional_update(
            entry, {"max_retries": entry.attempts, "next_retry_at": None}
        )

    async def close_superseded(self, delivery_id: str, keep_id: Optional[str]) -> int:
        """
        Make every failed row of a delivery terminal except keep_id.

        Fallback attempts write one row each; only one of them carries the
        delivery forward for retries.
        """
        rows = await self.store.select(
            TABLE_NOTIFICATION_DELIVERIES,
            [("delivery_id", "eq", delivery_id), ("status", "in", ["failed", "bounced"])],
        )
        closed = 0
        for row in rows:
            if row["id"] == keep_id:
                continue
            updated = await self.close(NotificationDelivery.from_db_row(row))
            closed += 1 if updated else 0
        return closed

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    async def get(self, delivery_id: str) -> Optional[NotificationDelivery]:
        """
        The row that currently represents a delivery: the most recent one still
        in flight, successful, or retryable; else the most recent row.
        """
        entries = await self.entries_for_delivery(delivery_id)
        if not entries:
            return None
        for entry in reversed(entries):
            if not entry.is_terminal or entry.status == "delivered":
                return entry
        return entries[-1]

    async def entries_for_delivery(self, delivery_id: str) -> List[NotificationDelivery]:
        rows = await self.store.select(
            TABLE_NOTIFICATION_DELIVERIES,
            [("delivery_id", "eq", delivery_id)],
            order_by="created_at",
        )
        return [NotificationDelivery.from_db_row(r) for r in rows]

    async def count_attempts(self, user_id: str, since: datetime) -> int:
        """Passcode dispatches (initial and retries) for a user since a time."""
        return await self.store.count(
            TABLE_NOTIFICATION_DELIVERIES,
            [
                ("user_id", "eq", user_id),
                ("notification_type", "in", sorted(VERIFICATION_NOTIFICATION_TYPES)),
                ("created_at", "gte", to_iso(since)),
            ],
        )

    async def history(
        self, user_id: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[NotificationDelivery]:
        filters = [("user_id", "eq", user_id)]
        if since is not None:
            filters.append(("created_at", "gte", to_iso(since)))
        rows = await self.store.select(
            TABLE_NOTIFICATION_DELIVERIES, filters, order_by="created_at", desc=True, limit=limit
        )
        return [NotificationDelivery.from_db_row(r) for r in rows]

    async def stats_by_user_and_window(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Per-status counts and success rate for a user over the trailing window."""
        since = self.clock() - timedelta(days=days)
        entries = await self.history(user_id, since=since)
        by_status = Counter(e.status for e in entries)
        total = len(entries)
        successful = by_status["sent"] + by_status["delivered"]
        return {
            "total": total,
            "by_status": dict(by_status),
            "successful": successful,
            "failed": by_status["failed"] + by_status["bounced"],
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "days": days,
        }

    async def failed_and_retryable(self, now: Optional[datetime] = None) -> List[NotificationDelivery]:
        """
        Failed/bounced rows whose retry is due.

        Terminal rows have next_retry_at cleared, so the due filter runs in
        the store and never scans closed history.
        """
        now = now or self.clock()
        rows = await self.store.select(
            TABLE_NOTIFICATION_DELIVERIES,
            [("status", "in", ["failed", "bounced"]), ("next_retry_at", "lte", to_iso(now))],
            order_by="created_at",
        )
        due = [e for e in map(NotificationDelivery.from_db_row, rows) if e.attempts < e.max_retries]
        log.debug("Retry sweep candidates: %d", len(due))
        return due
