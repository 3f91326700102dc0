# otpcore/verification/passcodes.py
"""
Passcode engine: OTP lifecycle.

This module provides:
- OTP generation, hashing, and verification utilities
- PasscodeEngine: create, validate, reissue, cleanup, stats

Security:
- OTP is 6 digits (000000-999999), drawn from `secrets`
- OTP hashed with bcrypt before storage (never store plaintext)
- TTL: 10 minutes
- Max attempts: 5 per OTP; the attempt after the 5th failure consumes the record
- Single active OTP per (user, purpose, contact): creating one consumes the rest
- Single-use: consumed on successful verification

Rate Limits (enforced in this module):
- Per (user, purpose): 3 creations per 15 minutes
- Per-user/IP request throttle: otpcore.security.throttle (route level)

Concurrency:
- Attempt increments and consumption are conditional single-row updates on
  the value that was read; a lost race re-reads instead of overwriting.
- A new record is inserted before the creation window is counted, so
  concurrent creations count each other; one over the limit removes its own
  record.
"""

from __future__ import annotations

import os
import asyncio
import secrets
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import bcrypt

from otpcore.db import DocumentStore, TABLE_PASSCODES, new_id, to_iso, utcnow
from otpcore.delivery.ledger import generate_delivery_id
from otpcore.errors import (
    InvalidCode,
    InvalidOrExpired,
    RateLimitExceeded,
    ServiceUnavailable,
    TooManyAttempts,
)
from otpcore.models import (
    OTP_MAX_ATTEMPTS,
    OTP_RATE_LIMIT_MAX_CREATIONS,
    OTP_RATE_LIMIT_WINDOW_MINUTES,
    Passcode,
)
from otpcore.privacy_utils import hash_user_id, mask_contact

log = logging.getLogger("otpcore.passcodes")

# Re-reads allowed when a concurrent validation wins the attempt counter
_MAX_INCREMENT_TRIES = 3


# ============================================================
# OTP Utilities
# ============================================================

def _get_bcrypt_rounds() -> int:
    """bcrypt cost factor from OTP_BCRYPT_ROUNDS (default 12)."""
    try:
        rounds = int(os.getenv("OTP_BCRYPT_ROUNDS", "12"))
    except ValueError:
        return 12
    return min(max(rounds, 4), 31)


def generate_otp() -> str:
    """
    Generate a secure 6-digit OTP.

    Returns:
        String of 6 digits (e.g., "123456", "000001").
    """
    return f"{secrets.randbelow(1000000):06d}"


def hash_otp(otp: str, rounds: Optional[int] = None) -> str:
    """Salted bcrypt hash of an OTP."""
    salt = bcrypt.gensalt(rounds=rounds or _get_bcrypt_rounds())
    return bcrypt.hashpw(otp.encode("utf-8"), salt).decode("utf-8")


def verify_otp_hash(otp: str, otp_hash: str) -> bool:
    """Constant-time check of an OTP against its bcrypt hash."""
    try:
        return bcrypt.checkpw(otp.encode("utf-8"), otp_hash.encode("utf-8"))
    except ValueError:
        log.error("Malformed passcode hash")
        return False


# ============================================================
# Passcode Engine
# ============================================================

class PasscodeEngine:
    """
    Manages the passcode lifecycle: create, validate, reissue, cleanup.

    Args:
        store: Document store.
        users: UserDirectory, flips the contact verification flag on success.
        events: EventDispatcher for security events (optional).
        clock: Current-time source.
    """

    def __init__(
        self,
        store: DocumentStore,
        users,
        events=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.users = users
        self.events = events
        self.clock = clock
        self.rounds = _get_bcrypt_rounds()

    def _emit(self, user_id, action, success, details=None, context=None) -> None:
        if self.events is not None:
            self.events.log_event(user_id, action, success, details, context)

    async def _hash(self, code: str) -> str:
        return await asyncio.to_thread(hash_otp, code, self.rounds)

    async def _check(self, code: str, otp_hash: str) -> bool:
        return await asyncio.to_thread(verify_otp_hash, code, otp_hash)

    def _active_filters(self, user_id: str, purpose: str, contact: str, now: datetime):
        return [
            ("user_id", "eq", user_id),
            ("purpose", "eq", purpose),
            ("contact", "eq", contact),
            ("verified", "eq", False),
            ("expires_at", "gt", to_iso(now)),
        ]

    async def _consume(self, passcode_id: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        values = {"verified": True, "updated_at": to_iso(self.clock())}
        if extra:
            values.update(extra)
        rows = await self.store.update(
            TABLE_PASSCODES, [("id", "eq", passcode_id), ("verified", "eq", False)], values
        )
        return bool(rows)

    # ------------------------------------------------------------
    # Create
    # ------------------------------------------------------------

    def _rate_limited(self, user_id: str, purpose: str, recent: int, context=None):
        log.info(
            "Passcode rate limit for user %s (%s, %d in %dm)",
            hash_user_id(user_id), purpose, recent, OTP_RATE_LIMIT_WINDOW_MINUTES,
        )
        self._emit(user_id, "otp_request", False,
                   {"purpose": purpose, "reason": "rate_limited"}, context)
        raise RateLimitExceeded(
            "Too many verification codes requested. Please try again later.",
            retry_after_minutes=OTP_RATE_LIMIT_WINDOW_MINUTES,
        )

    async def create_passcode(self, user_id: str, purpose: str, contact: str, context=None) -> dict:
        """
        Issue a new passcode for (user, purpose, contact).

        Returns:
            Dict with code (plaintext, for the delivery step only), expires_at,
            passcode_id, delivery_id.

        Raises:
            RateLimitExceeded: 3 or more creations for (user, purpose) in 15 minutes.

        The new record is inserted before the window is counted, so concurrent
        creations see each other: a creation that finds itself over the limit
        deletes its own record and fails.
        """
        now = self.clock()
        window = [
            ("user_id", "eq", user_id),
            ("purpose", "eq", purpose),
            ("created_at", "gte", to_iso(now - timedelta(minutes=OTP_RATE_LIMIT_WINDOW_MINUTES))),
        ]

        # Early out before paying for a hash
        recent = await self.store.count(TABLE_PASSCODES, window)
        if recent >= OTP_RATE_LIMIT_MAX_CREATIONS:
            self._rate_limited(user_id, purpose, recent, context)

        code = generate_otp()
        otp_hash = await self._hash(code)
        now = self.clock()
        expires_at = Passcode.compute_expiry(now)
        row = {
            "id": new_id(),
            "user_id": user_id,
            "purpose": purpose,
            "contact": contact,
            "otp_hash": otp_hash,
            "expires_at": to_iso(expires_at),
            "attempts": 0,
            "verified": False,
            "verified_at": None,
            "delivery_id": generate_delivery_id(now),
            "delivery_status": "pending",
            "delivery_method": None,
            "delivery_service": None,
            "created_at": to_iso(now),
            "updated_at": to_iso(now),
        }
        stored = await self.store.insert(TABLE_PASSCODES, row)

        recent = await self.store.count(TABLE_PASSCODES, window)
        if recent > OTP_RATE_LIMIT_MAX_CREATIONS:
            await self.store.delete(TABLE_PASSCODES, [("id", "eq", stored["id"])])
            self._rate_limited(user_id, purpose, recent - 1, context)

        # Single active passcode per (user, purpose, contact): older ones are consumed
        superseded = await self.store.update(
            TABLE_PASSCODES,
            [
                ("user_id", "eq", user_id),
                ("purpose", "eq", purpose),
                ("contact", "eq", contact),
                ("verified", "eq", False),
                ("id", "neq", stored["id"]),
                ("created_at", "lte", row["created_at"]),
            ],
            {"verified": True, "updated_at": to_iso(now)},
        )

        log.info(
            "Passcode created for user %s (%s, %s, superseded=%d)",
            hash_user_id(user_id), purpose, mask_contact(contact), len(superseded),
        )
        self._emit(user_id, "otp_request", True,
                   {"purpose": purpose, "contact": mask_contact(contact)}, context)

        return {
            "code": code,
            "expires_at": expires_at,
            "passcode_id": stored["id"],
            "delivery_id": stored["delivery_id"],
        }

    # ------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------

    async def _latest_active(self, user_id, purpose, contact) -> Optional[Passcode]:
        rows = await self.store.select(
            TABLE_PASSCODES,
            self._active_filters(user_id, purpose, contact, self.clock()),
            order_by="created_at",
            desc=True,
            limit=1,
        )
        return Passcode.from_db_row(rows[0]) if rows else None

    async def validate_passcode(
        self, user_id: str, purpose: str, contact: str, candidate: str, context=None
    ) -> dict:
        """
        Check a candidate code against the active passcode for the tuple.

        Returns:
            Dict with verified=True, passcode_id, delivery_id.

        Raises:
            InvalidOrExpired: no active passcode (or it was consumed concurrently).
            TooManyAttempts: 5 attempts already used; the passcode is consumed.
            InvalidCode: mismatch, with attempts_remaining.
        """
        action = f"{purpose}_verification"
        candidate = (candidate or "").strip()

        record: Optional[Passcode] = None
        for _ in range(_MAX_INCREMENT_TRIES):
            record = await self._latest_active(user_id, purpose, contact)
            if record is None:
                log.info("No active passcode for user %s (%s)", hash_user_id(user_id), purpose)
                self._emit(user_id, action, False, {"reason": "invalid_or_expired"}, context)
                raise InvalidOrExpired()

            if record.is_locked:
                await self._consume(record.id)
                log.warning("Passcode locked (max attempts) for user %s", hash_user_id(user_id))
                self._emit(user_id, action, False, {"reason": "too_many_attempts"}, context)
                raise TooManyAttempts()

            claimed = await self.store.update(
                TABLE_PASSCODES,
                [
                    ("id", "eq", record.id),
                    ("attempts", "eq", record.attempts),
                    ("verified", "eq", False),
                ],
                {"attempts": record.attempts + 1, "updated_at": to_iso(self.clock())},
            )
            if claimed:
                record = Passcode.from_db_row(claimed[0])
                break
            record = None

        if record is None:
            log.warning("Attempt counter contention for user %s", hash_user_id(user_id))
            raise ServiceUnavailable("Verification is busy. Please try again.")

        if not await self._check(candidate, record.otp_hash):
            remaining = max(OTP_MAX_ATTEMPTS - record.attempts, 0)
            log.info(
                "Passcode mismatch for user %s, %d attempts remaining",
                hash_user_id(user_id), remaining,
            )
            self._emit(user_id, action, False,
                       {"reason": "invalid_code", "attempts_remaining": remaining}, context)
            raise InvalidCode(remaining)

        now = self.clock()
        if not await self._consume(record.id, {"verified_at": to_iso(now)}):
            # A concurrent validation already consumed it
            self._emit(user_id, action, False, {"reason": "already_consumed"}, context)
            raise InvalidOrExpired()

        await self.users.mark_contact_verified(user_id, purpose, contact)

        log.info("Passcode verified for user %s (%s)", hash_user_id(user_id), purpose)
        self._emit(user_id, action, True,
                   {"contact": mask_contact(contact), "delivery_id": record.delivery_id}, context)
        return {"verified": True, "passcode_id": record.id, "delivery_id": record.delivery_id}

    # ------------------------------------------------------------
    # Delivery Linkage
    # ------------------------------------------------------------

    async def get_by_delivery_id(self, delivery_id: str) -> Optional[Passcode]:
        rows = await self.store.select(
            TABLE_PASSCODES, [("delivery_id", "eq", delivery_id)], limit=1
        )
        return Passcode.from_db_row(rows[0]) if rows else None

    async def reissue_code(self, delivery_id: str) -> Optional[str]:
        """
        Replace the code of an active passcode for a delivery retry.

        Expiry and attempt counter are unchanged. Returns the new plaintext
        code, or None if the passcode is consumed, expired, or changed
        concurrently.
        """
        record = await self.get_by_delivery_id(delivery_id)
        if record is None or not record.is_active(self.clock()):
            return None

        code = generate_otp()
        rows = await self.store.update(
            TABLE_PASSCODES,
            [
                ("id", "eq", record.id),
                ("verified", "eq", False),
                ("otp_hash", "eq", record.otp_hash),
            ],
            {"otp_hash": await self._hash(code), "updated_at": to_iso(self.clock())},
        )
        if not rows:
            return None
        log.info("Passcode reissued for delivery %s", delivery_id)
        return code

    async def update_delivery(
        self,
        delivery_id: str,
        status: str,
        method: Optional[str] = None,
        service: Optional[str] = None,
    ) -> bool:
        """Keep the passcode's delivery fields in step with the ledger."""
        values: Dict[str, Any] = {"delivery_status": status, "updated_at": to_iso(self.clock())}
        if method:
            values["delivery_method"] = method
        if service:
            values["delivery_service"] = service
        rows = await self.store.update(TABLE_PASSCODES, [("delivery_id", "eq", delivery_id)], values)
        return bool(rows)

    # ------------------------------------------------------------
    # Maintenance and Stats
    # ------------------------------------------------------------

    async def cleanup_expired(self, before: Optional[datetime] = None) -> int:
        """
        Delete passcodes past expiry.

        Args:
            before: Delete records that expired before this instant (default: now).

        Returns:
            Number of records deleted.
        """
        cutoff = before or self.clock()
        deleted = await self.store.delete(TABLE_PASSCODES, [("expires_at", "lt", to_iso(cutoff))])
        if deleted:
            log.info("Cleaned up %d expired passcodes", len(deleted))
        return len(deleted)

    async def get_passcode_stats(self, user_id: Optional[str] = None) -> dict:
        filters = [("user_id", "eq", user_id)] if user_id else []
        rows = await self.store.select(TABLE_PASSCODES, filters)
        now = self.clock()
        records = [Passcode.from_db_row(r) for r in rows]
        return {
            "total": len(records),
            "verified": sum(1 for p in records if p.verified_at is not None),
            "expired": sum(1 for p in records if not p.verified and p.is_expired(now)),
            "pending": sum(1 for p in records if p.is_active(now)),
        }

    async def get_delivery_metrics(self, hours: int = 24) -> dict:
        """Delivery and verification rates for passcodes created in the trailing window."""
        since = self.clock() - timedelta(hours=hours)
        rows = await self.store.select(TABLE_PASSCODES, [("created_at", "gte", to_iso(since))])
        total = len(rows)
        delivered = sum(1 for r in rows if r.get("delivery_status") in ("sent", "delivered"))
        failed = sum(1 for r in rows if r.get("delivery_status") == "failed")
        verified = sum(1 for r in rows if r.get("verified_at"))

        def rate(n: int) -> float:
            return round(n / total * 100, 2) if total else 0.0

        return {
            "hours": hours,
            "total": total,
            "delivered": delivered,
            "failed": failed,
            "verified": verified,
            "delivery_rate": rate(delivered),
            "failure_rate": rate(failed),
            "verification_rate": rate(verified),
        }
