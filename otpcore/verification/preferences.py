# otpcore/verification/preferences.py
"""
Preference resolver.

This module provides:
- PreferenceResolver: lazily created per-user delivery preferences with
  typed partial updates
- resolve_delivery_plan(): turn preferences + service catalog into an
  ordered (service, method, priority) plan
- is_within_delivery_window(): time-of-day gate in the user's timezone
- Delivery rate limits read from the ledger (trailing hour / day)

Known limitation:
- Windows that cross midnight (start_time > end_time) never match. Updates
  reject them; rows written before that check keep the behavior.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from otpcore.db import (
    DocumentStore,
    TABLE_DELIVERY_PREFERENCES,
    is_destructive_operations_enabled,
    utcnow,
)
from otpcore.errors import OperationDisabled, ValidationError
from otpcore.models import (
    DeliveryPreferences,
    PlanEntry,
    PreferencesUpdate,
    RateLimitStatus,
    ServiceInfo,
)
from otpcore.privacy_utils import hash_user_id

log = logging.getLogger("otpcore.preferences")


# ============================================================
# Delivery Plan
# ============================================================

def resolve_delivery_plan(
    preferences: DeliveryPreferences,
    available_services: Sequence[ServiceInfo],
) -> List[PlanEntry]:
    """
    Build the ordered delivery plan.

    1. A concrete preferred (service, method) goes first at priority 1 if the
       catalog advertises it.
    2. If fallback is allowed: the explicit fallback list (entries the catalog
       advertises, not already planned, at their stated priority or the next
       slot), or else every (service, capability) pair in catalog order at
       the service's priority.
    3. Stable sort by priority, then renumber 1..n.

    No fallback and no preferred match gives an empty plan.
    """
    def advertised(service: str, method: str) -> bool:
        return any(s.service_name == service and method in s.capabilities for s in available_services)

    plan: List[Dict[str, Any]] = []

    def planned(service: str, method: str) -> bool:
        return any(p["service"] == service and p["method"] == method for p in plan)

    if preferences.preferred_service != "auto" and preferences.preferred_method != "auto":
        if advertised(preferences.preferred_service, preferences.preferred_method):
            plan.append({
                "service": preferences.preferred_service,
                "method": preferences.preferred_method,
                "priority": 1,
            })

    if preferences.allow_fallback:
        if preferences.fallback_order:
            for entry in preferences.fallback_order:
                if advertised(entry.service, entry.method) and not planned(entry.service, entry.method):
                    plan.append({
                        "service": entry.service,
                        "method": entry.method,
                        "priority": entry.priority or len(plan) + 1,
                    })
        else:
            for service in available_services:
                for capability in service.capabilities:
                    if not planned(service.service_name, capability):
                        plan.append({
                            "service": service.service_name,
                            "method": capability,
                            "priority": service.priority,
                        })

    plan.sort(key=lambda p: p["priority"])
    return [
        PlanEntry(service=p["service"], method=p["method"], priority=i)
        for i, p in enumerate(plan, start=1)
    ]


# ============================================================
# Delivery Window
# ============================================================

def is_within_delivery_window(preferences: DeliveryPreferences, now: datetime) -> bool:
    """
    True if now (converted to the window's timezone) falls within
    [start_time, end_time], both ends inclusive. Disabled windows always match.
    """
    window = preferences.delivery_window
    if not window.enabled:
        return True

    local = now.astimezone(ZoneInfo(window.timezone or "UTC"))
    current = local.strftime("%H%M")
    start = window.start_time.replace(":", "")
    end = window.end_time.replace(":", "")
    return start <= current <= end


# ============================================================
# Preference Resolver
# ============================================================

class PreferenceResolver:
    """Per-user delivery preferences over the document store."""

    def __init__(self, store: DocumentStore, ledger, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ledger = ledger
        self.clock = clock

    async def get_or_create(self, user_id: str) -> DeliveryPreferences:
        rows = await self.store.select(
            TABLE_DELIVERY_PREFERENCES, [("user_id", "eq", user_id)], limit=1
        )
        if rows:
            return DeliveryPreferences.from_db_row(rows[0])

        now = self.clock()
        prefs = DeliveryPreferences.defaults(user_id).model_copy(
            update={"created_at": now, "updated_at": now}
        )
        await self.store.insert(TABLE_DELIVERY_PREFERENCES, prefs.to_row())
        log.info("Created default delivery preferences for user %s", hash_user_id(user_id))
        return prefs

    async def update_preferences(
        self, user_id: str, patch: Union[PreferencesUpdate, Dict[str, Any]]
    ) -> DeliveryPreferences:
        """
        Merge the provided keys into the stored preferences.

        Nested sections merge field by field; fallback_order is replaced.

        Raises:
            ValidationError: malformed patch, duplicate fallback priorities, or
                a delivery window whose start_time is not before end_time.
        """
        if not isinstance(patch, PreferencesUpdate):
            try:
                patch = PreferencesUpdate.model_validate(patch)
            except PydanticValidationError as e:
                raise ValidationError("Invalid preference update", errors=_error_list(e))

        current = await self.get_or_create(user_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)

        merged = current.model_dump()
        for key, value in changes.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value

        if "delivery_window" in changes:
            window = merged["delivery_window"]
            if window["start_time"] >= window["end_time"]:
                raise ValidationError(
                    "Delivery window start_time must be before end_time",
                    field="delivery_window",
                )

        merged["updated_at"] = self.clock()
        try:
            updated = DeliveryPreferences.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError("Invalid delivery preferences", errors=_error_list(e))

        row = updated.to_row()
        row.pop("user_id", None)
        row.pop("created_at", None)
        await self.store.update(TABLE_DELIVERY_PREFERENCES, [("user_id", "eq", user_id)], row)

        log.info(
            "Updated delivery preferences for user %s (%s)",
            hash_user_id(user_id), ",".join(sorted(changes)) or "no changes",
        )
        return updated

    async def reset_preferences(self, user_id: str) -> None:
        """
        Disabled. Always raises OperationDisabled, whatever
        DESTRUCTIVE_OPERATIONS_ENABLED says.
        """
        log.warning(
            "Preference reset attempted for user %s (destructive flag=%s)",
            hash_user_id(user_id), is_destructive_operations_enabled(),
        )
        raise OperationDisabled(
            "Preference reset is disabled to prevent accidental data loss",
            operation="reset_preferences",
        )

    def resolve_delivery_plan(self, preferences, available_services) -> List[PlanEntry]:
        return resolve_delivery_plan(preferences, available_services)

    def is_within_delivery_window(self, preferences, now: Optional[datetime] = None) -> bool:
        return is_within_delivery_window(preferences, now or self.clock())

    async def check_rate_limit(self, user_id: str, preferences: DeliveryPreferences) -> RateLimitStatus:
        """Ledger attempts in the trailing hour and day against the user's limits."""
        now = self.clock()
        hourly = await self.ledger.count_attempts(user_id, now - timedelta(hours=1))
        daily = await self.ledger.count_attempts(user_id, now - timedelta(days=1))
        limits = preferences.rate_limiting
        return RateLimitStatus(
            within_hourly_limit=hourly < limits.max_attempts_per_hour,
            within_daily_limit=daily < limits.max_attempts_per_day,
            hourly_count=hourly,
            daily_count=daily,
            hourly_limit=limits.max_attempts_per_hour,
            daily_limit=limits.max_attempts_per_day,
        )

    async def get_preference_stats(self) -> Dict[str, int]:
        rows = await self.store.select(TABLE_DELIVERY_PREFERENCES)
        return {
            "total_users": len(rows),
            "sms_preferred": sum(1 for r in rows if r.get("preferred_method") == "sms"),
            "email_preferred": sum(1 for r in rows if r.get("preferred_method") == "email"),
            "auto_preferred": sum(1 for r in rows if r.get("preferred_method", "auto") == "auto"),
            "phone_email_service_preferred": sum(
                1 for r in rows if r.get("preferred_service") == "phone-email"
            ),
            "fallback_enabled": sum(1 for r in rows if r.get("allow_fallback", True)),
        }


def _error_list(e: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in e.errors()
    ]
