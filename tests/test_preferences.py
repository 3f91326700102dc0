# tests/test_preferences.py
"""
Preference Resolver Tests

Tests for:
- Delivery plan resolution (preferred first, fallback list, catalog fallback)
- Determinism and strictly ascending priorities
- Delivery window (inclusive ends, timezone conversion, overnight limitation)
- Partial updates with deep merge and validation
- Ledger-backed delivery rate limits
- Reset disabled

Run with: pytest tests/test_preferences.py -v
"""

from datetime import datetime, timezone

import pytest

from otpcore.errors import OperationDisabled, ValidationError
from otpcore.models import (
    DeliveryPreferences,
    DeliveryWindow,
    FallbackEntry,
    NotificationDelivery,
    PreferencesUpdate,
    ServiceInfo,
)
from otpcore.verification.preferences import is_within_delivery_window, resolve_delivery_plan

CATALOG = [
    ServiceInfo(service_name="phone-email", display_name="Phone.email", capabilities=["sms", "email"], priority=1),
    ServiceInfo(service_name="twilio", display_name="Twilio SMS", capabilities=["sms"], priority=2),
    ServiceInfo(service_name="smtp", display_name="SMTP Email", capabilities=["email"], priority=3),
]


def _plan(prefs, catalog=CATALOG):
    return [(p.service, p.method, p.priority) for p in resolve_delivery_plan(prefs, catalog)]


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 15, hour, minute, tzinfo=timezone.utc)


# ============================================================
# Delivery Plan
# ============================================================

class TestDeliveryPlan:
    """Tests for resolve_delivery_plan()."""

    def test_default_plan_walks_catalog(self):
        prefs = DeliveryPreferences.defaults("u1")
        assert _plan(prefs) == [
            ("phone-email", "sms", 1),
            ("phone-email", "email", 2),
            ("twilio", "sms", 3),
            ("smtp", "email", 4),
        ]

    def test_twilio_sms_preferred_scenario(self):
        """preferred twilio/sms with catalog fallback."""
        prefs = DeliveryPreferences(
            user_id="u1", preferred_method="sms", preferred_service="twilio", allow_fallback=True,
        )
        assert _plan(prefs) == [
            ("twilio", "sms", 1),
            ("phone-email", "sms", 2),
            ("phone-email", "email", 3),
            ("smtp", "email", 4),
        ]

    def test_plan_is_deterministic_and_strictly_ascending(self):
        prefs = DeliveryPreferences(
            user_id="u1",
            preferred_method="email",
            preferred_service="smtp",
            fallback_order=[
                FallbackEntry(service="twilio", method="sms", priority=3),
                FallbackEntry(service="phone-email", method="email", priority=2),
            ],
        )
        first = _plan(prefs)
        for _ in range(10):
            assert _plan(prefs) == first

        priorities = [p for _, _, p in first]
        assert priorities == sorted(set(priorities))
        assert priorities == list(range(1, len(first) + 1))
        assert first == [("smtp", "email", 1), ("phone-email", "email", 2), ("twilio", "sms", 3)]

    def test_fallback_list_skips_unadvertised_and_duplicates(self):
        prefs = DeliveryPreferences(
            user_id="u1",
            preferred_method="sms",
            preferred_service="twilio",
            fallback_order=[
                FallbackEntry(service="twilio", method="sms", priority=2),
                FallbackEntry(service="smtp", method="sms"),
                FallbackEntry(service="phone-email", method="sms"),
            ],
        )
        assert _plan(prefs) == [("twilio", "sms", 1), ("phone-email", "sms", 2)]

    def test_no_fallback_and_no_preferred_match_is_empty(self):
        prefs = DeliveryPreferences(
            user_id="u1", preferred_method="email", preferred_service="twilio", allow_fallback=False,
        )
        assert _plan(prefs) == []

    def test_no_fallback_keeps_only_preferred(self):
        prefs = DeliveryPreferences(
            user_id="u1", preferred_method="email", preferred_service="smtp", allow_fallback=False,
        )
        assert _plan(prefs) == [("smtp", "email", 1)]

    def test_auto_method_ignores_preferred_service(self):
        prefs = DeliveryPreferences(user_id="u1", preferred_method="auto", preferred_service="smtp")
        assert _plan(prefs)[0] == ("phone-email", "sms", 1)

    def test_duplicate_fallback_priorities_rejected(self):
        with pytest.raises(ValueError):
            DeliveryPreferences(
                user_id="u1",
                fallback_order=[
                    FallbackEntry(service="twilio", method="sms", priority=1),
                    FallbackEntry(service="smtp", method="email", priority=1),
                ],
            )


# ============================================================
# Delivery Window
# ============================================================

class TestDeliveryWindow:
    """Tests for is_within_delivery_window()."""

    def _prefs(self, start, end, tz="UTC", enabled=True):
        return DeliveryPreferences(
            user_id="u1",
            delivery_window=DeliveryWindow(enabled=enabled, start_time=start, end_time=end, timezone=tz),
        )

    def test_disabled_window_always_matches(self):
        prefs = self._prefs("08:00", "09:00", enabled=False)
        assert is_within_delivery_window(prefs, _at(3)) is True

    def test_bounds_are_inclusive(self):
        prefs = self._prefs("08:00", "22:00")
        assert is_within_delivery_window(prefs, _at(8, 0)) is True
        assert is_within_delivery_window(prefs, _at(22, 0)) is True
        assert is_within_delivery_window(prefs, _at(7, 59)) is False
        assert is_within_delivery_window(prefs, _at(22, 1)) is False

    def test_timezone_conversion(self):
        # 12:00 UTC is 07:00 in New York (EST, January)
        prefs = self._prefs("08:00", "22:00", tz="America/New_York")
        assert is_within_delivery_window(prefs, _at(12)) is False
        assert is_within_delivery_window(prefs, _at(13)) is True

    def test_single_digit_hour_is_normalized(self):
        window = DeliveryWindow(enabled=True, start_time="8:00", end_time="9:30")
        assert window.start_time == "08:00"
        assert window.end_time == "09:30"

    def test_overnight_window_not_matched_known_limitation(self):
        """
        KNOWN LIMITATION: a window meant to span midnight (22:00 -> 08:00)
        is compared as a plain string range, so 23:00 reports outside.
        """
        prefs = self._prefs("22:00", "08:00")
        assert is_within_delivery_window(prefs, _at(23)) is False
        assert is_within_delivery_window(prefs, _at(3)) is False

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValueError):
            DeliveryWindow(enabled=True, timezone="Mars/Olympus_Mons")


# ============================================================
# Preference Storage and Updates
# ============================================================

class TestPreferenceResolver:
    """Tests for PreferenceResolver storage operations."""

    async def test_get_or_create_defaults(self, core):
        prefs = await core.preferences.get_or_create("u1")
        assert prefs.preferred_method == "auto"
        assert prefs.allow_fallback is True
        assert prefs.rate_limiting.max_attempts_per_hour == 10
        assert prefs.rate_limiting.max_attempts_per_day == 50

        again = await core.preferences.get_or_create("u1")
        assert again.model_dump(exclude={"created_at", "updated_at"}) == prefs.model_dump(
            exclude={"created_at", "updated_at"}
        )
        assert (await core.preferences.get_preference_stats())["total_users"] == 1

    async def test_partial_update_merges_nested_sections(self, core):
        await core.preferences.update_preferences("u1", {
            "delivery_window": {"enabled": True, "start_time": "07:00", "end_time": "21:00"},
        })
        updated = await core.preferences.update_preferences("u1", {
            "delivery_window": {"timezone": "Europe/Berlin"},
            "accessibility": {"large_text": True},
        })

        assert updated.delivery_window.enabled is True
        assert updated.delivery_window.start_time == "07:00"
        assert updated.delivery_window.timezone == "Europe/Berlin"
        assert updated.accessibility.large_text is True
        assert updated.accessibility.high_contrast is False

        stored = await core.preferences.get_or_create("u1")
        assert stored.delivery_window.timezone == "Europe/Berlin"

    async def test_update_accepts_typed_patch(self, core):
        patch = PreferencesUpdate(preferred_method="sms", preferred_service="twilio")
        updated = await core.preferences.update_preferences("u1", patch)
        assert updated.preferred_method == "sms"
        assert updated.allow_fallback is True

    async def test_fallback_order_replaced_whole(self, core):
        await core.preferences.update_preferences("u1", {
            "fallback_order": [{"service": "twilio", "method": "sms", "priority": 1},
                               {"service": "smtp", "method": "email", "priority": 2}],
        })
        updated = await core.preferences.update_preferences("u1", {
            "fallback_order": [{"service": "smtp", "method": "email", "priority": 1}],
        })
        assert len(updated.fallback_order) == 1

    async def test_window_start_must_precede_end(self, core):
        with pytest.raises(ValidationError):
            await core.preferences.update_preferences("u1", {
                "delivery_window": {"enabled": True, "start_time": "22:00", "end_time": "08:00"},
            })

    async def test_duplicate_priorities_rejected_on_update(self, core):
        with pytest.raises(ValidationError) as exc:
            await core.preferences.update_preferences("u1", {
                "fallback_order": [{"service": "twilio", "method": "sms", "priority": 1},
                                   {"service": "smtp", "method": "email", "priority": 1}],
            })
        assert exc.value.details["errors"]

    async def test_unknown_keys_rejected(self, core):
        with pytest.raises(ValidationError):
            await core.preferences.update_preferences("u1", {"favourite_colour": "blue"})

    async def test_reset_is_disabled(self, core, monkeypatch):
        monkeypatch.setenv("DESTRUCTIVE_OPERATIONS_ENABLED", "on")
        with pytest.raises(OperationDisabled):
            await core.preferences.reset_preferences("u1")

    async def test_preference_stats(self, core):
        await core.preferences.update_preferences("u1", {"preferred_method": "sms"})
        await core.preferences.update_preferences("u2", {"preferred_method": "email", "allow_fallback": False})
        await core.preferences.get_or_create("u3")

        stats = await core.preferences.get_preference_stats()
        assert stats["total_users"] == 3
        assert stats["sms_preferred"] == 1
        assert stats["email_preferred"] == 1
        assert stats["auto_preferred"] == 1
        assert stats["fallback_enabled"] == 2


# ============================================================
# Delivery Rate Limit
# ============================================================

class TestDeliveryRateLimit:
    """Ledger attempts vs max_attempts_per_hour / per_day."""

    async def _track(self, core, n, user_id="u1"):
        for i in range(n):
            await core.ledger.track(NotificationDelivery(
                user_id=user_id, delivery_id=f"d{i}", notification_type="emailVerification",
                channel="email", service="smtp", recipient="alice@example.com", status="sent",
            ))

    async def test_within_limits(self, core):
        prefs = await core.preferences.get_or_create("u1")
        await self._track(core, 3)

        status = await core.preferences.check_rate_limit("u1", prefs)
        assert status.allowed is True
        assert status.hourly_count == 3
        assert status.hourly_limit == 10

    async def test_hourly_limit_reached(self, core):
        prefs = await core.preferences.get_or_create("u1")
        await self._track(core, 10)

        status = await core.preferences.check_rate_limit("u1", prefs)
        assert status.within_hourly_limit is False
        assert status.within_daily_limit is True
        assert status.allowed is False

    async def test_hourly_window_slides(self, core, clock):
        prefs = await core.preferences.get_or_create("u1")
        await self._track(core, 10)
        clock.advance(minutes=61)

        status = await core.preferences.check_rate_limit("u1", prefs)
        assert status.allowed is True
        assert status.hourly_count == 0
        assert status.daily_count == 10
