# otpcore/models.py
"""
Pydantic models for the OTP delivery core.

Tables:
1. Passcodes — issued one-time codes (hash only, never plaintext)
2. DeliveryPreferences — one per user, lazily created with defaults
3. NotificationDeliveries — the delivery ledger, one row per dispatch
4. SecurityEvents — append-only audit stream consumed by the monitor

Design Decisions:
- Pydantic v2 syntax (field_validator, model_validator, ConfigDict)
- Rows are flat dicts; timestamps are stored as fixed-width UTC ISO strings
  (see otpcore.db.to_iso) and parsed back in from_db_row
- Preference updates are a separate all-optional model merged key by key
"""

from __future__ import annotations

import os
import re
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_validator, model_validator

from otpcore.db import parse_ts, to_iso

log = logging.getLogger("otpcore.models")

# ============================================================
# Constants
# ============================================================

# Passcode settings
OTP_LENGTH = 6
OTP_TTL_MINUTES = 10
OTP_MAX_ATTEMPTS = 5
OTP_RATE_LIMIT_WINDOW_MINUTES = 15
OTP_RATE_LIMIT_MAX_CREATIONS = 3

# Ledger settings
DELIVERY_MAX_RETRIES = 3
RETRY_BACKOFF_MINUTES = 15

PURPOSES = ("email", "phone")
METHODS = ("sms", "email")
KNOWN_SERVICES = ("phone-email", "twilio", "smtp")

# A phone number is reachable by SMS only, an email address by email only
METHOD_FOR_PURPOSE = {"phone": "sms", "email": "email"}

DELIVERY_STATUSES = ("pending", "sent", "delivered", "failed", "bounced")
STATUS_TRANSITIONS = {
    "pending": {"sent", "delivered", "failed", "bounced"},
    "sent": {"delivered", "failed", "bounced"},
    "delivered": set(),
    "failed": set(),
    "bounced": set(),
}

NOTIFICATION_TYPES = (
    "emailVerification",
    "phoneVerification",
    "securityAlert",
    "adminSecurityAlert",
)
VERIFICATION_NOTIFICATION_TYPES = {"emailVerification", "phoneVerification"}

Purpose = Literal["email", "phone"]
Method = Literal["sms", "email"]
ServiceName = Literal["phone-email", "twilio", "smtp"]

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


def notification_type_for(purpose: str) -> str:
    return "phoneVerification" if purpose == "phone" else "emailVerification"


# ============================================================
# Contact Normalization
# ============================================================

_email_adapter = TypeAdapter(EmailStr)


def normalize_phone(phone: str | None) -> str | None:
    """
    Normalize phone to E.164 format.

    Args:
        phone: Raw phone input (may include spaces, dashes, parentheses).

    Returns:
        E.164 formatted phone (e.g., +14155551234) or None if invalid.

    Behavior:
        - If input starts with '+', validates as E.164 (+ followed by 7-15 digits)
        - If input is exactly 10 digits and DEFAULT_COUNTRY_CODE is set
          (e.g. "1"), the country code is prepended
        - All other inputs return None
    """
    if not phone:
        return None

    cleaned = re.sub(r'[^\d+]', '', phone.strip())

    if not cleaned.startswith('+'):
        digits_only = re.sub(r'\D', '', phone)
        country = os.getenv("DEFAULT_COUNTRY_CODE", "").strip().lstrip("+")
        if len(digits_only) == 10 and country:
            cleaned = f"+{country}{digits_only}"
        else:
            return None

    if re.match(r'^\+\d{7,15}$', cleaned):
        return cleaned

    return None


def normalize_email(email: str | None) -> str | None:
    """Lowercase + validate an email address. Returns None if invalid."""
    if not email or not isinstance(email, str):
        return None
    try:
        return str(_email_adapter.validate_python(email.strip())).lower()
    except ValueError:
        return None


def normalize_contact(purpose: str, contact: str | None) -> str | None:
    """Normalize a contact for its purpose, None if malformed."""
    if purpose == "email":
        return normalize_email(contact)
    if purpose == "phone":
        return normalize_phone(contact)
    return None


# ============================================================
# Passcode Model
# ============================================================

class Passcode(BaseModel):
    """
    One issued OTP.

    Security:
    - Code stored as a bcrypt hash (never plaintext)
    - TTL: 10 minutes
    - Max attempts: 5
    - Consumed (verified=True) on success, on lockout, or when superseded
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Passcode record id")
    user_id: str = Field(..., description="Owning user id")
    purpose: Purpose = Field(..., description="email or phone")
    contact: str = Field(..., description="Normalized email address or phone number")
    otp_hash: str = Field(..., description="bcrypt hash of the 6-digit code")
    expires_at: datetime = Field(..., description="created_at + 10 minutes")
    attempts: int = Field(default=0, ge=0, description="Verification attempts (max 5)")
    verified: bool = Field(default=False, description="Verified or consumed")
    delivery_id: str = Field(..., description="Links to ledger entries")
    delivery_status: str = Field(default="pending")
    delivery_method: Optional[Method] = None
    delivery_service: Optional[str] = None
    created_at: datetime
    verified_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_locked(self) -> bool:
        """Check if max attempts reached."""
        return self.attempts >= OTP_MAX_ATTEMPTS

    def is_active(self, now: datetime) -> bool:
        return not self.verified and not self.is_expired(now)

    @staticmethod
    def compute_expiry(created_at: datetime) -> datetime:
        """Compute expiry timestamp (created_at + 10 minutes)."""
        return created_at + timedelta(minutes=OTP_TTL_MINUTES)

    @classmethod
    def from_db_row(cls, row: dict) -> "Passcode":
        """Create Passcode from database row."""
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=row["purpose"],
            contact=row["contact"],
            otp_hash=row["otp_hash"],
            expires_at=parse_ts(row["expires_at"]),
            attempts=row.get("attempts") or 0,
            verified=bool(row.get("verified", False)),
            delivery_id=row["delivery_id"],
            delivery_status=row.get("delivery_status") or "pending",
            delivery_method=row.get("delivery_method"),
            delivery_service=row.get("delivery_service"),
            created_at=parse_ts(row["created_at"]),
            verified_at=parse_ts(row.get("verified_at")),
            updated_at=parse_ts(row.get("updated_at")),
        )


# ============================================================
# Delivery Preferences
# ============================================================

def _normalize_hhmm(value: str) -> str:
    if not isinstance(value, str) or not _HHMM.match(value.strip()):
        raise ValueError("time must be in HH:MM format")
    hours, minutes = value.strip().split(":")
    return f"{int(hours):02d}:{minutes}"


def _validate_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown timezone: {value}")
    return value


class FallbackEntry(BaseModel):
    """One entry of a user-defined fallback order."""

    service: ServiceName
    method: Method
    priority: Optional[int] = Field(default=None, ge=1)


class NotificationSettings(BaseModel):
    delivery_confirmation: bool = True
    failure_alerts: bool = True
    retry_notifications: bool = False
    estimated_delivery_time: bool = True


class DeliveryWindow(BaseModel):
    """Time-of-day range (HH:MM, inclusive) in which the user accepts codes."""

    enabled: bool = False
    start_time: str = "08:00"
    end_time: str = "22:00"
    timezone: str = "UTC"

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def validate_time(cls, v):
        return _normalize_hhmm(v)

    @field_validator("timezone", mode="before")
    @classmethod
    def validate_tz(cls, v):
        return _validate_timezone(v)


class RateLimiting(BaseModel):
    max_attempts_per_hour: int = Field(default=10, ge=1, le=100)
    max_attempts_per_day: int = Field(default=50, ge=1, le=1000)
    cooldown_minutes: int = Field(default=5, ge=1, le=60)


class Accessibility(BaseModel):
    """Presentation-only flags; never affect delivery."""

    large_text: bool = False
    high_contrast: bool = False
    screen_reader: bool = False


class DeliveryPreferences(BaseModel):
    """Per-user delivery configuration."""

    user_id: str
    preferred_method: Literal["sms", "email", "auto"] = "auto"
    preferred_service: Literal["phone-email", "twilio", "smtp", "auto"] = "auto"
    allow_fallback: bool = True
    fallback_order: List[FallbackEntry] = Field(default_factory=list)
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
    delivery_window: DeliveryWindow = Field(default_factory=DeliveryWindow)
    rate_limiting: RateLimiting = Field(default_factory=RateLimiting)
    accessibility: Accessibility = Field(default_factory=Accessibility)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_unique_priorities(self):
        priorities = [f.priority for f in self.fallback_order if f.priority is not None]
        if len(priorities) != len(set(priorities)):
            raise ValueError("fallback priorities must be unique")
        return self

    @classmethod
    def defaults(cls, user_id: str) -> "DeliveryPreferences":
        return cls(user_id=user_id)

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(mode="json", exclude={"created_at", "updated_at"})
        row["created_at"] = to_iso(self.created_at)
        row["updated_at"] = to_iso(self.updated_at)
        return row

    @classmethod
    def from_db_row(cls, row: dict) -> "DeliveryPreferences":
        data = {k: v for k, v in row.items() if k in cls.model_fields and v is not None}
        data["user_id"] = str(row["user_id"])
        data["created_at"] = parse_ts(row.get("created_at"))
        data["updated_at"] = parse_ts(row.get("updated_at"))
        return cls(**data)


class DeliveryWindowUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def validate_time(cls, v):
        return None if v is None else _normalize_hhmm(v)

    @field_validator("timezone", mode="before")
    @classmethod
    def validate_tz(cls, v):
        return None if v is None else _validate_timezone(v)


class NotificationSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delivery_confirmation: Optional[bool] = None
    failure_alerts: Optional[bool] = None
    retry_notifications: Optional[bool] = None
    estimated_delivery_time: Optional[bool] = None


class RateLimitingUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts_per_hour: Optional[int] = Field(default=None, ge=1, le=100)
    max_attempts_per_day: Optional[int] = Field(default=None, ge=1, le=1000)
    cooldown_minutes: Optional[int] = Field(default=None, ge=1, le=60)


class AccessibilityUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    large_text: Optional[bool] = None
    high_contrast: Optional[bool] = None
    screen_reader: Optional[bool] = None


class PreferencesUpdate(BaseModel):
    """
    Partial preference update. Only keys the caller actually sent are merged;
    nested sections merge field by field, fallback_order is replaced whole.
    """

    model_config = ConfigDict(extra="forbid")

    preferred_method: Optional[Literal["sms", "email", "auto"]] = None
    preferred_service: Optional[Literal["phone-email", "twilio", "smtp", "auto"]] = None
    allow_fallback: Optional[bool] = None
    fallback_order: Optional[List[FallbackEntry]] = None
    notification_settings: Optional[NotificationSettingsUpdate] = None
    delivery_window: Optional[DeliveryWindowUpdate] = None
    rate_limiting: Optional[RateLimitingUpdate] = None
    accessibility: Optional[AccessibilityUpdate] = None


# ============================================================
# Service Catalog / Delivery Plan
# ============================================================

class ServiceInfo(BaseModel):
    """A delivery service as advertised by the channel registry."""

    service_name: str
    display_name: str
    capabilities: List[Method]
    priority: int
    status: str = "healthy"


class PlanEntry(BaseModel):
    service: str
    method: Method
    priority: int


class RateLimitStatus(BaseModel):
    within_hourly_limit: bool
    within_daily_limit: bool
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int

    @property
    def allowed(self) -> bool:
        return self.within_hourly_limit and self.within_daily_limit


# ============================================================
# Notification Delivery (Ledger Entry)
# ============================================================

class DeliveryError(BaseModel):
    message: str
    code: Optional[str] = None


class NotificationDelivery(BaseModel):
    """
    One dispatch of a notification or OTP through one (service, method).

    Status machine: pending -> sent -> delivered | failed | bounced.
    A retry closes a failed/bounced row and writes a new pending row for
    the same delivery_id. user_id is None for admin alerts.
    attempts >= max_retries means terminal: next_retry_at is cleared.
    """

    id: Optional[str] = None
    user_id: Optional[str] = None
    delivery_id: str
    notification_type: str
    channel: Method
    service: str
    recipient: str
    status: str = "pending"
    external_id: Optional[str] = None
    attempts: int = 0
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[DeliveryError] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    next_retry_at: Optional[datetime] = None
    max_retries: int = DELIVERY_MAX_RETRIES
    estimated_delivery: Optional[int] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        if self.status == "delivered":
            return True
        return self.status in ("failed", "bounced") and self.attempts >= self.max_retries

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(
            mode="json",
            exclude={"sent_at", "delivered_at", "failed_at", "next_retry_at", "created_at", "updated_at"},
        )
        for key in ("sent_at", "delivered_at", "failed_at", "next_retry_at", "created_at", "updated_at"):
            row[key] = to_iso(getattr(self, key))
        if row.get("id") is None:
            row.pop("id", None)
        return row

    @classmethod
    def from_db_row(cls, row: dict) -> "NotificationDelivery":
        data = dict(row)
        for key in ("sent_at", "delivered_at", "failed_at", "next_retry_at", "created_at", "updated_at"):
            data[key] = parse_ts(row.get(key))
        data["id"] = str(row["id"]) if row.get("id") is not None else None
        data["user_id"] = str(row["user_id"]) if row.get("user_id") is not None else None
        data["context"] = row.get("context") or {}
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})


# ============================================================
# Security Event
# ============================================================

class SecurityEvent(BaseModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    action: str
    success: bool
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_db_row(cls, row: dict) -> "SecurityEvent":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            user_id=str(row["user_id"]) if row.get("user_id") is not None else None,
            action=row["action"],
            success=bool(row.get("success")),
            details=row.get("details") or {},
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=parse_ts(row["created_at"]),
        )
