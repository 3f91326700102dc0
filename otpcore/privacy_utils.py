# otpcore/privacy_utils.py
"""
Privacy utilities for log output.

This module provides centralized PII masking and hashing for all logging.
Contacts and user ids reach logs only through these helpers.

Functions:
- mask_email(email) — Mask email for logs
- mask_phone(phone) — Mask phone for logs
- mask_contact(contact) — Dispatch to mask_email / mask_phone
- hash_user_id(user_id) — Hash user ID for logs
- build_privacy_safe_log(...) — Masked dict for structured log lines

Usage in logs:
```python
from otpcore.privacy_utils import mask_contact, hash_user_id

log.info("OTP sent: user=%s contact=%s", hash_user_id(user_id), mask_contact(contact))
```

Privacy Rails:
- Never log raw emails or phone numbers (use mask_contact)
- Never log raw user IDs (use hash_user_id)
- Never log OTPs (not even hashed); the stub adapter is the single exception
"""

from __future__ import annotations

import re
from hashlib import sha256
from typing import Optional

# ============================================================
# Email Masking
# ============================================================

def mask_email(email: str) -> str:
    """
    Mask email for logs: john@example.com → jo**@example.com

    Examples:
        mask_email("john@example.com") → "jo**@example.com"
        mask_email("ab@example.com") → "**@example.com"
        mask_email(None) → "***"
        mask_email("invalid") → "***"
    """
    if not email or not isinstance(email, str):
        return "***"

    email = email.strip()
    if "@" not in email:
        return "***"

    local, domain = email.rsplit("@", 1)
    if len(local) <= 2:
        return f"**@{domain}"

    return f"{local[:2]}**@{domain}"


# ============================================================
# Phone Masking
# ============================================================

def mask_phone(phone: str) -> str:
    """
    Mask phone for logs: +14155551234 → +14****1234

    Examples:
        mask_phone("+14155551234") → "+14****1234"
        mask_phone("4155551234") → "******1234"
        mask_phone("12345") → "****"
        mask_phone(None) → "****"
    """
    if not phone or not isinstance(phone, str):
        return "****"

    phone = phone.strip()
    digits = re.sub(r'\D', '', phone)

    if len(digits) < 6:
        return "****"

    if phone.startswith('+'):
        return f"+{digits[:2]}****{digits[-4:]}"
    return f"******{digits[-4:]}"


def mask_contact(contact: str) -> str:
    """Mask an email address or phone number, whichever it looks like."""
    if isinstance(contact, str) and "@" in contact:
        return mask_email(contact)
    return mask_phone(contact)


# ============================================================
# User ID Hashing
# ============================================================

def hash_user_id(user_id: str) -> str:
    """
    Hash user ID for logs: full UUID → first 8 chars of SHA-256.

    Returns "anon" if no user_id.
    """
    if not user_id or not isinstance(user_id, str):
        return "anon"

    user_id = user_id.strip()
    if not user_id:
        return "anon"

    return sha256(user_id.encode("utf-8")).hexdigest()[:8]


# ============================================================
# Composite Log Record Builder
# ============================================================

def build_privacy_safe_log(
    *,
    user_id: Optional[str] = None,
    contact: Optional[str] = None,
    delivery_id: Optional[str] = None,
    **extra
) -> dict:
    """
    Build a privacy-safe log record with all PII masked.

    Args:
        user_id: User id (will be hashed).
        contact: Email or phone (will be masked).
        delivery_id: Delivery id (not PII, passed through).
        **extra: Additional fields (caller's responsibility to ensure privacy).

    Returns:
        Dict with privacy-safe values ready for logging.
    """
    record = {}

    if user_id is not None:
        record["user_id"] = hash_user_id(user_id)

    if contact is not None:
        record["contact"] = mask_contact(contact)

    if delivery_id is not None:
        record["delivery_id"] = delivery_id

    record.update(extra)
    return record


def is_pii_masked(value: str) -> bool:
    """Check if a value appears to be masked. Used by tests."""
    if not value or not isinstance(value, str):
        return False
    return "**" in value or value in ("anon", "***", "****")
