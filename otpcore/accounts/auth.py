# otpcore/accounts/auth.py
"""
Authentication and user directory.

This module provides:
- JWT token creation and verification (PyJWT, HS256)
- UserDirectory: user lookups and the verification flag flip after a
  successful passcode check
- FastAPI dependencies resolving the bearer token to a user id

Environment Variables Required:
- JWT_SECRET: Random 32+ character string (REQUIRED)
- JWT_EXPIRY_HOURS: Token expiry in hours (default: 24)

Token Payload:
- user_id: User UUID
- iat: Issued at timestamp
- exp: Expiry timestamp
"""

from __future__ import annotations

import os
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from otpcore.db import DocumentStore, TABLE_USERS, new_id, to_iso, utcnow
from otpcore.privacy_utils import hash_user_id, mask_contact

log = logging.getLogger("otpcore.auth")

# ============================================================
# Configuration
# ============================================================

def _get_jwt_secret() -> str:
    """Get JWT secret from environment."""
    secret = os.getenv("JWT_SECRET", "").strip()
    if not secret:
        log.error("JWT_SECRET not set - authentication will fail")
    elif len(secret) < 32:
        log.warning("JWT_SECRET should be at least 32 characters")
    return secret


def _get_jwt_expiry_hours() -> int:
    """Get JWT expiry in hours from environment."""
    try:
        return int(os.getenv("JWT_EXPIRY_HOURS", "24"))
    except ValueError:
        return 24


# ============================================================
# Tokens
# ============================================================

def create_token(user_id: str) -> Tuple[str, datetime]:
    """
    Create signed JWT token for a user.

    Returns:
        Tuple of (token, expires_at).

    Raises:
        ValueError: If JWT_SECRET not configured.
    """
    secret = _get_jwt_secret()
    if not secret:
        raise ValueError("JWT_SECRET not configured")

    now = utcnow()
    expiry_hours = _get_jwt_expiry_hours()
    expires_at = now + timedelta(hours=expiry_hours)

    payload = {
        "user_id": user_id,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(payload, secret, algorithm="HS256")

    log.info("Token created for user %s (expires in %dh)", hash_user_id(user_id), expiry_hours)
    return token, expires_at


def verify_token(token: str) -> Optional[dict]:
    """
    Verify and decode JWT token.

    Returns:
        Decoded payload dict, or None if the token is invalid or expired.
    """
    secret = _get_jwt_secret()
    if not secret:
        log.error("Cannot verify token: JWT_SECRET not configured")
        return None

    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        log.info("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        log.warning("Invalid token: %s", str(e)[:50])
        return None


# ============================================================
# User Directory
# ============================================================

class UserDirectory:
    """
    Minimal user directory over the document store.

    Users rows: id, email, phone, email_verified, email_verified_at,
    phone_verified, phone_verified_at, created_at.
    """

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def get_user(self, user_id: str) -> Optional[dict]:
        rows = await self.store.select(TABLE_USERS, [("id", "eq", user_id)], limit=1)
        return rows[0] if rows else None

    async def create_user(self, email: Optional[str] = None, phone: Optional[str] = None) -> dict:
        """Create a user with unverified contacts."""
        row = {
            "id": new_id(),
            "email": email.strip().lower() if email else None,
            "phone": phone,
            "email_verified": False,
            "email_verified_at": None,
            "phone_verified": False,
            "phone_verified_at": None,
            "created_at": to_iso(self.clock()),
        }
        created = await self.store.insert(TABLE_USERS, row)
        log.info("User created: %s", hash_user_id(created["id"]))
        return created

    async def mark_contact_verified(self, user_id: str, purpose: str, contact: str) -> bool:
        """
        Flip the verification flag for the contact that was just verified.

        Args:
            user_id: Owning user.
            purpose: "email" or "phone".
            contact: The verified contact; stored on the user row.

        Returns:
            True if a user row was updated.
        """
        now = to_iso(self.clock())
        values = {
            purpose: contact,
            f"{purpose}_verified": True,
            f"{purpose}_verified_at": now,
        }
        updated = await self.store.update(TABLE_USERS, [("id", "eq", user_id)], values)
        if updated:
            log.info(
                "User %s %s verified (%s)", hash_user_id(user_id), purpose, mask_contact(contact)
            )
        else:
            log.warning("mark_contact_verified: user %s not found", hash_user_id(user_id))
        return bool(updated)


# ============================================================
# FastAPI Dependencies
# ============================================================

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"error": {"code": code, "message": message}},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    Resolve the bearer token to a user id.

    Raises HTTPException 401 if the token is missing, invalid, or carries no
    user_id.
    """
    if not credentials:
        raise _unauthorized("AUTH_REQUIRED", "Authentication required")

    payload = verify_token(credentials.credentials)
    if not payload:
        raise _unauthorized("TOKEN_INVALID", "Invalid or expired token")

    user_id = payload.get("user_id")
    if not user_id:
        raise _unauthorized("TOKEN_MALFORMED", "Token missing user_id")

    return str(user_id)
