# tests/test_auth.py
"""
Authentication Tests

Tests for:
- JWT creation / verification (HS256, configurable expiry)
- Invalid and expired tokens
- UserDirectory verification flag flip

Run with: pytest tests/test_auth.py -v
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import jwt
import pytest

from otpcore.accounts.auth import _get_jwt_expiry_hours, create_token, verify_token

SECRET = "test-secret-at-least-32-characters-long"


# ============================================================
# JWT Tests
# ============================================================

class TestJWT:
    """Tests for JWT token generation and validation."""

    @patch.dict(os.environ, {"JWT_SECRET": SECRET})
    def test_jwt_create_token(self):
        """Should create valid JWT token."""
        token, expires_at = create_token("550e8400-e29b-41d4-a716-446655440000")

        assert isinstance(token, str)
        assert len(token) > 50
        assert isinstance(expires_at, datetime)

    @patch.dict(os.environ, {"JWT_SECRET": SECRET})
    def test_jwt_verify_token(self):
        user_id = "550e8400-e29b-41d4-a716-446655440000"
        token, _ = create_token(user_id)

        payload = verify_token(token)
        assert payload is not None
        assert payload["user_id"] == user_id
        assert payload["exp"] > payload["iat"]

    @patch.dict(os.environ, {"JWT_SECRET": SECRET})
    def test_jwt_reject_invalid_token(self):
        assert verify_token("invalid.token.here") is None

    @patch.dict(os.environ, {"JWT_SECRET": SECRET})
    def test_jwt_reject_wrong_secret(self):
        token = jwt.encode({"user_id": "u1"}, "another-secret-that-is-also-32-characters", algorithm="HS256")
        assert verify_token(token) is None

    @patch.dict(os.environ, {"JWT_SECRET": SECRET})
    def test_jwt_reject_expired_token(self):
        now = datetime.now(timezone.utc)
        expired = jwt.encode(
            {"user_id": "test-id", "exp": now - timedelta(hours=1), "iat": now - timedelta(hours=25)},
            SECRET,
            algorithm="HS256",
        )
        assert verify_token(expired) is None, "Should reject expired token"

    @patch.dict(os.environ, {"JWT_SECRET": ""})
    def test_create_without_secret_raises(self):
        with pytest.raises(ValueError):
            create_token("u1")

    @patch.dict(os.environ, {"JWT_EXPIRY_HOURS": "24"})
    def test_jwt_default_expiry(self):
        assert _get_jwt_expiry_hours() == 24

    @patch.dict(os.environ, {"JWT_EXPIRY_HOURS": "soon"})
    def test_jwt_expiry_falls_back_on_garbage(self):
        assert _get_jwt_expiry_hours() == 24


# ============================================================
# User Directory
# ============================================================

class TestUserDirectory:
    """Tests for UserDirectory."""

    async def test_create_user_normalizes_email(self, core):
        user = await core.users.create_user(email="  Bob@Example.COM ", phone="+14155550000")
        assert user["email"] == "bob@example.com"
        assert user["email_verified"] is False
        assert user["phone_verified"] is False

    async def test_mark_contact_verified(self, core, user, clock):
        assert await core.users.mark_contact_verified(user["id"], "phone", "+14155551234") is True

        refreshed = await core.users.get_user(user["id"])
        assert refreshed["phone_verified"] is True
        assert refreshed["phone_verified_at"] is not None
        assert refreshed["email_verified"] is False

    async def test_mark_unknown_user(self, core):
        assert await core.users.mark_contact_verified("missing", "email", "a@b.co") is False
        assert await core.users.get_user("missing") is None
