# tests/conftest.py
"""
Pytest configuration and shared fixtures.

- Test environment (in-memory store, stub channels, cheap bcrypt)
- FakeClock for deterministic expiry / window / retry tests
- Wired OtpCore over a MemoryStore
- FastAPI TestClient with a bearer token for a seeded user
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Must be set before otpcore modules read them at import time
os.environ.setdefault("OTPCORE_STORE", "memory")
os.environ.setdefault("DELIVERY_PROVIDER", "stub")
os.environ.setdefault("OTP_BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret-for-testing-only-not-production")
os.environ.setdefault("RETRY_SWEEP_ENABLED", "off")
os.environ.setdefault("VERIFICATION_ENDPOINTS_ENABLED", "on")

import pytest
from fastapi.testclient import TestClient

# Make "import otpcore" work when tests run from CI/workdir without install
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from otpcore.accounts.auth import create_token  # noqa: E402
from otpcore.core import build_core  # noqa: E402
from otpcore.db import MemoryStore  # noqa: E402
from otpcore.delivery.channels import ChannelRegistry, stub_adapters  # noqa: E402
from otpcore.main import create_app  # noqa: E402
from otpcore.security.throttle import limiter  # noqa: E402


# ============================================================
# Rate Limiter Disabling
# ============================================================
# slowapi per-IP limits are global to the process; the store-backed throttle
# is what the route tests exercise.
limiter.enabled = False


# ============================================================
# Clock
# ============================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock():
    """Thursday 2026-01-15 12:00 UTC."""
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


# ============================================================
# Core Fixtures
# ============================================================

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def channels():
    """Fresh stub registry: phone-email {sms,email} p1, twilio {sms} p2, smtp {email} p3."""
    return ChannelRegistry(stub_adapters())


@pytest.fixture
async def core(store, channels, clock):
    """Wired services; pending audit/monitor tasks are drained at teardown."""
    built = build_core(store, channels=channels, clock=clock)
    yield built
    await built.events.drain()


@pytest.fixture
async def user(core):
    """User with unverified email and phone."""
    return await core.users.create_user(email="alice@example.com", phone="+14155551234")


# ============================================================
# HTTP Fixtures
# ============================================================

@pytest.fixture
def api_core(store, channels, clock):
    """Wired services for TestClient use (no running loop needed to build)."""
    return build_core(store, channels=channels, clock=clock)


@pytest.fixture
def api_user(api_core):
    """Seed a user directly in the MemoryStore (sync helper for HTTP tests)."""
    import asyncio

    return asyncio.run(
        api_core.users.create_user(email="alice@example.com", phone="+14155551234")
    )


@pytest.fixture
def auth_headers(api_user):
    token, _ = create_token(api_user["id"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_client(api_core):
    """TestClient over an app wired to api_core."""
    app = create_app(api_core)
    with TestClient(app) as c:
        yield c


# ============================================================
# Markers
# ============================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that exercise the full HTTP stack"
    )
