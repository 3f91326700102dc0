# otpcore/delivery/health.py
"""
Per-service circuit breakers.

States:
- closed: calls flow; each failure counts, each success takes one back off
- open: after CIRCUIT_FAIL_THRESHOLD failures (default 5) the service is not
  offered for CIRCUIT_RESET_SECS (default 60)
- half-open: after the reset period up to 3 trial calls are let through;
  a success closes the circuit, 3 failures open it again

State is in-process: each API instance learns service health on its own.
"""

from __future__ import annotations

import os
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from otpcore.db import to_iso, utcnow

log = logging.getLogger("otpcore.health")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"

HALF_OPEN_MAX_ATTEMPTS = 3


def _env_int(name: str, default: int) -> int:
    try:
        return max(int(os.getenv(name, str(default))), 1)
    except ValueError:
        return default


def _get_fail_threshold() -> int:
    return _env_int("CIRCUIT_FAIL_THRESHOLD", 5)


def _get_reset_seconds() -> int:
    return _env_int("CIRCUIT_RESET_SECS", 60)


class CircuitBreaker:
    """Failure counter and state for one service."""

    def __init__(self, threshold: int, reset_seconds: int):
        self.threshold = threshold
        self.reset_after = timedelta(seconds=reset_seconds)
        self.state = CLOSED
        self.failure_count = 0
        self.half_open_attempts = 0
        self.opened_at: Optional[datetime] = None
        self.last_failure_at: Optional[datetime] = None

    def allows(self, now: datetime) -> bool:
        if self.state == OPEN:
            if now - self.opened_at < self.reset_after:
                return False
            self.state = HALF_OPEN
            self.half_open_attempts = 0
        if self.state == HALF_OPEN:
            return self.half_open_attempts < HALF_OPEN_MAX_ATTEMPTS
        return True

    def record_success(self) -> bool:
        """Returns True when this success closed a half-open circuit."""
        if self.state == HALF_OPEN:
            self.state = CLOSED
            self.failure_count = 0
            self.half_open_attempts = 0
            self.opened_at = None
            return True
        self.failure_count = max(self.failure_count - 1, 0)
        return False

    def record_failure(self, now: datetime) -> bool:
        """Returns True when this failure opened the circuit."""
        self.failure_count += 1
        self.last_failure_at = now
        if self.state == HALF_OPEN:
            self.half_open_attempts += 1
            if self.half_open_attempts < HALF_OPEN_MAX_ATTEMPTS:
                return False
        elif self.state != CLOSED or self.failure_count < self.threshold:
            return False
        self.state = OPEN
        self.opened_at = now
        self.half_open_attempts = 0
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self.failure_count,
            "opened_at": to_iso(self.opened_at),
            "last_failure_at": to_iso(self.last_failure_at),
        }


class ServiceHealth:
    """
    Circuit breakers by service name, created on first use.

    Args:
        clock: Current-time source (the reset period is measured with it).
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.threshold = _get_fail_threshold()
        self.reset_seconds = _get_reset_seconds()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, service: str) -> CircuitBreaker:
        if service not in self._breakers:
            self._breakers[service] = CircuitBreaker(self.threshold, self.reset_seconds)
        return self._breakers[service]

    def is_available(self, service: str) -> bool:
        breaker = self._breakers.get(service)
        return breaker is None or breaker.allows(self.clock())

    def record(self, service: str, success: bool) -> None:
        breaker = self.breaker(service)
        if success:
            if breaker.record_success():
                log.info("Circuit closed for %s", service)
        elif breaker.record_failure(self.clock()):
            log.warning(
                "Circuit opened for %s after %d failures (retry in %ds)",
                service, breaker.failure_count, self.reset_seconds,
            )

    def state(self, service: str) -> str:
        breaker = self._breakers.get(service)
        if breaker is None:
            return CLOSED
        breaker.allows(self.clock())
        return breaker.state

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot() for name, b in self._breakers.items()}
