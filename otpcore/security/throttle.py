# otpcore/security/throttle.py
"""
Store-backed request throttle.

One throttle_hits row per request, counted over a sliding window, so the
limit holds across process instances sharing the store. slowapi keeps its
per-IP route limits in front of this as a second layer.

Default: 5 requests / 15 minutes per identifier (user id, else client IP).
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from otpcore.db import DocumentStore, TABLE_THROTTLE_HITS, new_id, to_iso, utcnow

log = logging.getLogger("otpcore.throttle")

RATE_LIMIT_PER_MIN = int(os.getenv("RATE_LIMIT_PER_MIN", "30"))

# Per-IP route limits (slowapi). Shared by every router and registered on app.state.
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{RATE_LIMIT_PER_MIN}/minute"])


@dataclass
class ThrottleResult:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int


class RequestThrottle:
    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = utcnow,
        limit: int = 5,
        window_minutes: int = 15,
        scope: str = "verification",
    ):
        self.store = store
        self.clock = clock
        self.limit = limit
        self.window = timedelta(minutes=window_minutes)
        self.scope = scope

    async def hit(self, identifier: str, scope: Optional[str] = None) -> ThrottleResult:
        """
        Record a request and report whether it is within the limit.

        The hit is inserted before counting: concurrent requests on different
        instances all see each other, so none slips under the limit.
        """
        now = self.clock()
        scope = scope or self.scope
        key = f"{scope}:{identifier}"
        await self.store.insert(TABLE_THROTTLE_HITS, {
            "id": new_id(),
            "key": key,
            "created_at": to_iso(now),
        })
        count = await self.store.count(
            TABLE_THROTTLE_HITS,
            [("key", "eq", key), ("created_at", "gt", to_iso(now - self.window))],
        )
        allowed = count <= self.limit
        if not allowed:
            log.info("Throttled %s (%d/%d)", scope, count, self.limit)
        return ThrottleResult(
            allowed=allowed,
            count=count,
            limit=self.limit,
            retry_after_seconds=0 if allowed else int(self.window.total_seconds()),
        )

    async def purge(self, before: datetime) -> int:
        """Delete hits older than before (retention job)."""
        deleted = await self.store.delete(TABLE_THROTTLE_HITS, [("created_at", "lt", to_iso(before))])
        return len(deleted)
