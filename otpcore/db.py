# otpcore/db.py
"""
Document store access for the OTP delivery core.

This module provides:
- Feature flag checks for the HTTP surface and background jobs
- An async DocumentStore interface (insert/select/count/update/delete)
- SupabaseStore: supabase-py async client implementation
- MemoryStore: single-process implementation for development and tests
- Timestamp helpers (every stored timestamp is a fixed-width UTC ISO string)

Infrastructure Decision:
- Database Client: supabase-py directly (no SQLAlchemy/ORM)
- Conditional single-row updates (filter on id + expected value) are the only
  concurrency primitive; there is no application-level locking

Environment Variables:
- OTPCORE_STORE: "supabase" (default) or "memory"
- SUPABASE_URL: Project URL (https://xxx.supabase.co)
- SUPABASE_KEY: Service role key

Feature Flags:
- VERIFICATION_ENDPOINTS_ENABLED (default on): /api/verification/*, /api/delivery-preferences/*
- RETRY_SWEEP_ENABLED (default on): background retry sweep loop
- DESTRUCTIVE_OPERATIONS_ENABLED (default off): reserved, see preferences.reset_preferences
"""

from __future__ import annotations

import os
import re
import uuid
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

log = logging.getLogger("otpcore.db")


# ============================================================
# Feature Flags
# ============================================================

def _flag_on(name: str, default: str = "off") -> bool:
    """Check if a feature flag is enabled."""
    val = os.getenv(name, default).lower()
    return val in ("on", "true", "1", "yes")


def is_verification_endpoints_enabled() -> bool:
    """Check if verification and preference endpoints are enabled."""
    return _flag_on("VERIFICATION_ENDPOINTS_ENABLED", default="on")


def is_retry_sweep_enabled() -> bool:
    """Check if the background retry sweep should run."""
    return _flag_on("RETRY_SWEEP_ENABLED", default="on")


def is_destructive_operations_enabled() -> bool:
    """Destructive operations stay disabled unless explicitly switched on."""
    return _flag_on("DESTRUCTIVE_OPERATIONS_ENABLED")


# ============================================================
# Table Names (Constants)
# ============================================================

TABLE_USERS = "users"
TABLE_PASSCODES = "passcodes"
TABLE_DELIVERY_PREFERENCES = "delivery_preferences"
TABLE_NOTIFICATION_DELIVERIES = "notification_deliveries"
TABLE_SECURITY_EVENTS = "security_events"
TABLE_THROTTLE_HITS = "throttle_hits"


# ============================================================
# Timestamp Helpers
# ============================================================

_ISO_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    """Primary key for a new document."""
    return str(uuid.uuid4())


# ============================================================
# Store Interface
# ============================================================

# (column, operator, value). Operators: eq, neq, gt, gte, lt, lte, in,
# is_null, not_null. The value is ignored for is_null/not_null.
Filter = Tuple[str, str, Any]


class DocumentStore(Protocol):
    """Async access to flat key/value documents grouped in tables."""

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]: ...

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int: ...

    async def update(
        self, table: str, filters: Sequence[Filter], values: Dict[str, Any]
    ) -> List[Dict[str, Any]]: ...

    async def delete(self, table: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]: ...


# ============================================================
# Supabase Implementation
# ============================================================

class SupabaseStore:
    """
    DocumentStore backed by the supabase-py async client.

    Every update is a single PostgREST PATCH with all filters applied server
    side, so a conditional update either matches the row or returns nothing.
    """

    def __init__(self, client):
        self.client = client

    @staticmethod
    def _apply(query, filters: Iterable[Filter]):
        for column, op, value in filters:
            if op == "is_null":
                query = query.is_(column, "null")
            elif op == "not_null":
                query = query.not_.is_(column, "null")
            elif op == "in":
                query = query.in_(column, list(value))
            elif op in ("eq", "neq", "gt", "gte", "lt", "lte"):
                query = getattr(query, op)(column, value)
            else:
                raise ValueError(f"Unsupported filter operator: {op}")
        return query

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.client.table(table).insert(row).execute()
        return result.data[0] if result.data else dict(row)

    async def select(self, table, filters=(), order_by=None, desc=False, limit=None):
        query = self._apply(self.client.table(table).select("*"), filters)
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit:
            query = query.limit(limit)
        result = await query.execute()
        return result.data or []

    async def count(self, table, filters=()):
        query = self._apply(self.client.table(table).select("id", count="exact"), filters)
        result = await query.execute()
        if getattr(result, "count", None) is not None:
            return result.count
        return len(result.data or [])

    async def update(self, table, filters, values):
        query = self._apply(self.client.table(table).update(values), filters)
        result = await query.execute()
        return result.data or []

    async def delete(self, table, filters):
        query = self._apply(self.client.table(table).delete(), filters)
        result = await query.execute()
        return result.data or []


# ============================================================
# In-Memory Implementation
# ============================================================

class MemoryStore:
    """
    Single-process DocumentStore.

    Each operation runs to completion without awaiting, so a filtered update
    is atomic with respect to every other coroutine on the event loop.
    Correct for one process only.
    """

    def __init__(self):
        self._tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    @staticmethod
    def _coerce(value: Any) -> Any:
        if isinstance(value, str) and _ISO_PREFIX.match(value):
            try:
                return parse_ts(value)
            except ValueError:
                return value
        if isinstance(value, datetime):
            return parse_ts(value)
        return value

    @classmethod
    def _matches(cls, row: Dict[str, Any], filters: Iterable[Filter]) -> bool:
        for column, op, expected in filters:
            actual = row.get(column)
            if op == "is_null":
                if actual is not None:
                    return False
                continue
            if op == "not_null":
                if actual is None:
                    return False
                continue
            if op == "in":
                if actual not in list(expected):
                    return False
                continue
            if op == "eq":
                if actual != expected:
                    return False
                continue
            if op == "neq":
                if actual == expected:
                    return False
                continue
            if actual is None:
                return False
            left, right = cls._coerce(actual), cls._coerce(expected)
            if op == "gt" and not left > right:
                return False
            if op == "gte" and not left >= right:
                return False
            if op == "lt" and not left < right:
                return False
            if op == "lte" and not left <= right:
                return False
        return True

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(row)
        stored.setdefault("id", new_id())
        self._tables[table].append(stored)
        return dict(stored)

    async def select(self, table, filters=(), order_by=None, desc=False, limit=None):
        rows = [r for r in self._tables[table] if self._matches(r, filters)]
        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: self._coerce(r[order_by]), reverse=desc)
            # PostgREST default: nulls last ascending, first descending
            rows = missing + present if desc else present + missing
        if limit:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    async def count(self, table, filters=()):
        return sum(1 for r in self._tables[table] if self._matches(r, filters))

    async def update(self, table, filters, values):
        updated = []
        for row in self._tables[table]:
            if self._matches(row, filters):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, table, filters):
        kept, removed = [], []
        for row in self._tables[table]:
            (removed if self._matches(row, filters) else kept).append(row)
        self._tables[table] = kept
        return [dict(r) for r in removed]


# ============================================================
# Store Factory
# ============================================================

def _get_supabase_url() -> str:
    """Get Supabase URL from environment."""
    url = os.getenv("SUPABASE_URL", "").strip()
    if not url:
        log.warning("SUPABASE_URL not set - database operations will fail")
    return url


def _get_supabase_key() -> str:
    """Get Supabase key from environment."""
    key = os.getenv("SUPABASE_KEY", "").strip()
    if not key:
        log.warning("SUPABASE_KEY not set - database operations will fail")
    return key


async def create_store() -> Optional[DocumentStore]:
    """
    Create the DocumentStore selected by OTPCORE_STORE.

    Returns:
        A store instance, or None if Supabase is selected but not configured.
    """
    backend = os.getenv("OTPCORE_STORE", "supabase").lower().strip()

    if backend == "memory":
        log.warning("Using in-memory store (single process only, data is not persisted)")
        return MemoryStore()

    if backend != "supabase":
        log.warning("Unknown OTPCORE_STORE '%s', using supabase", backend)

    url = _get_supabase_url()
    key = _get_supabase_key()
    if not url or not key:
        log.error("Supabase credentials not configured")
        return None

    from supabase import acreate_client

    client = await acreate_client(url, key)
    log.info("Supabase async client initialized successfully")
    return SupabaseStore(client)


# ============================================================
# Health Check
# ============================================================

async def check_db_health(store: Optional[DocumentStore]) -> dict:
    """
    Check database connectivity for /health endpoint.

    Returns:
        Dict with status and optional error message.
    """
    if store is None:
        return {
            "database": "unavailable",
            "error": "Store not initialized",
        }

    try:
        await store.select(TABLE_USERS, limit=1)
        return {"database": "ok"}
    except Exception as e:
        error_msg = str(e)[:100]
        log.warning("Database health check failed: %s", error_msg)
        return {
            "database": "degraded",
            "error": error_msg,
        }
