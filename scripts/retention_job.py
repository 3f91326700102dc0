#!/usr/bin/env python3
# scripts/retention_job.py
"""
Retention Job — Passcode Expiry, Delivery Retries, Throttle Cleanup

Runs periodically (e.g., every 15 minutes via cron) alongside the API.

Behavior:
- Deletes passcodes whose expiry is in the past
- Re-dispatches failed deliveries whose retry is due (unless --skip-retries)
- Deletes throttle hits older than THROTTLE_RETENTION_HOURS

Usage:
    # Dry run (count only, no changes)
    python scripts/retention_job.py --dry-run

    # Execute
    python scripts/retention_job.py

    # Expiry and throttle cleanup only
    python scripts/retention_job.py --skip-retries --verbose

Cron example (every 15 minutes):
    */15 * * * * /path/to/venv/bin/python /path/to/scripts/retention_job.py >> /var/log/otpcore-retention.log 2>&1

Environment Variables Required:
    SUPABASE_URL: Database URL
    SUPABASE_KEY: Service role key
"""

from __future__ import annotations

import sys
import asyncio
import argparse
import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from otpcore.core import OtpCore, build_core
from otpcore.db import TABLE_PASSCODES, TABLE_THROTTLE_HITS, create_store, to_iso, utcnow

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
log = logging.getLogger("otpcore.retention_job")


# ============================================================
# Constants
# ============================================================

THROTTLE_RETENTION_HOURS = 24


# ============================================================
# Steps
# ============================================================

async def expire_passcodes(core: OtpCore, now: datetime, dry_run: bool) -> int:
    if dry_run:
        count = await core.store.count(TABLE_PASSCODES, [("expires_at", "lt", to_iso(now))])
        log.info("[DRY RUN] Would delete %d expired passcodes", count)
        return count
    return await core.passcodes.cleanup_expired(now)


async def retry_due_deliveries(core: OtpCore, now: datetime, dry_run: bool) -> Dict[str, int]:
    if dry_run:
        due = await core.ledger.failed_and_retryable(now)
        log.info("[DRY RUN] Would retry %d deliveries", len(due))
        return {"processed": len(due), "succeeded": 0, "failed": 0, "skipped": 0}
    return await core.orchestrator.run_retry_sweep()


async def purge_throttle_hits(core: OtpCore, now: datetime, dry_run: bool) -> int:
    cutoff = now - timedelta(hours=THROTTLE_RETENTION_HOURS)
    if dry_run:
        count = await core.store.count(TABLE_THROTTLE_HITS, [("created_at", "lt", to_iso(cutoff))])
        log.info("[DRY RUN] Would delete %d throttle hits", count)
        return count
    return await core.throttle.purge(cutoff)


# ============================================================
# Main Entry Point
# ============================================================

async def run_retention_job(
    dry_run: bool = False,
    verbose: bool = False,
    skip_retries: bool = False,
) -> Dict[str, Any]:
    """
    Run one maintenance pass.

    Args:
        dry_run: If True, count what would change without changing it
        verbose: If True, enable debug logging
        skip_retries: If True, leave failed deliveries for the next run

    Returns:
        Summary of job execution
    """
    if verbose:
        logging.getLogger("otpcore").setLevel(logging.DEBUG)

    start_time = utcnow()
    log.info("=" * 60)
    log.info("RETENTION JOB STARTED")
    log.info("Mode: %s", "DRY RUN" if dry_run else "LIVE")
    log.info("=" * 60)

    store = await create_store()
    if store is None:
        log.error("Failed to get database store")
        return {"status": "error", "message": "Database connection failed"}

    core = build_core(store)
    summary: Dict[str, Any] = {"dry_run": dry_run}
    try:
        summary["expired_passcodes"] = await expire_passcodes(core, start_time, dry_run)
        if skip_retries:
            log.info("Skipping delivery retries")
        else:
            summary["retries"] = await retry_due_deliveries(core, start_time, dry_run)
        summary["throttle_hits_purged"] = await purge_throttle_hits(core, start_time, dry_run)
        await core.events.drain()
    except Exception as e:
        log.error("Job failed with error: %s", e)
        return {
            "status": "error",
            "message": str(e),
            "duration_ms": int((utcnow() - start_time).total_seconds() * 1000),
        }

    retries = summary.get("retries", {})
    summary["status"] = "partial" if retries.get("failed") else "success"
    summary["duration_ms"] = int((utcnow() - start_time).total_seconds() * 1000)

    log.info("=" * 60)
    log.info("RETENTION JOB COMPLETED")
    log.info("Expired passcodes: %d", summary["expired_passcodes"])
    if retries:
        log.info("Retries: %s", retries)
    log.info("Throttle hits purged: %d", summary["throttle_hits_purged"])
    log.info("Duration: %dms", summary["duration_ms"])
    log.info("=" * 60)
    return summary


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="OTP core retention job - expire passcodes, retry deliveries, purge throttle hits"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without executing",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) output",
    )
    parser.add_argument(
        "--skip-retries",
        action="store_true",
        help="Do not re-dispatch failed deliveries",
    )

    args = parser.parse_args()

    summary = asyncio.run(run_retention_job(
        dry_run=args.dry_run,
        verbose=args.verbose,
        skip_retries=args.skip_retries,
    ))

    # Exit with appropriate code
    if summary.get("status") == "error":
        sys.exit(1)
    elif summary.get("status") == "partial":
        sys.exit(2)  # Some retries failed
    else:
        sys.exit(0)


if __name__ == "__main__":
    main()
