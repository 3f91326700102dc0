# tests/test_retention_job.py
"""
Retention Job Tests

Tests for:
- Expired passcode cleanup (dry run counts, live run deletes)
- Due delivery retries
- Throttle hit purge
- Whole-job summary and status

Run with: pytest tests/test_retention_job.py -v
"""

from otpcore.db import TABLE_PASSCODES, TABLE_THROTTLE_HITS
from otpcore.delivery.channels import ChannelMessage
from scripts.retention_job import (
    expire_passcodes,
    purge_throttle_hits,
    retry_due_deliveries,
    run_retention_job,
)

EMAIL = "alice@example.com"


class TestRetentionSteps:

    async def test_expire_passcodes_dry_run_then_live(self, core, user, store, clock):
        await core.passcodes.create_passcode(user["id"], "email", EMAIL)
        clock.advance(minutes=11)

        assert await expire_passcodes(core, clock(), dry_run=True) == 1
        assert await store.count(TABLE_PASSCODES) == 1

        assert await expire_passcodes(core, clock(), dry_run=False) == 1
        assert await store.count(TABLE_PASSCODES) == 0

    async def test_retry_due_deliveries(self, core, user, channels, clock):
        channels.get("phone-email").fail = True
        channels.get("smtp").fail = True
        await core.orchestrator.send_notification(
            user["id"], "securityAlert", EMAIL, ChannelMessage(subject="s", body="b"),
        )
        clock.advance(minutes=31)

        preview = await retry_due_deliveries(core, clock(), dry_run=True)
        assert preview["processed"] == 1
        assert preview["succeeded"] == 0

        channels.get("phone-email").fail = False
        summary = await retry_due_deliveries(core, clock(), dry_run=False)
        assert summary["succeeded"] == 1

    async def test_purge_throttle_hits(self, core, store, clock):
        await core.throttle.hit("u1")
        clock.advance(hours=25)
        await core.throttle.hit("u1")

        assert await purge_throttle_hits(core, clock(), dry_run=True) == 1
        assert await purge_throttle_hits(core, clock(), dry_run=False) == 1
        assert await store.count(TABLE_THROTTLE_HITS) == 1


class TestRunRetentionJob:

    async def test_job_on_empty_memory_store(self, monkeypatch):
        monkeypatch.setenv("OTPCORE_STORE", "memory")

        summary = await run_retention_job(dry_run=False)
        assert summary["status"] == "success"
        assert summary["expired_passcodes"] == 0
        assert summary["retries"]["processed"] == 0
        assert summary["throttle_hits_purged"] == 0

    async def test_skip_retries(self, monkeypatch):
        monkeypatch.setenv("OTPCORE_STORE", "memory")

        summary = await run_retention_job(dry_run=True, skip_retries=True)
        assert summary["dry_run"] is True
        assert "retries" not in summary

    async def test_missing_store_is_an_error(self, monkeypatch):
        monkeypatch.setenv("OTPCORE_STORE", "supabase")
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)

        summary = await run_retention_job()
        assert summary["status"] == "error"
