"""
Unit Tests for Merge Worker

Run with: pytest tests/test_merge_worker.py -v
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from config import Settings
from identity.errors import PartialMergeFailure, PolicyViolation
from identity.models import ACCOUNTS, LINK_HOLDS, Account, MergeJob, MergeStatus, utcnow, to_iso
from identity.service import IdentityService
from identity.storage import InMemoryDocumentStore
from identity.worker import MergeWorker


def make_job(job_id):
    return MergeJob(job_id=job_id, survivor_id="A", duplicate_id=f"dup-{job_id}")


class TestProcessOnce:

    @pytest.mark.asyncio
    async def test_stats_per_outcome(self):
        merger = MagicMock()
        merger.due_jobs = AsyncMock(return_value=[make_job("1"), make_job("2"), make_job("3")])
        merger.run_job = AsyncMock(side_effect=[
            MagicMock(),
            PartialMergeFailure("step failed", job_id="2", cursor=4, step="rewrite_orders"),
            PolicyViolation("merge job is already running"),
        ])
        linker = MagicMock()
        linker.purge_expired_holds = AsyncMock(return_value=2)

        worker = MergeWorker(merger, linker, batch_size=5)
        stats = await worker.process_once()

        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["skipped"] == 1
        assert stats["holds_purged"] == 2
        assert "timestamp" in stats
        merger.due_jobs.assert_awaited_once_with(limit=5)

    @pytest.mark.asyncio
    async def test_runs_queued_merge_end_to_end(self):
        store = InMemoryDocumentStore()
        service = IdentityService(store, settings=Settings())
        await store.insert(ACCOUNTS, "A", Account(id="A", email="a@example.com").to_data())
        await store.insert(ACCOUNTS, "B", Account(id="B", phone="+60123456789").to_data())
        handle = await service.start_merge("A", "B")
        await store.insert(LINK_HOLDS, "stale", {"expires_at": to_iso(utcnow() - timedelta(minutes=1))})

        worker = MergeWorker(service.merger, service.linker)
        stats = await worker.process_once()

        assert stats["completed"] == 1
        assert stats["holds_purged"] == 1
        report = await service.get_merge(handle.job_id)
        assert report.status == MergeStatus.COMPLETED

        # Nothing left to do
        stats = await worker.process_once()
        assert stats["completed"] == 0

    def test_stop(self):
        worker = MergeWorker(MagicMock(), MagicMock())
        worker._running = True

        worker.stop()

        assert worker._running is False
