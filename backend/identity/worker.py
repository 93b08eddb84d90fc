"""
Merge Worker

Background worker that resumes queued and failed merge jobs and purges
expired link holds. Runs inside the API process (started from the server
lifespan) or as a standalone process.

Usage:
- Standalone: python -m identity.worker
"""

import asyncio
import logging
from datetime import datetime, timezone

from .errors import PartialMergeFailure, PolicyViolation
from .linker import AccountLinker
from .merger import AccountMerger

logger = logging.getLogger(__name__)


class MergeWorker:
    """
    Background worker for merge job processing.

    This worker:
    1. Picks up queued jobs, failed jobs whose retry time has passed and
       running jobs that stopped reporting progress
    2. Runs each job from its cursor
    3. Purges expired link holds
    """

    def __init__(
        self,
        merger: AccountMerger,
        linker: AccountLinker,
        batch_size: int = 10,
        poll_interval: int = 30
    ):
        self.merger = merger
        self.linker = linker
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._running = False

    async def process_once(self) -> dict:
        """
        Process one batch of due merge jobs.

        Returns:
            Processing statistics
        """
        stats = {"completed": 0, "failed": 0, "skipped": 0}

        for job in await self.merger.due_jobs(limit=self.batch_size):
            try:
                await self.merger.run_job(job.job_id)
                stats["completed"] += 1
            except PartialMergeFailure as e:
                logger.warning(f"Merge job {e.job_id} failed at cursor {e.cursor}")
                stats["failed"] += 1
            except PolicyViolation as e:
                logger.info(f"Merge job {job.job_id} skipped: {e.message}")
                stats["skipped"] += 1

        stats["holds_purged"] = await self.linker.purge_expired_holds()
        stats["timestamp"] = datetime.now(timezone.utc).isoformat()
        return stats

    async def run_continuous(self):
        """
        Run the worker continuously, polling for due jobs.
        """
        self._running = True
        logger.info(f"Starting merge worker (batch_size={self.batch_size}, poll_interval={self.poll_interval}s)")

        while self._running:
            try:
                stats = await self.process_once()

                if stats["completed"] or stats["failed"]:
                    logger.info(
                        f"Merge worker: {stats['completed']} completed, "
                        f"{stats['failed']} failed, {stats['skipped']} skipped"
                    )

            except Exception as e:
                logger.error(f"Worker error: {e}")

            await asyncio.sleep(self.poll_interval)

    def stop(self):
        """Stop the continuous worker."""
        self._running = False
        logger.info("Merge worker stopping...")


async def run_worker():
    """Run the merge worker as a standalone process."""
    from config import get_settings
    from logging_config import setup_logging
    from .service import build_identity_service

    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production, service_name="identity-merge-worker")

    service = build_identity_service(settings)
    worker = MergeWorker(
        merger=service.merger,
        linker=service.linker,
        poll_interval=settings.MERGE_WORKER_POLL_INTERVAL,
    )

    try:
        await worker.run_continuous()
    except KeyboardInterrupt:
        worker.stop()


if __name__ == "__main__":
    asyncio.run(run_worker())
