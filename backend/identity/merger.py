"""
Identity Core - Account Merging

Folds a phone-only duplicate account into a survivor as a resumable saga.

Each merge is a job document in ``merge_jobs`` keyed by the duplicate's id,
so a duplicate can only ever be claimed by one merge. The job records a
cursor (index of the last completed step); a failed or interrupted job
resumes at ``cursor + 1``. Every step is idempotent:

- ``merge_counters`` tags the survivor with the job id in the same
  conditional write that adds the counters, so it is applied once.
- ``tombstone_duplicate`` and ``adopt_scalars`` compare before writing.
- The rewrite steps only touch documents that still reference the
  duplicate.

Failures are retried with backoff (1 min, 5 min, 15 min). After
MERGE_MAX_ATTEMPTS consecutive failures the job is escalated to the
operator queue and reported to Sentry. A step that finds the merge no
longer allowed (the survivor was merged away meanwhile) is not retried.
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any, List, Callable, Awaitable
import logging

from sentry_integration import capture_exception

from .audit import IdentityAuditLog, IdentityAuditEvent
from .errors import (
    NotFoundError, PolicyViolation, PartialMergeFailure, ValidationError,
    VersionConflict, DocumentExists,
)
from .models import (
    ACCOUNTS, ORDERS, POINTS_RECORDS, VISIT_SESSIONS, EVENTS, MERGE_JOBS, OPERATOR_QUEUE,
    Account, AccountStatus, MembershipLevel, MergeJob, MergeHandle, MergeReport, MergeStatus,
    utcnow, to_iso,
)
from .storage import DocumentStore, Document, values_at

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
MAX_MERGE_ATTEMPTS = 3
RETRY_DELAYS = [60, 300, 900]  # 1 min, 5 min, 15 min

# A document that keeps changing under a rewrite is retried this often
REWRITE_ATTEMPTS = 3

# Running jobs that have not reported progress for this long are resumable
STALE_RUNNING_SECONDS = 600


@dataclass
class ReferenceRewrite:
    """One foreign key that must stop pointing at the duplicate."""
    step: str
    collection: str
    field: str

    @property
    def key(self) -> str:
        return f"{self.collection}.{self.field}"


REFERENCE_REWRITES = [
    ReferenceRewrite("rewrite_orders", ORDERS, "user_id"),
    ReferenceRewrite("rewrite_points_records", POINTS_RECORDS, "user_id"),
    ReferenceRewrite("rewrite_visit_sessions", VISIT_SESSIONS, "user_id"),
    ReferenceRewrite("rewrite_event_participants", EVENTS, "participants[].user_id"),
    ReferenceRewrite("rewrite_referred_by", ACCOUNTS, "referral.referred_by_user_id"),
    ReferenceRewrite("rewrite_referral_backlinks", ACCOUNTS, "referral.referrals[]"),
    ReferenceRewrite("repair_merge_chains", ACCOUNTS, "merged_into"),
]

MERGE_STEPS = ["merge_counters", "tombstone_duplicate", "adopt_scalars"] + [
    rewrite.step for rewrite in REFERENCE_REWRITES
]


def _earliest(a, b):
    if a and b:
        return min(a, b)
    return a or b


def _latest(a, b):
    if a and b:
        return max(a, b)
    return a or b


LEVEL_ORDER = [level.value for level in MembershipLevel]


def _higher_level(a: Optional[str], b: Optional[str]) -> str:
    ranked = [level for level in (a, b) if level in LEVEL_ORDER]
    if not ranked:
        return a or b or MembershipLevel.BRONZE.value
    return max(ranked, key=LEVEL_ORDER.index)


def merged_counter_fields(survivor: Account, duplicate: Account, job_id: str) -> Dict[str, Any]:
    """
    Survivor field values after folding in the duplicate.

    Counters are summed and referral sets unioned. Dates take the earliest
    value, the level the higher tier and status prefers active
    unless the survivor is a tombstone.
    """
    s_m, d_m = survivor.membership, duplicate.membership
    s_r, d_r = survivor.referral, duplicate.referral

    referrals = []
    for account_id in s_r.referrals + d_r.referrals:
        if account_id not in referrals and account_id not in (survivor.id, duplicate.id):
            referrals.append(account_id)

    if survivor.is_merged:
        # A tombstone never changes status
        status = survivor.status
    elif AccountStatus.ACTIVE in (survivor.status, duplicate.status):
        status = AccountStatus.ACTIVE
    else:
        status = survivor.status

    return {
        "membership.level": _higher_level(s_m.level, d_m.level),
        "membership.points": s_m.points + d_m.points,
        "membership.referral_points": s_m.referral_points + d_m.referral_points,
        "membership.total_visit_hours": s_m.total_visit_hours + d_m.total_visit_hours,
        "membership.join_date": to_iso(_earliest(s_m.join_date, d_m.join_date)),
        "membership.last_active": to_iso(_latest(s_m.last_active, d_m.last_active)),
        "referral.referral_date": to_iso(_earliest(s_r.referral_date, d_r.referral_date)),
        "referral.referrals": referrals,
        "referral.total_referred": s_r.total_referred + d_r.total_referred,
        "referral.active_referrals": s_r.active_referrals + d_r.active_referrals,
        "status": status.value,
        "applied_merges": survivor.applied_merges + [job_id],
    }


def rewritten_fields(
    doc: Document, rewrite: ReferenceRewrite, survivor_id: str, duplicate_id: str
) -> Optional[Dict[str, Any]]:
    """
    Changes that repoint ``doc`` from the duplicate to the survivor, or
    None when the document must be left alone.
    """
    if doc.collection == ACCOUNTS:
        is_tombstone = doc.data.get("status") == AccountStatus.MERGED.value
        # Tombstones only ever have merged_into repaired
        if is_tombstone != (rewrite.field == "merged_into"):
            return None

    if "[]." in rewrite.field:
        array_name, sub_field = rewrite.field.split("[].", 1)
        items = []
        for item in values_at(doc.data, f"{array_name}[]"):
            if isinstance(item, dict) and item.get(sub_field) == duplicate_id:
                item = dict(item, **{sub_field: survivor_id})
            items.append(item)
        return {array_name: items}

    if rewrite.field.endswith("[]"):
        path = rewrite.field[:-2]
        ids = []
        for value in values_at(doc.data, rewrite.field):
            value = survivor_id if value == duplicate_id else value
            if value not in ids and value != doc.id:
                ids.append(value)
        return {path: ids}

    if doc.collection == ACCOUNTS and doc.id == survivor_id:
        # The survivor was referred by its own duplicate
        return {"referral.referred_by_user_id": None, "referral.referred_by": None}

    return {rewrite.field: survivor_id}


class AccountMerger:

    def __init__(
        self,
        store: DocumentStore,
        audit: IdentityAuditLog,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = MAX_MERGE_ATTEMPTS,
        retry_delays: Optional[List[int]] = None,
    ):
        self.store = store
        self.audit = audit
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_delays = retry_delays or RETRY_DELAYS
        self._steps: Dict[str, Callable[[MergeJob], Awaitable[MergeJob]]] = {
            "merge_counters": self._merge_counters,
            "tombstone_duplicate": self._tombstone_duplicate,
            "adopt_scalars": self._adopt_scalars,
        }

    # ==================== LOOKUPS ====================

    async def _account(self, account_id: str) -> Account:
        doc = await self.store.get(ACCOUNTS, account_id)
        if doc is None:
            raise NotFoundError("account not found")
        return Account.from_document(doc.id, doc.data, doc.version)

    async def _job_for_duplicate(self, duplicate_id: str) -> Optional[MergeJob]:
        doc = await self.store.get(MERGE_JOBS, duplicate_id)
        return MergeJob.from_document(doc.data, doc.version) if doc else None

    async def _job(self, job_id: str) -> MergeJob:
        docs = await self.store.find(MERGE_JOBS, "job_id", job_id, limit=1)
        if not docs:
            raise NotFoundError("merge job not found")
        return MergeJob.from_document(docs[0].data, docs[0].version)

    async def _pending_merges_into(self, account_id: str) -> List[MergeJob]:
        docs = await self.store.find(MERGE_JOBS, "survivor_id", account_id)
        jobs = [MergeJob.from_document(doc.data, doc.version) for doc in docs]
        return [job for job in jobs if not job.status.is_finished]

    async def _live_survivor(self, job: MergeJob) -> Account:
        survivor = await self._account(job.survivor_id)
        if survivor.is_merged:
            raise PolicyViolation("survivor was merged into another account while the merge was pending")
        return survivor

    async def _save_job(self, job: MergeJob, changes: Dict[str, Any]) -> MergeJob:
        changes = dict(changes)
        changes["updated_at"] = to_iso(utcnow())
        doc = await self.store.update(MERGE_JOBS, job.duplicate_id, changes, expected_version=job.version)
        return MergeJob.from_document(doc.data, doc.version)

    @staticmethod
    def _handle(job: MergeJob) -> MergeHandle:
        return MergeHandle(
            job_id=job.job_id,
            survivor_id=job.survivor_id,
            duplicate_id=job.duplicate_id,
            status=job.status,
            cursor=job.cursor,
        )

    @staticmethod
    def _report(job: MergeJob) -> MergeReport:
        steps = MERGE_STEPS[: job.cursor + 1]
        if job.status == MergeStatus.COMPLETED:
            steps = steps + ["finalize"]
        return MergeReport(
            job_id=job.job_id,
            survivor_id=job.survivor_id,
            duplicate_id=job.duplicate_id,
            status=job.status,
            steps_completed=steps,
            references_rewritten=dict(job.counts),
        )

    # ==================== START ====================

    async def start_merge(self, survivor_id: str, duplicate_id: str) -> MergeHandle:
        """
        Check preconditions and claim the duplicate for a merge job.

        Nothing is written when a precondition fails.

        Raises:
            ValidationError: Missing ids
            NotFoundError: Either account does not exist
            PolicyViolation: The merge is not allowed
        """
        if not survivor_id or not duplicate_id:
            raise ValidationError("survivor_id and duplicate_id are required")
        if survivor_id == duplicate_id:
            raise PolicyViolation("an account cannot be merged into itself")

        survivor = await self._account(survivor_id)
        duplicate = await self._account(duplicate_id)
        existing = await self._job_for_duplicate(duplicate_id)

        if duplicate.is_merged:
            if duplicate.merged_into != survivor_id:
                raise PolicyViolation("duplicate is already merged into another account")
            if existing and existing.survivor_id == survivor_id and not existing.status.is_finished:
                return self._handle(existing)
            return MergeHandle(
                job_id=existing.job_id if existing else None,
                survivor_id=survivor_id,
                duplicate_id=duplicate_id,
                status=MergeStatus.ALREADY_MERGED,
                cursor=existing.cursor if existing else -1,
            )

        if survivor.is_merged:
            raise PolicyViolation("survivor has been merged and cannot receive merges")
        if duplicate.has_email:
            raise PolicyViolation("only accounts without an email can be merged away")

        survivor_job = await self._job_for_duplicate(survivor_id)
        if survivor_job and not survivor_job.status.is_finished:
            raise PolicyViolation("survivor is being merged into another account")
        if await self._pending_merges_into(duplicate_id):
            raise PolicyViolation("duplicate still has merges into it pending")

        if existing and not existing.status.is_finished:
            if existing.survivor_id != survivor_id:
                raise PolicyViolation("duplicate is already being merged into another account")
            return self._handle(existing)

        now = utcnow()
        job = MergeJob(
            job_id=str(uuid.uuid4()),
            survivor_id=survivor_id,
            duplicate_id=duplicate_id,
            status=MergeStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )

        try:
            if existing is None:
                doc = await self.store.insert(MERGE_JOBS, duplicate_id, job.to_data())
            else:
                doc = await self.store.update(
                    MERGE_JOBS, duplicate_id, job.to_data(), expected_version=existing.version
                )
        except (DocumentExists, VersionConflict):
            claimed = await self._job_for_duplicate(duplicate_id)
            if claimed and claimed.survivor_id == survivor_id and not claimed.status.is_finished:
                return self._handle(claimed)
            raise PolicyViolation("duplicate is already being merged")

        job = MergeJob.from_document(doc.data, doc.version)
        await self.audit.record(
            IdentityAuditEvent.MERGE_STARTED, survivor_id,
            {"job_id": job.job_id, "duplicate_id": duplicate_id},
        )
        logger.info(f"Merge job {job.job_id} queued: {duplicate_id} -> {survivor_id}")
        return self._handle(job)

    # ==================== RUN ====================

    async def run_job(self, job_id: str) -> MergeReport:
        """
        Execute the saga from ``cursor + 1``.

        Raises:
            NotFoundError: Unknown job
            PolicyViolation: Job cancelled, already running elsewhere, or a step
                found the merge no longer allowed (no retry)
            PartialMergeFailure: A step failed (retryable)
        """
        job = await self._job(job_id)

        if job.status == MergeStatus.COMPLETED:
            return self._report(job)
        if job.status == MergeStatus.CANCELLED:
            raise PolicyViolation("merge job was cancelled")
        if job.status == MergeStatus.RUNNING and not self._is_stale(job):
            raise PolicyViolation("merge job is already running")

        try:
            job = await self._save_job(job, {"status": MergeStatus.RUNNING.value})
        except VersionConflict:
            raise PolicyViolation("merge job was claimed by another runner")

        step_name = None
        try:
            for index, step_name in enumerate(MERGE_STEPS):
                if index <= job.cursor:
                    continue
                job = await self._run_step(step_name, job)
                job = await self._save_job(job, {"cursor": index, "counts": job.counts})
                logger.info(f"Merge job {job.job_id} completed step {step_name} (cursor {index})")
        except PolicyViolation as e:
            await self._abort(job_id, step_name, e)
            raise
        except Exception as e:
            try:
                await self._record_failure(job_id, step_name, e)
            except Exception:
                logger.exception(f"Could not record failure of merge job {job_id}")
            raise PartialMergeFailure(
                f"merge step {step_name} failed, will resume from cursor {job.cursor + 1}",
                job_id=job_id,
                cursor=job.cursor,
                step=step_name,
            ) from e

        job = await self._save_job(job, {
            "status": MergeStatus.COMPLETED.value,
            "consecutive_failures": 0,
            "last_error": None,
            "next_retry_at": None,
            "completed_at": to_iso(utcnow()),
        })
        await self.audit.record(
            IdentityAuditEvent.MERGE_COMPLETED, job.survivor_id,
            {
                "job_id": job.job_id,
                "duplicate_id": job.duplicate_id,
                "references_rewritten": dict(job.counts),
            },
        )
        logger.info(f"Merge job {job.job_id} completed: {job.counts}")
        return self._report(job)

    async def merge(self, survivor_id: str, duplicate_id: str) -> MergeReport:
        """Start (or resume) a merge and run it to completion."""
        handle = await self.start_merge(survivor_id, duplicate_id)
        if handle.status == MergeStatus.ALREADY_MERGED:
            logger.info(f"Account {duplicate_id} already merged into {survivor_id}")
            return MergeReport(
                job_id=handle.job_id,
                survivor_id=survivor_id,
                duplicate_id=duplicate_id,
                status=MergeStatus.ALREADY_MERGED,
            )
        return await self.run_job(handle.job_id)

    async def get_job(self, job_id: str) -> MergeReport:
        return self._report(await self._job(job_id))

    async def cancel(self, job_id: str) -> MergeHandle:
        """
        Cancel a job that has not committed any step yet.

        Raises:
            PolicyViolation: Once the counters are merged the job must finish
        """
        job = await self._job(job_id)
        if job.status == MergeStatus.CANCELLED:
            return self._handle(job)
        if job.cursor != -1 or job.status not in (MergeStatus.QUEUED, MergeStatus.FAILED):
            raise PolicyViolation("merge job can no longer be cancelled")

        try:
            job = await self._save_job(job, {"status": MergeStatus.CANCELLED.value})
        except VersionConflict:
            raise PolicyViolation("merge job changed while cancelling, try again")

        await self.audit.record(
            IdentityAuditEvent.MERGE_CANCELLED, job.survivor_id, {"job_id": job.job_id}
        )
        return self._handle(job)

    async def due_jobs(self, limit: Optional[int] = None) -> List[MergeJob]:
        """Queued jobs, failed jobs whose retry time has passed and stale running jobs."""
        now = utcnow()
        due = []
        for doc in await self.store.all(MERGE_JOBS):
            job = MergeJob.from_document(doc.data, doc.version)
            if job.status == MergeStatus.QUEUED:
                due.append(job)
            elif job.status == MergeStatus.FAILED and (job.next_retry_at is None or job.next_retry_at <= now):
                due.append(job)
            elif job.status == MergeStatus.RUNNING and self._is_stale(job):
                due.append(job)
        due.sort(key=lambda j: j.created_at or now)
        return due[:limit] if limit else due

    @staticmethod
    def _is_stale(job: MergeJob) -> bool:
        if job.updated_at is None:
            return True
        return utcnow() - job.updated_at > timedelta(seconds=STALE_RUNNING_SECONDS)

    # ==================== FAILURE HANDLING ====================

    async def _record_failure(self, job_id: str, step_name: Optional[str], error: Exception):
        job = await self._job(job_id)
        failures = job.consecutive_failures + 1
        message = f"{type(error).__name__}: {error}"[:500]

        logger.error(
            f"Merge job {job_id} failed at step {step_name} (cursor {job.cursor}, "
            f"attempt {failures}/{self.max_attempts}): {message}"
        )

        if failures >= self.max_attempts:
            await self._escalate(job, failures, message, error)
            return

        delay_index = min(failures - 1, len(self.retry_delays) - 1)
        delay_seconds = self.retry_delays[delay_index]
        await self._save_job(job, {
            "status": MergeStatus.FAILED.value,
            "consecutive_failures": failures,
            "last_error": message,
            "next_retry_at": to_iso(utcnow() + timedelta(seconds=delay_seconds)),
        })
        await self.audit.record(
            IdentityAuditEvent.MERGE_FAILED, job.survivor_id,
            {"job_id": job_id, "cursor": job.cursor, "step": step_name, "attempt": failures},
            success=False,
        )
        logger.warning(f"Merge job {job_id} will retry in {delay_seconds}s")

    async def _abort(self, job_id: str, step_name: Optional[str], error: PolicyViolation):
        """
        A step found the merge no longer allowed. Retrying cannot help:
        a job that has not written anything is cancelled, one that has is
        handed to an operator.
        """
        job = await self._job(job_id)
        message = f"{type(error).__name__}: {error}"[:500]
        logger.warning(f"Merge job {job_id} aborted at step {step_name} (cursor {job.cursor}): {message}")

        if job.cursor >= 0:
            await self._escalate(job, job.consecutive_failures + 1, message, error)
            return

        await self._save_job(job, {
            "status": MergeStatus.CANCELLED.value,
            "last_error": message,
            "next_retry_at": None,
        })
        await self.audit.record(
            IdentityAuditEvent.MERGE_CANCELLED, job.survivor_id,
            {"job_id": job_id, "step": step_name, "reason": "policy"},
            success=False,
        )

    async def _escalate(self, job: MergeJob, failures: int, message: str, error: Exception):
        await self._save_job(job, {
            "status": MergeStatus.ESCALATED.value,
            "consecutive_failures": failures,
            "last_error": message,
            "next_retry_at": None,
        })

        entry = {
            "job_id": job.job_id,
            "survivor_id": job.survivor_id,
            "duplicate_id": job.duplicate_id,
            "cursor": job.cursor,
            "attempts": failures,
            "last_error": message,
            "escalated_at": to_iso(utcnow()),
        }
        try:
            await self.store.insert(OPERATOR_QUEUE, job.job_id, entry)
        except DocumentExists:
            await self.store.update(OPERATOR_QUEUE, job.job_id, entry)

        await self.audit.record(
            IdentityAuditEvent.MERGE_ESCALATED, job.survivor_id,
            {"job_id": job.job_id, "cursor": job.cursor, "attempts": failures},
            success=False,
        )
        capture_exception(error, job_id=job.job_id, cursor=job.cursor, attempts=failures)
        logger.error(f"Merge job {job.job_id} escalated to operator queue after {failures} attempts")

    # ==================== STEPS ====================

    async def _run_step(self, step_name: str, job: MergeJob) -> MergeJob:
        if step_name in self._steps:
            return await self._steps[step_name](job)
        rewrite = next(r for r in REFERENCE_REWRITES if r.step == step_name)
        return await self._rewrite_references(job, rewrite)

    async def _merge_counters(self, job: MergeJob) -> MergeJob:
        survivor = await self._live_survivor(job)
        if job.job_id in survivor.applied_merges:
            logger.info(f"Counters for job {job.job_id} already applied")
            return job
        duplicate = await self._account(job.duplicate_id)

        changes = merged_counter_fields(survivor, duplicate, job.job_id)
        changes["updated_at"] = to_iso(utcnow())
        await self.store.update(ACCOUNTS, survivor.id, changes, expected_version=survivor.version)
        return job

    async def _tombstone_duplicate(self, job: MergeJob) -> MergeJob:
        duplicate = await self._account(job.duplicate_id)
        if duplicate.is_merged:
            if duplicate.merged_into != job.survivor_id:
                raise PolicyViolation("duplicate was merged into another account")
            return job
        if duplicate.has_email:
            raise PolicyViolation("duplicate gained an email while the merge was queued")
        await self._live_survivor(job)

        now = to_iso(utcnow())
        await self.store.update(ACCOUNTS, duplicate.id, {
            "status": AccountStatus.MERGED.value,
            "merged_into": job.survivor_id,
            "merged_at": now,
            "updated_at": now,
        }, expected_version=duplicate.version)
        return job

    async def _adopt_scalars(self, job: MergeJob) -> MergeJob:
        survivor = await self._live_survivor(job)
        duplicate = await self._account(job.duplicate_id)

        changes: Dict[str, Any] = {}
        if duplicate.display_name and duplicate.display_name != survivor.display_name:
            changes["display_name"] = duplicate.display_name
        if duplicate.phone and duplicate.phone != survivor.phone:
            changes["phone"] = duplicate.phone
        referrer_id = duplicate.referral.referred_by_user_id
        if not survivor.referral.referred_by_user_id and referrer_id and referrer_id != survivor.id:
            changes["referral.referred_by"] = duplicate.referral.referred_by
            changes["referral.referred_by_user_id"] = referrer_id

        if changes:
            changes["updated_at"] = to_iso(utcnow())
            await self.store.update(ACCOUNTS, survivor.id, changes, expected_version=survivor.version)
        return job

    async def _rewrite_references(self, job: MergeJob, rewrite: ReferenceRewrite) -> MergeJob:
        docs = await self.store.find(rewrite.collection, rewrite.field, job.duplicate_id)
        if not docs:
            return job

        for start in range(0, len(docs), self.batch_size):
            rewritten = 0
            for doc in docs[start:start + self.batch_size]:
                if await self._rewrite_document(doc, rewrite, job):
                    rewritten += 1
            counts = dict(job.counts)
            counts[rewrite.key] = counts.get(rewrite.key, 0) + rewritten
            job = await self._save_job(job, {"counts": counts})
            logger.debug(f"Merge job {job.job_id}: {rewrite.key} batch of {rewritten} rewritten")
        return job

    async def _rewrite_document(self, doc: Document, rewrite: ReferenceRewrite, job: MergeJob) -> bool:
        for _ in range(REWRITE_ATTEMPTS):
            changes = rewritten_fields(doc, rewrite, job.survivor_id, job.duplicate_id)
            if changes is None:
                return False
            changes["updated_at"] = to_iso(utcnow())
            try:
                await self.store.update(doc.collection, doc.id, changes, expected_version=doc.version)
                return True
            except VersionConflict:
                doc = await self.store.get(doc.collection, doc.id)
                if doc is None or job.duplicate_id not in values_at(doc.data, rewrite.field):
                    return False
        raise VersionConflict(doc.collection, doc.id, doc.version, None)
