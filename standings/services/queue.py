"""Recalculation job queue.

One non-terminal job exists per (league, season). Enqueueing a key that
already has one coalesces into it. Jobs are dispatched by priority, then age,
and retried with exponential backoff until the attempt budget runs out.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from standings.services.audit import AuditRecord
from standings.services.clock import utcnow
from standings.services.errors import InvariantViolationError, RepositoryConflictError, RepositoryValidationError

if TYPE_CHECKING:
    from standings.services.snapshots import SnapshotManager

logger = logging.getLogger(__name__)

JOB_STATUSES = ("pending", "processing", "completed", "failed")
ACTIVE_JOB_STATUSES = frozenset({"pending", "processing"})
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed"})
MAX_RECORDED_REASONS = 20
REAPER_ACTOR_ID = "lease-reaper"


class Priority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_seconds: int = 2
    max_seconds: int = 30

    def delay_seconds(self, attempt: int) -> int:
        return compute_retry_delay_seconds(attempt, base_seconds=self.base_seconds, max_seconds=self.max_seconds)


def compute_retry_delay_seconds(attempt: int, *, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


def new_job_record(
    *,
    league_id: str,
    season_id: str,
    priority: int,
    reason: str | None,
    max_attempts: int,
    now: datetime,
) -> dict[str, Any]:
    return {
        "id": str(uuid4()),
        "league_id": league_id,
        "season_id": season_id,
        "priority": int(priority),
        "status": "pending",
        "attempts": 0,
        "max_attempts": max(1, max_attempts),
        "created_at": now,
        "updated_at": now,
        "started_at": None,
        "completed_at": None,
        "next_run_at": now,
        "lease_expires_at": None,
        "locked_by": None,
        "last_error": None,
        "metadata": {"reasons": [reason] if reason else [], "snapshot_id": None, "rerun_requested": False},
        "result": None,
    }


def coalesce_job_record(job: dict[str, Any], *, priority: int, reason: str | None) -> dict[str, Any]:
    """Return the fields to update when a new request folds into ``job``."""
    metadata = dict(job.get("metadata") or {})
    reasons = list(metadata.get("reasons") or [])
    if reason:
        reasons.append(reason)
    metadata["reasons"] = reasons[-MAX_RECORDED_REASONS:]
    if job["status"] == "processing":
        metadata["rerun_requested"] = True
    return {"priority": max(int(job["priority"]), int(priority)), "metadata": metadata}


def follow_up_job_record(job: dict[str, Any], *, now: datetime) -> dict[str, Any]:
    return new_job_record(
        league_id=job["league_id"],
        season_id=job["season_id"],
        priority=job["priority"],
        reason=f"rerun requested during job {job['id']}",
        max_attempts=job["max_attempts"],
        now=now,
    )


def requeue_job_record(job: dict[str, Any], *, reason: str, now: datetime) -> dict[str, Any]:
    """Return the fields that turn a failed ``job`` into a fresh pending run."""
    metadata = dict(job.get("metadata") or {})
    reasons = [*(metadata.get("reasons") or []), reason]
    metadata.update(reasons=reasons[-MAX_RECORDED_REASONS:], snapshot_id=None, rerun_requested=False)
    return {
        "status": "pending",
        "attempts": 0,
        "updated_at": now,
        "started_at": None,
        "completed_at": None,
        "next_run_at": now,
        "lease_expires_at": None,
        "locked_by": None,
        "result": None,
        "metadata": metadata,
    }


def idle_queue_state() -> dict[str, Any]:
    return {"paused": False, "reason": None, "changed_by": None, "changed_at": None}


class JobQueue:
    def __init__(
        self,
        repository: Any,
        *,
        snapshots: SnapshotManager,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.snapshots = snapshots
        self.policy = policy or RetryPolicy()
        self._clock = clock

    async def enqueue(
        self,
        league_id: str,
        season_id: str,
        *,
        priority: int = Priority.NORMAL,
        reason: str | None = None,
        actor: str | None = None,
    ) -> dict[str, Any]:
        league_id = (league_id or "").strip()
        season_id = (season_id or "").strip()
        if not league_id or not season_id:
            raise RepositoryValidationError("league_id and season_id must be non-empty strings")
        try:
            priority = Priority(int(priority))
        except ValueError as exc:
            raise RepositoryValidationError("priority must be between 1 and 4") from exc

        job, created = await self.repository.upsert_active_job(
            league_id=league_id,
            season_id=season_id,
            priority=int(priority),
            reason=reason,
            max_attempts=self.policy.max_attempts,
            now=self._clock(),
        )
        logger.info(
            "%s job %s league=%s season=%s priority=%s actor=%s",
            "enqueued" if created else "coalesced into",
            job["id"],
            league_id,
            season_id,
            job["priority"],
            actor,
        )
        return job

    async def dequeue(self, worker_id: str, lease_seconds: int) -> dict[str, Any] | None:
        """Claim the highest-priority eligible job, or nothing while the queue is paused.

        Raises ``LockConflictError`` when another worker took the selected job
        between selection and claim, and ``InvariantViolationError`` when the
        claimed job turns out to share its league season with another
        processing job; that job is failed before the error propagates.
        """
        now = self._clock()
        state = await self.repository.get_queue_state()
        if state["paused"]:
            logger.debug("queue paused by %s; nothing dispatched", state["changed_by"])
            return None
        job_id = await self.repository.next_claimable_job_id(now=now)
        if job_id is None:
            return None
        job = await self.repository.claim_job(
            job_id,
            worker_id=worker_id,
            lease_seconds=max(1, lease_seconds),
            now=now,
        )
        await self._ensure_sole_processing_job(job, worker_id=worker_id, now=now)
        logger.info("job %s claimed by %s attempt=%s", job_id, worker_id, job["attempts"] + 1)
        return job

    async def complete(self, job_id: str, worker_id: str, result: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.repository.complete_job(job_id, worker_id=worker_id, result=result, now=self._clock())

    async def fail(self, job_id: str, worker_id: str | None, error: str, *, fatal: bool = False) -> dict[str, Any]:
        now = self._clock()
        job = await self.repository.get_job(job_id)
        if job["status"] != "processing":
            raise RepositoryConflictError("job is not processing")
        if worker_id is not None and job["locked_by"] != worker_id:
            raise RepositoryConflictError("job is leased by another worker")

        attempts = job["attempts"] + 1
        if not fatal and attempts < job["max_attempts"]:
            delay = self.policy.delay_seconds(attempts)
            updated = await self.repository.retry_job(
                job_id,
                worker_id=worker_id,
                error=error,
                next_run_at=now + timedelta(seconds=delay),
                now=now,
            )
            logger.warning("job %s failed attempt=%s; retry in %ss: %s", job_id, attempts, delay, error)
            return updated
        return await self._fail_terminal(job, worker_id=worker_id, error=error, fatal=fatal, now=now)

    async def reclaim(self, limit: int = 100) -> int:
        now = self._clock()
        expired = await self.repository.list_expired_leases(now=now, limit=max(1, min(limit, 1000)))
        reclaimed = 0
        for job in expired:
            try:
                if job["attempts"] + 1 < job["max_attempts"]:
                    await self.repository.retry_job(
                        job["id"],
                        worker_id=None,
                        error="lease expired",
                        next_run_at=now,
                        now=now,
                        lease_expired_before=now,
                    )
                else:
                    await self._fail_terminal(job, worker_id=None, error="lease expired", fatal=False, now=now)
            except RepositoryConflictError:
                logger.info("job %s changed while reclaiming; skipped", job["id"])
                continue
            reclaimed += 1
        if reclaimed:
            logger.warning("reclaimed %s jobs with expired leases", reclaimed)
        return reclaimed

    async def cancel(self, job_id: str, *, actor: str | None = None) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        if job["status"] != "pending":
            raise RepositoryConflictError("only pending jobs can be cancelled")
        audit = AuditRecord(
            league_id=job["league_id"],
            season_id=job["season_id"],
            action="job_cancelled",
            actor_type="manual" if actor else "system",
            actor_id=actor,
            job_id=job_id,
            details={"reasons": job["metadata"].get("reasons", [])},
        )
        cancelled = await self.repository.cancel_job(job_id, audit=audit, now=self._clock())
        logger.info("job %s cancelled by %s", job_id, actor)
        return cancelled

    async def retry_failed(self, job_id: str, *, actor: str | None = None) -> dict[str, Any]:
        """Put a failed job back in the queue with a fresh attempt budget.

        Conflicts when the job did not fail or its league season already has
        another pending or processing job.
        """
        job = await self.repository.get_job(job_id)
        if job["status"] != "failed":
            raise RepositoryConflictError("only failed jobs can be retried")
        reason = f"manual retry by {actor}" if actor else "manual retry"
        audit = AuditRecord(
            league_id=job["league_id"],
            season_id=job["season_id"],
            action="job_retried",
            actor_type="manual" if actor else "system",
            actor_id=actor,
            job_id=job_id,
            details={"last_error": job["last_error"], "attempts": job["attempts"]},
        )
        requeued = await self.repository.requeue_failed_job(job_id, reason=reason, audit=audit, now=self._clock())
        logger.warning("failed job %s requeued by %s after %s attempts", job_id, actor, job["attempts"])
        return requeued

    async def pause(self, *, actor: str | None = None, reason: str | None = None) -> dict[str, Any]:
        """Stop dispatching jobs. Enqueueing and coalescing keep working."""
        state = await self.repository.set_queue_state(paused=True, actor=actor, reason=reason, now=self._clock())
        logger.warning("queue paused by %s: %s", actor, reason or "no reason given")
        return state

    async def resume(self, *, actor: str | None = None) -> dict[str, Any]:
        state = await self.repository.set_queue_state(paused=False, actor=actor, reason=None, now=self._clock())
        logger.warning("queue resumed by %s", actor)
        return state

    async def state(self) -> dict[str, Any]:
        return await self.repository.get_queue_state()

    async def get(self, job_id: str) -> dict[str, Any]:
        return await self.repository.get_job(job_id)

    async def list(
        self,
        *,
        status: str | None = None,
        league_id: str | None = None,
        season_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: " + ", ".join(JOB_STATUSES))
        return await self.repository.list_jobs(
            status=status,
            league_id=league_id,
            season_id=season_id,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
        )

    async def active_job(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        return await self.repository.get_active_job(league_id, season_id)

    async def _fail_terminal(
        self,
        job: dict[str, Any],
        *,
        worker_id: str | None,
        error: str,
        fatal: bool,
        now: datetime,
        rollback: bool = True,
        failure: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        plan = await self.snapshots.rollback_plan(job) if rollback else None
        details: dict[str, Any] = {
            "error": error,
            "fatal": fatal,
            "attempts": job["attempts"] + 1,
            "snapshot_id": plan.snapshot_id if plan is not None else None,
        }
        if failure is not None:
            details["failure"] = failure
        audit = AuditRecord(
            league_id=job["league_id"],
            season_id=job["season_id"],
            action="job_failed",
            actor_type="system",
            actor_id=worker_id or REAPER_ACTOR_ID,
            job_id=job["id"],
            details=details,
        )
        failed = await self.repository.fail_job(
            job["id"],
            worker_id=worker_id,
            error=error,
            rollback=plan,
            audit=audit,
            now=now,
        )
        logger.error(
            "job %s failed terminally attempts=%s fatal=%s rollback_snapshot=%s: %s",
            job["id"],
            failed["attempts"],
            fatal,
            audit.details["snapshot_id"],
            error,
        )
        return failed

    async def _ensure_sole_processing_job(self, job: dict[str, Any], *, worker_id: str, now: datetime) -> None:
        processing = await self.repository.list_jobs(
            status="processing",
            league_id=job["league_id"],
            season_id=job["season_id"],
        )
        others = sorted(other["id"] for other in processing if other["id"] != job["id"])
        if not others:
            return
        violation = InvariantViolationError(
            "more than one processing job for league season",
            details={
                "league_id": job["league_id"],
                "season_id": job["season_id"],
                "job_id": job["id"],
                "other_job_ids": others,
            },
        )
        # The other job owns the table; leave it untouched.
        await self._fail_terminal(
            job,
            worker_id=worker_id,
            error=violation.message,
            fatal=True,
            now=now,
            rollback=False,
            failure=violation.to_payload(),
        )
        raise violation
