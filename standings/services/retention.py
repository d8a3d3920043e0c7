from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from standings.services.clock import utcnow
from standings.services.snapshots import select_expired

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RetentionPolicy:
    job_ttl: timedelta = timedelta(days=7)
    snapshot_ttl: timedelta = timedelta(days=30)
    snapshot_min_keep: int = 3
    audit_ttl: timedelta = timedelta(days=90)


@dataclass(slots=True, frozen=True)
class RetentionReport:
    ran_at: datetime
    jobs_deleted: int
    snapshots_deleted: int
    audit_logs_deleted: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RetentionSweeper:
    """Deletes terminal jobs, aged snapshots and expired audit entries.

    Safe to run repeatedly and from several processes: every delete is keyed
    on an age cutoff, so a second pass finds nothing left to remove. Pending
    and processing jobs, current standings and snapshots referenced by an
    active job are never touched.
    """

    def __init__(
        self,
        repository: Any,
        *,
        policy: RetentionPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.policy = policy or RetentionPolicy()
        self._clock = clock

    async def run(self) -> RetentionReport:
        now = self._clock()
        jobs_deleted = await self.repository.delete_terminal_jobs_before(now - self.policy.job_ttl)

        in_use = {
            job["metadata"].get("snapshot_id")
            for job in await self.repository.list_jobs(status="processing")
        }
        snapshots = await self.repository.list_snapshots()
        expired = [
            snapshot_id
            for snapshot_id in select_expired(
                snapshots,
                now=now,
                max_age=self.policy.snapshot_ttl,
                min_keep=self.policy.snapshot_min_keep,
            )
            if snapshot_id not in in_use
        ]
        snapshots_deleted = await self.repository.delete_snapshots(expired)
        audit_logs_deleted = await self.repository.delete_audit_logs_before(now - self.policy.audit_ttl)

        report = RetentionReport(
            ran_at=now,
            jobs_deleted=jobs_deleted,
            snapshots_deleted=snapshots_deleted,
            audit_logs_deleted=audit_logs_deleted,
        )
        logger.info(
            "retention sweep jobs=%s snapshots=%s audit_logs=%s",
            jobs_deleted,
            snapshots_deleted,
            audit_logs_deleted,
        )
        return report
