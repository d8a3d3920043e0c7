"""Operational views derived from queue, snapshot and standings state.

Everything here is a pure read over rows already fetched from the
repository; nothing is persisted and nothing feeds back into dispatch.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from standings.services.queue import JOB_STATUSES

HealthStatus = Literal["healthy", "degraded", "unhealthy"]
FAILURE_RATE_UNHEALTHY = 0.5


@dataclass(slots=True, frozen=True)
class QueueHealthRow:
    status: str
    priority: int
    count: int
    avg_duration_seconds: float | None
    oldest_created_at: datetime | None
    newest_created_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ComponentHealth:
    component: str
    total: int
    pending: int = 0
    processing: int = 0
    failed: int = 0
    recent: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class HealthSummary:
    status: HealthStatus
    issues: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def queue_health(jobs: Iterable[dict[str, Any]], *, now: datetime, window: timedelta) -> list[QueueHealthRow]:
    groups: dict[tuple[str, int], list[dict[str, Any]]] = defaultdict(list)
    for job in jobs:
        groups[(job["status"], int(job["priority"]))].append(job)

    window_start = now - window
    rows: list[QueueHealthRow] = []
    for (status, priority), group in groups.items():
        durations = [
            (job["completed_at"] - job["started_at"]).total_seconds()
            for job in group
            if job.get("started_at") is not None
            and job.get("completed_at") is not None
            and window_start <= job["completed_at"] <= now
        ]
        created = [job["created_at"] for job in group]
        rows.append(
            QueueHealthRow(
                status=status,
                priority=priority,
                count=len(group),
                avg_duration_seconds=sum(durations) / len(durations) if durations else None,
                oldest_created_at=min(created),
                newest_created_at=max(created),
            )
        )
    rows.sort(key=lambda row: (JOB_STATUSES.index(row.status) if row.status in JOB_STATUSES else 99, -row.priority))
    return rows


def system_health(
    jobs: Iterable[dict[str, Any]],
    snapshots: Iterable[dict[str, Any]],
    standings: Iterable[dict[str, Any]],
    *,
    now: datetime,
    recent_window: timedelta,
) -> list[ComponentHealth]:
    recent_since = now - recent_window
    job_list = list(jobs)
    snapshot_list = list(snapshots)
    table_list = list(standings)

    def count(status: str) -> int:
        return sum(1 for job in job_list if job["status"] == status)

    return [
        ComponentHealth(
            component="jobs",
            total=len(job_list),
            pending=count("pending"),
            processing=count("processing"),
            failed=count("failed"),
            recent=sum(1 for job in job_list if max(job["created_at"], job["updated_at"]) >= recent_since),
        ),
        ComponentHealth(
            component="snapshots",
            total=len(snapshot_list),
            recent=sum(1 for snapshot in snapshot_list if snapshot["created_at"] >= recent_since),
        ),
        ComponentHealth(
            component="standings",
            total=len(table_list),
            recent=sum(1 for table in table_list if table["updated_at"] >= recent_since),
        ),
    ]


def summarize(
    jobs: Iterable[dict[str, Any]],
    *,
    now: datetime,
    window: timedelta,
    pending_backlog_threshold: int,
    failed_jobs_threshold: int,
) -> HealthSummary:
    window_start = now - window
    job_list = list(jobs)
    pending = sum(1 for job in job_list if job["status"] == "pending")
    stuck = sum(
        1
        for job in job_list
        if job["status"] == "processing"
        and job.get("lease_expires_at") is not None
        and job["lease_expires_at"] <= now
    )
    finished = [
        job
        for job in job_list
        if job["status"] in {"completed", "failed"}
        and job.get("completed_at") is not None
        and job["completed_at"] >= window_start
    ]
    failed = sum(1 for job in finished if job["status"] == "failed")
    failure_rate = failed / len(finished) if finished else 0.0

    summary = HealthSummary(
        status="healthy",
        metrics={
            "pending": pending,
            "expired_leases": stuck,
            "finished_in_window": len(finished),
            "failed_in_window": failed,
            "failure_rate": round(failure_rate, 4),
        },
    )
    if pending > pending_backlog_threshold:
        summary.status = "degraded"
        summary.issues.append(f"pending backlog {pending} exceeds {pending_backlog_threshold}")
    if failed > failed_jobs_threshold:
        summary.status = "degraded"
        summary.issues.append(f"{failed} failed jobs in window exceeds {failed_jobs_threshold}")
    if stuck:
        summary.status = "degraded"
        summary.issues.append(f"{stuck} processing jobs hold expired leases")
    if failure_rate > FAILURE_RATE_UNHEALTHY:
        summary.status = "unhealthy"
        summary.issues.append(f"failure rate {failure_rate:.0%} in window")
    return summary


class HealthMonitor:
    def __init__(
        self,
        repository: Any,
        *,
        duration_window: timedelta,
        recent_window: timedelta,
        pending_backlog_threshold: int,
        failed_jobs_threshold: int,
    ) -> None:
        self.repository = repository
        self.duration_window = duration_window
        self.recent_window = recent_window
        self.pending_backlog_threshold = pending_backlog_threshold
        self.failed_jobs_threshold = failed_jobs_threshold

    async def queue(self, now: datetime) -> list[QueueHealthRow]:
        jobs = await self.repository.list_jobs()
        return queue_health(jobs, now=now, window=self.duration_window)

    async def system(self, now: datetime) -> list[ComponentHealth]:
        jobs = await self.repository.list_jobs()
        snapshots = await self.repository.list_snapshots()
        standings = await self.repository.list_standings()
        return system_health(jobs, snapshots, standings, now=now, recent_window=self.recent_window)

    async def summary(self, now: datetime) -> HealthSummary:
        jobs = await self.repository.list_jobs()
        return summarize(
            jobs,
            now=now,
            window=self.duration_window,
            pending_backlog_threshold=self.pending_backlog_threshold,
            failed_jobs_threshold=self.failed_jobs_threshold,
        )
