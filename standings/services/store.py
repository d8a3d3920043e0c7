from __future__ import annotations

import asyncio
import copy
import itertools
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from standings.services.calculation import table_hash
from standings.services.errors import (
    LockConflictError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    VersionConflictError,
)
from standings.services.queue import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    coalesce_job_record,
    follow_up_job_record,
    idle_queue_state,
    new_job_record,
    requeue_job_record,
)

if TYPE_CHECKING:
    from standings.services.audit import AuditRecord
    from standings.services.snapshots import RollbackPlan

Key = tuple[str, str]


class InMemoryRepository:
    """Process-local repository with the same interface as PostgresRepository.

    Used when no database URL is configured and throughout the tests. All
    mutations run under one asyncio lock; reads return deep copies.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.snapshots: dict[int, dict[str, Any]] = {}
        self.standings: dict[Key, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self.teams: dict[Key, dict[str, dict[str, Any]]] = {}
        self.matches: dict[Key, dict[str, dict[str, Any]]] = {}
        self.queue_state: dict[str, Any] = idle_queue_state()
        self._snapshot_ids = itertools.count(1)
        self._audit_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    # jobs

    async def upsert_active_job(
        self,
        *,
        league_id: str,
        season_id: str,
        priority: int,
        reason: str | None,
        max_attempts: int,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]:
        async with self._lock:
            job = self._active_job((league_id, season_id))
            if job is not None:
                job.update(coalesce_job_record(job, priority=priority, reason=reason))
                job["updated_at"] = now
                return copy.deepcopy(job), False
            job = new_job_record(
                league_id=league_id,
                season_id=season_id,
                priority=priority,
                reason=reason,
                max_attempts=max_attempts,
                now=now,
            )
            self.jobs[job["id"]] = job
            return copy.deepcopy(job), True

    async def next_claimable_job_id(self, *, now: datetime) -> str | None:
        candidates = [
            job for job in self.jobs.values() if job["status"] == "pending" and job["next_run_at"] <= now
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda job: (-job["priority"], job["created_at"], job["id"]))
        return best["id"]

    async def claim_job(self, job_id: str, *, worker_id: str, lease_seconds: int, now: datetime) -> dict[str, Any]:
        async with self._lock:
            job = self._require_job(job_id)
            if job["status"] != "pending" or job["next_run_at"] > now:
                raise LockConflictError("job is not claimable")
            job.update(
                status="processing",
                locked_by=worker_id,
                started_at=now,
                updated_at=now,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
            )
            return copy.deepcopy(job)

    async def set_job_snapshot(self, job_id: str, snapshot_id: int) -> dict[str, Any]:
        async with self._lock:
            job = self._require_job(job_id)
            job["metadata"] = {**job["metadata"], "snapshot_id": snapshot_id}
            return copy.deepcopy(job)

    async def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        result: dict[str, Any] | None,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._require_owned_job(job_id, worker_id)
            self._finish(job, status="completed", now=now, result=result)
            return copy.deepcopy(job)

    async def retry_job(
        self,
        job_id: str,
        *,
        worker_id: str | None,
        error: str,
        next_run_at: datetime,
        now: datetime,
        lease_expired_before: datetime | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._require_owned_job(job_id, worker_id)
            if lease_expired_before is not None and (
                job["lease_expires_at"] is None or job["lease_expires_at"] > lease_expired_before
            ):
                raise RepositoryConflictError("job lease has not expired")
            job.update(
                status="pending",
                attempts=job["attempts"] + 1,
                next_run_at=next_run_at,
                lease_expires_at=None,
                locked_by=None,
                last_error=error,
                updated_at=now,
            )
            job["metadata"] = {**job["metadata"], "rerun_requested": False}
            return copy.deepcopy(job)

    async def fail_job(
        self,
        job_id: str,
        *,
        worker_id: str | None,
        error: str,
        rollback: RollbackPlan | None,
        audit: AuditRecord,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._require_owned_job(job_id, worker_id)
            key = (job["league_id"], job["season_id"])
            current = self.standings.get(key)
            before_hash = table_hash(current["entries"] if current else [])
            after_hash = before_hash
            if rollback is not None and table_hash(rollback.entries) != before_hash:
                after_hash = self._write_table(key, rollback.entries, source=rollback.source, now=now)["hash"]
            audit.before_hash = before_hash
            audit.after_hash = after_hash
            self._append_audit(audit, now)
            job["attempts"] += 1
            job["last_error"] = error
            self._finish(job, status="failed", now=now, result=None)
            return copy.deepcopy(job)

    async def cancel_job(self, job_id: str, *, audit: AuditRecord, now: datetime) -> dict[str, Any]:
        async with self._lock:
            job = self._require_job(job_id)
            if job["status"] != "pending":
                raise RepositoryConflictError("only pending jobs can be cancelled")
            del self.jobs[job_id]
            self._append_audit(audit, now)
            return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._require_job(job_id))

    async def get_active_job(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        job = self._active_job((league_id, season_id))
        return copy.deepcopy(job) if job is not None else None

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        league_id: str | None = None,
        season_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self.jobs.values()
            if (status is None or job["status"] == status)
            and (league_id is None or job["league_id"] == league_id)
            and (season_id is None or job["season_id"] == season_id)
        ]
        rows.sort(key=lambda job: (job["created_at"], job["id"]), reverse=True)
        end = None if limit is None else offset + limit
        return copy.deepcopy(rows[offset:end])

    async def list_expired_leases(self, *, now: datetime, limit: int) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self.jobs.values()
            if job["status"] == "processing"
            and job["lease_expires_at"] is not None
            and job["lease_expires_at"] <= now
        ]
        rows.sort(key=lambda job: job["lease_expires_at"])
        return copy.deepcopy(rows[:limit])

    async def delete_terminal_jobs_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [
                job_id
                for job_id, job in self.jobs.items()
                if job["status"] in TERMINAL_JOB_STATUSES and (job["completed_at"] or job["updated_at"]) < cutoff
            ]
            for job_id in expired:
                del self.jobs[job_id]
            return len(expired)

    async def requeue_failed_job(
        self,
        job_id: str,
        *,
        reason: str,
        audit: AuditRecord,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._require_job(job_id)
            if job["status"] != "failed":
                raise RepositoryConflictError("only failed jobs can be retried")
            if self._active_job((job["league_id"], job["season_id"])) is not None:
                raise RepositoryConflictError("another job is active for this league season")
            job.update(requeue_job_record(job, reason=reason, now=now))
            self._append_audit(audit, now)
            return copy.deepcopy(job)

    # queue control

    async def get_queue_state(self) -> dict[str, Any]:
        return dict(self.queue_state)

    async def set_queue_state(
        self,
        *,
        paused: bool,
        actor: str | None,
        reason: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            self.queue_state = {"paused": paused, "reason": reason, "changed_by": actor, "changed_at": now}
            return dict(self.queue_state)

    # snapshots

    async def insert_snapshot(
        self,
        *,
        league_id: str,
        season_id: str,
        description: str,
        payload: list[dict[str, Any]],
        size: int,
        checksum: str,
        standings_version: int,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            snapshot = {
                "id": next(self._snapshot_ids),
                "league_id": league_id,
                "season_id": season_id,
                "created_at": now,
                "description": description,
                "size": size,
                "checksum": checksum,
                "standings_version": standings_version,
                "payload": copy.deepcopy(payload),
            }
            self.snapshots[snapshot["id"]] = snapshot
            return copy.deepcopy(snapshot)

    async def get_snapshot(self, snapshot_id: int) -> dict[str, Any]:
        snapshot = self.snapshots.get(snapshot_id)
        if snapshot is None:
            raise RepositoryNotFoundError("snapshot not found")
        return copy.deepcopy(snapshot)

    async def list_snapshots(
        self,
        *,
        league_id: str | None = None,
        season_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            {key: value for key, value in snapshot.items() if key != "payload"}
            for snapshot in self.snapshots.values()
            if (league_id is None or snapshot["league_id"] == league_id)
            and (season_id is None or snapshot["season_id"] == season_id)
        ]
        rows.sort(key=lambda snapshot: snapshot["id"], reverse=True)
        return rows[:limit] if limit is not None else rows

    async def delete_snapshots(self, snapshot_ids: list[int]) -> int:
        async with self._lock:
            deleted = 0
            for snapshot_id in snapshot_ids:
                if self.snapshots.pop(snapshot_id, None) is not None:
                    deleted += 1
            return deleted

    # standings

    async def get_standings(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        table = self.standings.get((league_id, season_id))
        return copy.deepcopy(table) if table is not None else None

    async def list_standings(self) -> list[dict[str, Any]]:
        return [
            {key: value for key, value in table.items() if key != "entries"}
            for table in self.standings.values()
        ]

    async def commit_recalculation(
        self,
        job_id: str,
        *,
        worker_id: str,
        expected_version: int,
        entries: list[dict[str, Any]],
        result: dict[str, Any],
        audit: AuditRecord,
        now: datetime,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        async with self._lock:
            job = self._require_owned_job(job_id, worker_id)
            key = (job["league_id"], job["season_id"])
            current = self.standings.get(key)
            current_version = current["version"] if current else 0
            if current_version != expected_version:
                raise VersionConflictError(
                    f"standings version is {current_version}, expected {expected_version}",
                )
            audit.before_hash = table_hash(current["entries"] if current else [])
            table = self._write_table(key, entries, source=f"calculation:{job_id}", now=now)
            audit.after_hash = table.pop("hash")
            self._append_audit(audit, now)
            self._finish(job, status="completed", now=now, result=result)
            return copy.deepcopy(job), copy.deepcopy(table)

    async def restore_standings(
        self,
        *,
        league_id: str,
        season_id: str,
        entries: list[dict[str, Any]],
        source: str,
        audit: AuditRecord,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            key = (league_id, season_id)
            current = self.standings.get(key)
            audit.before_hash = table_hash(current["entries"] if current else [])
            table = self._write_table(key, entries, source=source, now=now)
            audit.after_hash = table.pop("hash")
            self._append_audit(audit, now)
            return copy.deepcopy(table)

    # audit

    async def insert_audit_log(self, record: AuditRecord, *, now: datetime) -> dict[str, Any]:
        async with self._lock:
            return copy.deepcopy(self._append_audit(record, now))

    async def list_audit_logs(
        self,
        *,
        job_id: str | None = None,
        league_id: str | None = None,
        season_id: str | None = None,
        action: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            entry
            for entry in reversed(self.audit_logs)
            if (job_id is None or entry["job_id"] == job_id)
            and (league_id is None or entry["league_id"] == league_id)
            and (season_id is None or entry["season_id"] == season_id)
            and (action is None or entry["action"] == action)
        ]
        return copy.deepcopy(rows[offset : offset + limit])

    async def find_audit_log_by_after_hash(
        self,
        *,
        league_id: str,
        season_id: str,
        after_hash: str,
    ) -> dict[str, Any] | None:
        for entry in reversed(self.audit_logs):
            if (
                entry["league_id"] == league_id
                and entry["season_id"] == season_id
                and entry["after_hash"] == after_hash
                and entry["action"] in {"standings_committed", "standings_restored"}
            ):
                return copy.deepcopy(entry)
        return None

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        async with self._lock:
            kept = [entry for entry in self.audit_logs if entry["created_at"] >= cutoff]
            deleted = len(self.audit_logs) - len(kept)
            self.audit_logs = kept
            return deleted

    # reference data

    async def upsert_team(self, *, team_id: str, name: str, league_id: str, season_id: str) -> dict[str, Any]:
        async with self._lock:
            team = {"id": team_id, "name": name, "league_id": league_id, "season_id": season_id}
            self.teams.setdefault((league_id, season_id), {})[team_id] = team
            return dict(team)

    async def list_teams(self, league_id: str, season_id: str) -> list[dict[str, Any]]:
        teams = self.teams.get((league_id, season_id), {})
        return [dict(team) for team in sorted(teams.values(), key=lambda team: team["id"])]

    async def upsert_match(self, match: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            row = dict(match)
            self.matches.setdefault((row["league_id"], row["season_id"]), {})[row["id"]] = row
            return dict(row)

    async def list_matches(self, league_id: str, season_id: str) -> list[dict[str, Any]]:
        matches = self.matches.get((league_id, season_id), {})
        return [dict(match) for match in sorted(matches.values(), key=lambda match: match["id"])]

    # internals

    def _require_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    def _require_owned_job(self, job_id: str, worker_id: str | None) -> dict[str, Any]:
        job = self._require_job(job_id)
        if job["status"] != "processing":
            raise RepositoryConflictError("job is not processing")
        if worker_id is not None and job["locked_by"] != worker_id:
            raise RepositoryConflictError("job is leased by another worker")
        return job

    def _active_job(self, key: Key) -> dict[str, Any] | None:
        for job in self.jobs.values():
            if (job["league_id"], job["season_id"]) == key and job["status"] in ACTIVE_JOB_STATUSES:
                return job
        return None

    def _finish(self, job: dict[str, Any], *, status: str, now: datetime, result: dict[str, Any] | None) -> None:
        job.update(
            status=status,
            completed_at=now,
            updated_at=now,
            lease_expires_at=None,
            locked_by=None,
            result=result,
        )
        if job["metadata"].get("rerun_requested"):
            follow_up = follow_up_job_record(job, now=now)
            self.jobs[follow_up["id"]] = follow_up

    def _write_table(self, key: Key, entries: list[dict[str, Any]], *, source: str, now: datetime) -> dict[str, Any]:
        current = self.standings.get(key)
        table = {
            "league_id": key[0],
            "season_id": key[1],
            "version": (current["version"] if current else 0) + 1,
            "updated_at": now,
            "source": source,
            "entries": copy.deepcopy(entries),
        }
        self.standings[key] = table
        return {**table, "hash": table_hash(entries)}

    def _append_audit(self, record: AuditRecord, now: datetime) -> dict[str, Any]:
        record.validate()
        entry = record.to_row(entry_id=next(self._audit_ids), created_at=now)
        self.audit_logs.append(entry)
        return entry
