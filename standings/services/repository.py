from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Union

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from standings.core.config import get_settings
from standings.services.calculation import table_hash
from standings.services.errors import (
    LockConflictError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    VersionConflictError,
)
from standings.services.queue import (
    coalesce_job_record,
    follow_up_job_record,
    idle_queue_state,
    new_job_record,
    requeue_job_record,
)
from standings.services.store import InMemoryRepository

if TYPE_CHECKING:
    from standings.services.audit import AuditRecord
    from standings.services.snapshots import RollbackPlan

JOB_COLUMNS = """
  id::text as id,
  league_id,
  season_id,
  priority,
  status,
  attempts,
  max_attempts,
  created_at,
  updated_at,
  started_at,
  completed_at,
  next_run_at,
  lease_expires_at,
  locked_by,
  last_error,
  metadata,
  result
"""

SNAPSHOT_COLUMNS = """
  id,
  league_id,
  season_id,
  created_at,
  description,
  size,
  checksum,
  standings_version
"""

AUDIT_COLUMNS = """
  id,
  created_at,
  job_id::text as job_id,
  league_id,
  season_id,
  action,
  before_hash,
  after_hash,
  actor_type,
  actor_id,
  details
"""

UPSERT_ATTEMPTS = 3


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            for _ in range(UPSERT_ATTEMPTS):
                try:
                    async with conn.transaction():
                        row = await conn.fetchrow(
                            f"""
                            select {JOB_COLUMNS}
                            from jobs
                            where league_id = $1
                              and season_id = $2
                              and status in ('pending', 'processing')
                            for update
                            """,
                            league_id,
                            season_id,
                        )
                        if row:
                            job = self._job_row_to_dict(row)
                            changes = coalesce_job_record(job, priority=priority, reason=reason)
                            updated = await conn.fetchrow(
                                f"""
                                update jobs
                                set priority = $2, metadata = $3::jsonb, updated_at = $4
                                where id = $1::uuid
                                returning {JOB_COLUMNS}
                                """,
                                job["id"],
                                changes["priority"],
                                json.dumps(changes["metadata"]),
                                now,
                            )
                            return self._job_row_to_dict(updated), False

                        record = new_job_record(
                            league_id=league_id,
                            season_id=season_id,
                            priority=priority,
                            reason=reason,
                            max_attempts=max_attempts,
                            now=now,
                        )
                        inserted = await self._insert_job(conn, record)
                        return inserted, True
                except pg_exc.UniqueViolationError:
                    # a concurrent enqueue created the active job; coalesce into it
                    continue
        raise RepositoryConflictError("could not enqueue job for league season")

    async def next_claimable_job_id(self, *, now: datetime) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select id::text
            from jobs
            where status = 'pending' and next_run_at <= $1
            order by priority desc, created_at asc, id asc
            limit 1
            """,
            now,
        )

    async def claim_job(self, job_id: str, *, worker_id: str, lease_seconds: int, now: datetime) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = 'processing',
                      locked_by = $2,
                      started_at = $3,
                      updated_at = $3,
                      lease_expires_at = $3 + ($4::int * interval '1 second')
                    where id = $1::uuid and status = 'pending' and next_run_at <= $3
                    returning {JOB_COLUMNS}
                    """,
                    job_id,
                    worker_id,
                    now,
                    lease_seconds,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
                    if not exists:
                        raise RepositoryNotFoundError("job not found")
                    raise LockConflictError("job is not claimable")
                return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def set_job_snapshot(self, job_id: str, snapshot_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update jobs
            set metadata = metadata || jsonb_build_object('snapshot_id', $2::bigint)
            where id = $1::uuid
            returning {JOB_COLUMNS}
            """,
            job_id,
            snapshot_id,
        )
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        result: dict[str, Any] | None,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                job = await self._lock_owned_job(conn, job_id, worker_id)
                return await self._finish(conn, job, status="completed", now=now, result=result)

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                job = await self._lock_owned_job(conn, job_id, worker_id)
                if lease_expired_before is not None and (
                    job["lease_expires_at"] is None or job["lease_expires_at"] > lease_expired_before
                ):
                    raise RepositoryConflictError("job lease has not expired")
                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = 'pending',
                      attempts = attempts + 1,
                      next_run_at = $2,
                      lease_expires_at = null,
                      locked_by = null,
                      last_error = $3,
                      updated_at = $4,
                      metadata = metadata || '{{"rerun_requested": false}}'::jsonb
                    where id = $1::uuid
                    returning {JOB_COLUMNS}
                    """,
                    job_id,
                    next_run_at,
                    error,
                    now,
                )
                return self._job_row_to_dict(row)

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                job = await self._lock_owned_job(conn, job_id, worker_id)
                current = await self._lock_table(conn, job["league_id"], job["season_id"])
                before_hash = table_hash(current["entries"] if current else [])
                after_hash = before_hash
                if rollback is not None and table_hash(rollback.entries) != before_hash:
                    await self._write_table(
                        conn,
                        job["league_id"],
                        job["season_id"],
                        rollback.entries,
                        source=rollback.source,
                        now=now,
                    )
                    after_hash = table_hash(rollback.entries)
                audit.before_hash = before_hash
                audit.after_hash = after_hash
                await self._insert_audit(conn, audit, now)
                await conn.execute(
                    """
                    update jobs
                    set attempts = attempts + 1, last_error = $2
                    where id = $1::uuid
                    """,
                    job_id,
                    error,
                )
                job["attempts"] += 1
                return await self._finish(conn, job, status="failed", now=now, result=None)

    async def cancel_job(self, job_id: str, *, audit: AuditRecord, now: datetime) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"select {JOB_COLUMNS} from jobs where id = $1::uuid for update",
                    job_id,
                )
                if not row:
                    raise RepositoryNotFoundError("job not found")
                if row["status"] != "pending":
                    raise RepositoryConflictError("only pending jobs can be cancelled")
                await conn.execute("delete from jobs where id = $1::uuid", job_id)
                await self._insert_audit(conn, audit, now)
                return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def get_active_job(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {JOB_COLUMNS}
            from jobs
            where league_id = $1 and season_id = $2 and status in ('pending', 'processing')
            """,
            league_id,
            season_id,
        )
        return self._job_row_to_dict(row) if row else None

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        league_id: str | None = None,
        season_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        where: list[str] = []
        args: list[Any] = []

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        if status is not None:
            where.append(f"status = {bind(status)}")
        if league_id is not None:
            where.append(f"league_id = {bind(league_id)}")
        if season_id is not None:
            where.append(f"season_id = {bind(season_id)}")
        where_sql = f"where {' and '.join(where)}" if where else ""
        limit_sql = f"limit {bind(limit)}" if limit is not None else ""
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from jobs
            {where_sql}
            order by created_at desc, id desc
            {limit_sql}
            offset {bind(offset)}
            """,
            *args,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_expired_leases(self, *, now: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from jobs
            where status = 'processing'
              and lease_expires_at is not null
              and lease_expires_at <= $1
            order by lease_expires_at asc
            limit $2
            """,
            now,
            limit,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def delete_terminal_jobs_before(self, cutoff: datetime) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from jobs
            where status in ('completed', 'failed')
              and coalesce(completed_at, updated_at) < $1
            returning id
            """,
            cutoff,
        )
        return len(rows)

    async def requeue_failed_job(
        self,
        job_id: str,
        *,
        reason: str,
        audit: AuditRecord,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid for update", job_id)
                    if not row:
                        raise RepositoryNotFoundError("job not found")
                    job = self._job_row_to_dict(row)
                    if job["status"] != "failed":
                        raise RepositoryConflictError("only failed jobs can be retried")
                    changes = requeue_job_record(job, reason=reason, now=now)
                    updated = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $2,
                          attempts = $3,
                          updated_at = $4,
                          started_at = null,
                          completed_at = null,
                          next_run_at = $4,
                          lease_expires_at = null,
                          locked_by = null,
                          result = null,
                          metadata = $5::jsonb
                        where id = $1::uuid
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        changes["status"],
                        changes["attempts"],
                        now,
                        json.dumps(changes["metadata"]),
                    )
                    await self._insert_audit(conn, audit, now)
                    return self._job_row_to_dict(updated)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("another job is active for this league season") from exc

    # queue control

    async def get_queue_state(self) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow("select paused, reason, changed_by, changed_at from queue_state where id = 1")
        return dict(row) if row else idle_queue_state()

    async def set_queue_state(
        self,
        *,
        paused: bool,
        actor: str | None,
        reason: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into queue_state (id, paused, reason, changed_by, changed_at)
            values (1, $1, $2, $3, $4)
            on conflict (id) do update set
              paused = excluded.paused,
              reason = excluded.reason,
              changed_by = excluded.changed_by,
              changed_at = excluded.changed_at
            returning paused, reason, changed_by, changed_at
            """,
            paused,
            reason,
            actor,
            now,
        )
        return dict(row)

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into snapshots (
              league_id, season_id, created_at, description, size, checksum, standings_version, payload
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
            returning {SNAPSHOT_COLUMNS}, payload
            """,
            league_id,
            season_id,
            now,
            description,
            size,
            checksum,
            standings_version,
            json.dumps(payload),
        )
        return self._snapshot_row_to_dict(row)

    async def get_snapshot(self, snapshot_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {SNAPSHOT_COLUMNS}, payload from snapshots where id = $1",
            snapshot_id,
        )
        if not row:
            raise RepositoryNotFoundError("snapshot not found")
        return self._snapshot_row_to_dict(row)

    async def list_snapshots(
        self,
        *,
        league_id: str | None = None,
        season_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {SNAPSHOT_COLUMNS}
            from snapshots
            where ($1::text is null or league_id = $1)
              and ($2::text is null or season_id = $2)
            order by id desc
            limit $3
            """,
            league_id,
            season_id,
            limit,
        )
        return [self._snapshot_row_to_dict(row) for row in rows]

    async def delete_snapshots(self, snapshot_ids: list[int]) -> int:
        if not snapshot_ids:
            return 0
        pool = await self._get_pool()
        rows = await pool.fetch(
            "delete from snapshots where id = any($1::bigint[]) returning id",
            snapshot_ids,
        )
        return len(rows)

    # standings

    async def get_standings(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select league_id, season_id, version, updated_at, source, entries
            from standings
            where league_id = $1 and season_id = $2
            """,
            league_id,
            season_id,
        )
        return self._standings_row_to_dict(row) if row else None

    async def list_standings(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch("select league_id, season_id, version, updated_at, source from standings")
        return [dict(row) for row in rows]

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                job = await self._lock_owned_job(conn, job_id, worker_id)
                current = await self._lock_table(conn, job["league_id"], job["season_id"])
                current_version = current["version"] if current else 0
                if current_version != expected_version:
                    raise VersionConflictError(
                        f"standings version is {current_version}, expected {expected_version}",
                    )
                audit.before_hash = table_hash(current["entries"] if current else [])
                table = await self._write_table(
                    conn,
                    job["league_id"],
                    job["season_id"],
                    entries,
                    source=f"calculation:{job_id}",
                    now=now,
                )
                audit.after_hash = table_hash(entries)
                await self._insert_audit(conn, audit, now)
                completed = await self._finish(conn, job, status="completed", now=now, result=result)
                return completed, table

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock_table(conn, league_id, season_id)
                audit.before_hash = table_hash(current["entries"] if current else [])
                table = await self._write_table(conn, league_id, season_id, entries, source=source, now=now)
                audit.after_hash = table_hash(entries)
                await self._insert_audit(conn, audit, now)
                return table

    # audit

    async def insert_audit_log(self, record: AuditRecord, *, now: datetime) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._insert_audit(conn, record, now)

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
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {AUDIT_COLUMNS}
                from audit_logs
                where ($1::uuid is null or job_id = $1::uuid)
                  and ($2::text is null or league_id = $2)
                  and ($3::text is null or season_id = $3)
                  and ($4::text is null or action = $4)
                order by id desc
                limit $5
                offset $6
                """,
                job_id,
                league_id,
                season_id,
                action,
                limit,
                offset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return []
        return [self._audit_row_to_dict(row) for row in rows]

    async def find_audit_log_by_after_hash(
        self,
        *,
        league_id: str,
        season_id: str,
        after_hash: str,
    ) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {AUDIT_COLUMNS}
            from audit_logs
            where league_id = $1
              and season_id = $2
              and after_hash = $3
              and action in ('standings_committed', 'standings_restored')
            order by id desc
            limit 1
            """,
            league_id,
            season_id,
            after_hash,
        )
        return self._audit_row_to_dict(row) if row else None

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch("delete from audit_logs where created_at < $1 returning id", cutoff)
        return len(rows)

    # reference data

    async def upsert_team(self, *, team_id: str, name: str, league_id: str, season_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into teams (id, league_id, season_id, name)
            values ($1, $2, $3, $4)
            on conflict (league_id, season_id, id) do update set name = excluded.name
            returning id, name, league_id, season_id
            """,
            team_id,
            league_id,
            season_id,
            name,
        )
        return dict(row)

    async def list_teams(self, league_id: str, season_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, name, league_id, season_id
            from teams
            where league_id = $1 and season_id = $2
            order by id
            """,
            league_id,
            season_id,
        )
        return [dict(row) for row in rows]

    async def upsert_match(self, match: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into matches (
              id, league_id, season_id, home_team_id, away_team_id, home_goals, away_goals, status, kickoff_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            on conflict (id) do update set
              league_id = excluded.league_id,
              season_id = excluded.season_id,
              home_team_id = excluded.home_team_id,
              away_team_id = excluded.away_team_id,
              home_goals = excluded.home_goals,
              away_goals = excluded.away_goals,
              status = excluded.status,
              kickoff_at = excluded.kickoff_at
            returning id, league_id, season_id, home_team_id, away_team_id, home_goals, away_goals, status, kickoff_at
            """,
            match["id"],
            match["league_id"],
            match["season_id"],
            match["home_team_id"],
            match["away_team_id"],
            match.get("home_goals"),
            match.get("away_goals"),
            match.get("status") or "scheduled",
            match.get("kickoff_at"),
        )
        return dict(row)

    async def list_matches(self, league_id: str, season_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, league_id, season_id, home_team_id, away_team_id, home_goals, away_goals, status, kickoff_at
            from matches
            where league_id = $1 and season_id = $2
            order by id
            """,
            league_id,
            season_id,
        )
        return [dict(row) for row in rows]

    # internals

    async def _insert_job(self, conn: asyncpg.Connection, record: dict[str, Any]) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            insert into jobs (
              id, league_id, season_id, priority, status, attempts, max_attempts,
              created_at, updated_at, next_run_at, metadata
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $8, $9, $10::jsonb)
            returning {JOB_COLUMNS}
            """,
            record["id"],
            record["league_id"],
            record["season_id"],
            record["priority"],
            record["status"],
            record["attempts"],
            record["max_attempts"],
            record["created_at"],
            record["next_run_at"],
            json.dumps(record["metadata"]),
        )
        return self._job_row_to_dict(row)

    async def _lock_owned_job(self, conn: asyncpg.Connection, job_id: str, worker_id: str | None) -> dict[str, Any]:
        try:
            row = await conn.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid for update", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        job = self._job_row_to_dict(row)
        if job["status"] != "processing":
            raise RepositoryConflictError("job is not processing")
        if worker_id is not None and job["locked_by"] != worker_id:
            raise RepositoryConflictError("job is leased by another worker")
        return job

    async def _finish(
        self,
        conn: asyncpg.Connection,
        job: dict[str, Any],
        *,
        status: str,
        now: datetime,
        result: dict[str, Any] | None,
    ) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            update jobs
            set
              status = $2,
              completed_at = $3,
              updated_at = $3,
              lease_expires_at = null,
              locked_by = null,
              result = $4::jsonb
            where id = $1::uuid
            returning {JOB_COLUMNS}
            """,
            job["id"],
            status,
            now,
            json.dumps(result) if result is not None else None,
        )
        finished = self._job_row_to_dict(row)
        if finished["metadata"].get("rerun_requested"):
            await self._insert_job(conn, follow_up_job_record(finished, now=now))
        return finished

    async def _lock_table(self, conn: asyncpg.Connection, league_id: str, season_id: str) -> dict[str, Any] | None:
        row = await conn.fetchrow(
            """
            select league_id, season_id, version, updated_at, source, entries
            from standings
            where league_id = $1 and season_id = $2
            for update
            """,
            league_id,
            season_id,
        )
        return self._standings_row_to_dict(row) if row else None

    async def _write_table(
        self,
        conn: asyncpg.Connection,
        league_id: str,
        season_id: str,
        entries: list[dict[str, Any]],
        *,
        source: str,
        now: datetime,
    ) -> dict[str, Any]:
        row = await conn.fetchrow(
            """
            insert into standings (league_id, season_id, version, updated_at, source, entries)
            values ($1, $2, 1, $3, $4, $5::jsonb)
            on conflict (league_id, season_id) do update set
              version = standings.version + 1,
              updated_at = excluded.updated_at,
              source = excluded.source,
              entries = excluded.entries
            returning league_id, season_id, version, updated_at, source, entries
            """,
            league_id,
            season_id,
            now,
            source,
            json.dumps(entries),
        )
        return self._standings_row_to_dict(row)

    async def _insert_audit(self, conn: asyncpg.Connection, record: AuditRecord, now: datetime) -> dict[str, Any]:
        record.validate()
        row = await conn.fetchrow(
            f"""
            insert into audit_logs (
              created_at, job_id, league_id, season_id, action,
              before_hash, after_hash, actor_type, actor_id, details
            )
            values ($1, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
            returning {AUDIT_COLUMNS}
            """,
            now,
            record.job_id,
            record.league_id,
            record.season_id,
            record.action,
            record.before_hash,
            record.after_hash,
            record.actor_type,
            record.actor_id,
            json.dumps(record.details),
        )
        return self._audit_row_to_dict(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        job = dict(row)
        job["metadata"] = cls._coerce_json_dict(row["metadata"])
        result = row["result"]
        job["result"] = cls._coerce_json_dict(result) if result is not None else None
        return job

    @classmethod
    def _snapshot_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        snapshot = dict(row)
        if "payload" in snapshot:
            snapshot["payload"] = cls._coerce_json_list(snapshot["payload"])
        return snapshot

    @classmethod
    def _standings_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        table = dict(row)
        table["entries"] = cls._coerce_json_list(row["entries"])
        return table

    @classmethod
    def _audit_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        entry = dict(row)
        entry["details"] = cls._coerce_json_dict(row["details"])
        return entry

    @staticmethod
    def _coerce_json_list(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


Repository = Union[PostgresRepository, InMemoryRepository]


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
