"""Claim, commit and failure paths of a standings recalculation.

The worker never writes standings directly. It claims a work packet here,
computes the table out of process, and hands the entries back for an atomic
compare-and-commit against the version it was given.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from standings.services.audit import AuditRecord
from standings.services.calculation import entries_from_payload
from standings.services.clock import utcnow
from standings.services.errors import RepositoryError, RepositoryValidationError
from standings.services.queue import JobQueue, Priority
from standings.services.snapshots import SnapshotManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkPacket:
    job: dict[str, Any]
    snapshot_id: int
    standings_version: int
    matches: list[dict[str, Any]] = field(default_factory=list)
    teams: list[dict[str, Any]] = field(default_factory=list)
    head_to_head: bool = False


def validate_table(entries: list[dict[str, Any]]) -> None:
    """Reject tables that could not have come from the calculation engine."""
    try:
        parsed = entries_from_payload(entries)
    except ValueError as exc:
        raise RepositoryValidationError(str(exc)) from exc
    team_ids = [entry.team_id for entry in parsed]
    if len(set(team_ids)) != len(team_ids):
        raise RepositoryValidationError("standings contain duplicate team ids")
    if [entry.rank for entry in parsed] != list(range(1, len(parsed) + 1)):
        raise RepositoryValidationError("standings ranks must run from 1 without gaps")
    for entry in parsed:
        if entry.played != entry.won + entry.drawn + entry.lost:
            raise RepositoryValidationError(f"team {entry.team_id} played count does not match results")
        if entry.goal_difference != entry.goals_for - entry.goals_against:
            raise RepositoryValidationError(f"team {entry.team_id} goal difference is inconsistent")


class RecalculationService:
    def __init__(
        self,
        repository: Any,
        *,
        queue: JobQueue,
        snapshots: SnapshotManager,
        head_to_head: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.snapshots = snapshots
        self.head_to_head = head_to_head
        self._clock = clock

    async def claim(self, worker_id: str, lease_seconds: int) -> WorkPacket | None:
        job = await self.queue.dequeue(worker_id, lease_seconds)
        if job is None:
            return None

        try:
            snapshot = await self.snapshots.snapshot(
                job["league_id"],
                job["season_id"],
                description=f"before recalculation job {job['id']}",
            )
            job = await self.repository.set_job_snapshot(job["id"], snapshot["id"])
            matches = await self.repository.list_matches(job["league_id"], job["season_id"])
            teams = await self.repository.list_teams(job["league_id"], job["season_id"])
        except RepositoryError as exc:
            logger.warning("preparing job %s failed; releasing claim: %s", job["id"], exc)
            await self.queue.fail(job["id"], worker_id, f"claim preparation failed: {exc}")
            raise

        return WorkPacket(
            job=job,
            snapshot_id=snapshot["id"],
            standings_version=snapshot["standings_version"],
            matches=matches,
            teams=teams,
            head_to_head=self.head_to_head,
        )

    async def submit_result(
        self,
        job_id: str,
        worker_id: str,
        *,
        entries: list[dict[str, Any]],
        warnings: list[dict[str, Any]],
        expected_version: int,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        try:
            validate_table(entries)
        except RepositoryValidationError as exc:
            await self.queue.fail(job_id, worker_id, f"invalid standings: {exc}", fatal=True)
            raise

        job = await self.repository.get_job(job_id)
        snapshot_id = job["metadata"].get("snapshot_id")
        audit = AuditRecord(
            league_id=job["league_id"],
            season_id=job["season_id"],
            action="standings_committed",
            actor_type="system",
            actor_id=worker_id,
            job_id=job_id,
            details={"snapshot_id": snapshot_id, "warnings": len(warnings), "teams": len(entries)},
        )
        result = {
            "teams": len(entries),
            "warnings": warnings,
            "standings_version": expected_version + 1,
            "snapshot_id": snapshot_id,
        }
        completed, table = await self.repository.commit_recalculation(
            job_id,
            worker_id=worker_id,
            expected_version=expected_version,
            entries=entries,
            result=result,
            audit=audit,
            now=self._clock(),
        )
        logger.info(
            "job %s committed standings league=%s season=%s version=%s warnings=%s",
            job_id,
            table["league_id"],
            table["season_id"],
            table["version"],
            len(warnings),
        )
        return completed, table

    async def report_failure(self, job_id: str, worker_id: str, error: str, *, fatal: bool) -> dict[str, Any]:
        return await self.queue.fail(job_id, worker_id, error, fatal=fatal)

    async def ingest_match_result(self, match: dict[str, Any], *, actor: str | None = None) -> dict[str, Any]:
        """Store a changed match result and schedule its league season."""
        stored = await self.repository.upsert_match(match)
        return await self.queue.enqueue(
            stored["league_id"],
            stored["season_id"],
            priority=Priority.HIGH,
            reason=f"match {stored['id']} updated",
            actor=actor,
        )

    async def sync_teams(
        self,
        league_id: str,
        season_id: str,
        teams: list[dict[str, Any]],
        *,
        actor: str | None = None,
    ) -> dict[str, Any]:
        """Store the league season's teams and schedule a recalculation.

        Teams missing from ``teams`` are kept; a team id seen again is renamed.
        """
        team_ids = [team["id"] for team in teams]
        if not team_ids:
            raise RepositoryValidationError("at least one team is required")
        if len(set(team_ids)) != len(team_ids):
            raise RepositoryValidationError("team ids must be unique")
        for team in teams:
            await self.repository.upsert_team(
                team_id=team["id"],
                name=team["name"],
                league_id=league_id,
                season_id=season_id,
            )
        logger.info("synced %s teams league=%s season=%s actor=%s", len(teams), league_id, season_id, actor)
        return await self.queue.enqueue(
            league_id,
            season_id,
            priority=Priority.NORMAL,
            reason=f"{len(teams)} teams synced",
            actor=actor,
        )
