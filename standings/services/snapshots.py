"""Point-in-time copies of a standings table, used for rollback."""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from standings.services.audit import AuditRecord
from standings.services.calculation import StandingsEntry, canonical_payload, entries_from_payload
from standings.services.clock import utcnow
from standings.services.errors import RepositoryConflictError, RepositoryNotFoundError, SnapshotCorruptedError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RollbackPlan:
    snapshot_id: int
    entries: list[dict[str, Any]]

    @property
    def source(self) -> str:
        return f"snapshot_restore:{self.snapshot_id}"


def checksum_payload(payload: Iterable[StandingsEntry | dict[str, Any]]) -> tuple[str, int]:
    data = canonical_payload(payload)
    return hashlib.sha256(data).hexdigest(), len(data)


def verify_snapshot(snapshot: dict[str, Any]) -> list[StandingsEntry]:
    """Check checksum and entry structure; return the decoded entries."""
    snapshot_id = snapshot.get("id")
    payload = snapshot.get("payload")
    try:
        entries = entries_from_payload(payload)
    except ValueError as exc:
        raise SnapshotCorruptedError(f"snapshot {snapshot_id} payload is malformed", details={"reason": str(exc)}) from exc

    checksum, size = checksum_payload(payload)
    if checksum != snapshot.get("checksum") or size != snapshot.get("size"):
        raise SnapshotCorruptedError(
            f"snapshot {snapshot_id} checksum mismatch",
            details={"expected": snapshot.get("checksum"), "actual": checksum},
        )
    return entries


def select_expired(
    snapshots: Iterable[dict[str, Any]],
    *,
    now: datetime,
    max_age: timedelta,
    min_keep: int,
) -> list[int]:
    """Ids of snapshots older than ``max_age``, sparing the newest ``min_keep`` per key."""
    by_key: dict[tuple[str, str], list[dict[str, Any]]] = defaultdict(list)
    for snapshot in snapshots:
        by_key[(snapshot["league_id"], snapshot["season_id"])].append(snapshot)

    cutoff = now - max_age
    expired: list[int] = []
    for group in by_key.values():
        group.sort(key=lambda item: (item["created_at"], item["id"]), reverse=True)
        for snapshot in group[max(0, min_keep) :]:
            if snapshot["created_at"] < cutoff:
                expired.append(snapshot["id"])
    return sorted(expired)


class SnapshotManager:
    def __init__(self, repository: Any, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self._clock = clock

    async def snapshot(self, league_id: str, season_id: str, description: str = "") -> dict[str, Any]:
        table = await self.repository.get_standings(league_id, season_id)
        payload = list(table["entries"]) if table is not None else []
        checksum, size = checksum_payload(payload)
        snapshot = await self.repository.insert_snapshot(
            league_id=league_id,
            season_id=season_id,
            description=description,
            payload=payload,
            size=size,
            checksum=checksum,
            standings_version=table["version"] if table is not None else 0,
            now=self._clock(),
        )
        logger.info(
            "snapshot %s taken league=%s season=%s version=%s teams=%s",
            snapshot["id"],
            league_id,
            season_id,
            snapshot["standings_version"],
            len(payload),
        )
        return snapshot

    async def restore(self, snapshot_id: int, *, actor: str | None = None) -> dict[str, Any]:
        snapshot = await self.repository.get_snapshot(snapshot_id)
        entries = verify_snapshot(snapshot)
        audit = AuditRecord(
            league_id=snapshot["league_id"],
            season_id=snapshot["season_id"],
            action="standings_restored",
            actor_type="manual" if actor else "system",
            actor_id=actor,
            details={"snapshot_id": snapshot_id, "snapshot_version": snapshot["standings_version"]},
        )
        plan = RollbackPlan(snapshot_id=snapshot_id, entries=[entry.to_dict() for entry in entries])
        table = await self.repository.restore_standings(
            league_id=snapshot["league_id"],
            season_id=snapshot["season_id"],
            entries=plan.entries,
            source=plan.source,
            audit=audit,
            now=self._clock(),
        )
        logger.warning(
            "standings restored from snapshot %s league=%s season=%s actor=%s",
            snapshot_id,
            snapshot["league_id"],
            snapshot["season_id"],
            actor,
        )
        return table

    async def delete(self, snapshot_id: int, *, min_keep: int) -> dict[str, Any]:
        """Remove one snapshot by hand.

        Refuses to take a league season below ``min_keep`` snapshots or to
        remove the rollback point of a job that is still processing.
        """
        snapshot = await self.repository.get_snapshot(snapshot_id)
        league_id, season_id = snapshot["league_id"], snapshot["season_id"]
        siblings = await self.repository.list_snapshots(league_id=league_id, season_id=season_id)
        if len(siblings) <= max(0, min_keep):
            raise RepositoryConflictError(f"at least {min_keep} snapshots must be kept for this league season")
        active = await self.repository.get_active_job(league_id, season_id)
        if (
            active is not None
            and active["status"] == "processing"
            and active["metadata"].get("snapshot_id") == snapshot_id
        ):
            raise RepositoryConflictError("snapshot is the rollback point of a processing job")
        await self.repository.delete_snapshots([snapshot_id])
        logger.warning("snapshot %s deleted league=%s season=%s", snapshot_id, league_id, season_id)
        return {key: value for key, value in snapshot.items() if key != "payload"}

    async def list(self, league_id: str, season_id: str) -> list[dict[str, Any]]:
        return await self.repository.list_snapshots(league_id=league_id, season_id=season_id)

    async def get(self, snapshot_id: int) -> dict[str, Any]:
        return await self.repository.get_snapshot(snapshot_id)

    async def latest(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        snapshots = await self.repository.list_snapshots(league_id=league_id, season_id=season_id, limit=1)
        if not snapshots:
            return None
        return await self.repository.get_snapshot(snapshots[0]["id"])

    async def rollback_plan(self, job: dict[str, Any]) -> RollbackPlan | None:
        """Pick the job's claim snapshot, else the newest one for its key."""
        snapshot: dict[str, Any] | None = None
        snapshot_id = (job.get("metadata") or {}).get("snapshot_id")
        if snapshot_id is not None:
            try:
                snapshot = await self.repository.get_snapshot(int(snapshot_id))
            except RepositoryNotFoundError:
                logger.warning("claim snapshot %s for job %s no longer exists", snapshot_id, job["id"])
        if snapshot is None:
            snapshot = await self.latest(job["league_id"], job["season_id"])
        if snapshot is None:
            return None
        try:
            entries = verify_snapshot(snapshot)
        except SnapshotCorruptedError:
            logger.exception("cannot roll back job %s from snapshot %s", job["id"], snapshot["id"])
            return None
        return RollbackPlan(snapshot_id=snapshot["id"], entries=[entry.to_dict() for entry in entries])
