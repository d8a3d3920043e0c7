from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from standings.services.audit import AuditRecord
from standings.services.calculation import MatchResult, compute_standings, table_hash
from standings.services.errors import RepositoryConflictError, RepositoryNotFoundError, SnapshotCorruptedError
from standings.services.snapshots import select_expired, verify_snapshot


def _entries(*scores: tuple[str, str, int, int]) -> list[dict]:
    matches = [MatchResult(f"m{index}", home, away, hg, ag) for index, (home, away, hg, ag) in enumerate(scores)]
    return [entry.to_dict() for entry in compute_standings(matches).entries]


async def _seed(repository, clock, entries: list[dict]) -> dict:
    return await repository.restore_standings(
        league_id="L",
        season_id="S",
        entries=entries,
        source="seed",
        audit=AuditRecord(league_id="L", season_id="S", action="standings_restored"),
        now=clock(),
    )


def test_restore_of_snapshot_reproduces_table(snapshots, repository, clock) -> None:
    original = _entries(("A", "B", 3, 1), ("B", "C", 2, 0))
    replacement = _entries(("C", "A", 5, 0))

    async def scenario():
        await _seed(repository, clock, original)
        snapshot = await snapshots.snapshot("L", "S", description="before edit")
        await _seed(repository, clock, replacement)
        restored = await snapshots.restore(snapshot["id"], actor="ops")
        return snapshot, restored

    snapshot, restored = asyncio.run(scenario())

    assert snapshot["standings_version"] == 1
    assert restored["entries"] == original
    assert restored["version"] == 3
    assert restored["source"] == f"snapshot_restore:{snapshot['id']}"
    audit = repository.audit_logs[-1]
    assert audit["action"] == "standings_restored"
    assert audit["actor_type"] == "manual"
    assert audit["before_hash"] == table_hash(replacement)
    assert audit["after_hash"] == table_hash(original)


def test_snapshot_of_empty_table(snapshots) -> None:
    snapshot = asyncio.run(snapshots.snapshot("L", "S"))

    assert snapshot["payload"] == []
    assert snapshot["standings_version"] == 0
    assert verify_snapshot(snapshot) == []


def test_snapshot_ids_increase(snapshots) -> None:
    async def scenario():
        return [(await snapshots.snapshot("L", season))["id"] for season in ("S1", "S2", "S1")]

    ids = asyncio.run(scenario())

    assert ids == sorted(ids) and len(set(ids)) == 3


def test_tampered_snapshot_is_not_restored(snapshots, repository, clock) -> None:
    async def scenario():
        await _seed(repository, clock, _entries(("A", "B", 1, 0)))
        snapshot = await snapshots.snapshot("L", "S")
        repository.snapshots[snapshot["id"]]["payload"][0]["points"] = 99
        await snapshots.restore(snapshot["id"])

    with pytest.raises(SnapshotCorruptedError):
        asyncio.run(scenario())


def test_malformed_payload_is_reported_as_corruption() -> None:
    snapshot = {"id": 7, "payload": [{"team_id": "A"}], "checksum": "x", "size": 1}

    with pytest.raises(SnapshotCorruptedError):
        verify_snapshot(snapshot)


def test_restore_unknown_snapshot(snapshots) -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(snapshots.restore(404))


def test_latest_returns_newest_for_key(snapshots) -> None:
    async def scenario():
        await snapshots.snapshot("L", "S", description="first")
        await snapshots.snapshot("L", "other")
        await snapshots.snapshot("L", "S", description="second")
        return await snapshots.latest("L", "S"), await snapshots.latest("X", "Y")

    latest, missing = asyncio.run(scenario())

    assert latest["description"] == "second"
    assert missing is None


def test_select_expired_keeps_newest_per_key() -> None:
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    rows = [
        {"id": index, "league_id": "L", "season_id": "S", "created_at": now - timedelta(days=40 + index)}
        for index in range(1, 6)
    ]
    rows.append({"id": 10, "league_id": "L", "season_id": "T", "created_at": now - timedelta(days=60)})
    rows.append({"id": 11, "league_id": "L", "season_id": "T", "created_at": now - timedelta(days=1)})

    expired = select_expired(rows, now=now, max_age=timedelta(days=30), min_keep=3)

    assert expired == [4, 5]


def test_select_expired_spares_recent_snapshots() -> None:
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    rows = [
        {"id": index, "league_id": "L", "season_id": "S", "created_at": now - timedelta(days=index)}
        for index in range(1, 6)
    ]

    assert select_expired(rows, now=now, max_age=timedelta(days=30), min_keep=0) == []


def test_manual_delete_keeps_minimum_per_key(snapshots, repository) -> None:
    async def scenario():
        taken = [await snapshots.snapshot("L", "S", description=f"manual {index}") for index in range(3)]
        deleted = await snapshots.delete(taken[0]["id"], min_keep=2)
        with pytest.raises(RepositoryConflictError):
            await snapshots.delete(taken[1]["id"], min_keep=2)
        return taken, deleted

    taken, deleted = asyncio.run(scenario())

    assert deleted["id"] == taken[0]["id"]
    assert "payload" not in deleted
    assert sorted(repository.snapshots) == [taken[1]["id"], taken[2]["id"]]


def test_manual_delete_spares_rollback_point_of_processing_job(snapshots, recalculation, queue, repository) -> None:
    async def scenario():
        await snapshots.snapshot("L", "S", description="older")
        await queue.enqueue("L", "S")
        packet = await recalculation.claim("w1", 30)
        with pytest.raises(RepositoryConflictError):
            await snapshots.delete(packet.snapshot_id, min_keep=0)
        return packet

    packet = asyncio.run(scenario())

    assert packet.snapshot_id in repository.snapshots


def test_manual_delete_of_unknown_snapshot(snapshots) -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(snapshots.delete(404, min_keep=0))
