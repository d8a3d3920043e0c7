from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg  # type: ignore[import-untyped]
import pytest

from standings.services.errors import LockConflictError, RepositoryConflictError, VersionConflictError
from standings.services.queue import JobQueue, Priority, RetryPolicy
from standings.services.recalculation import RecalculationService
from standings.services.repository import PostgresRepository
from standings.services.schema import apply_schema, truncate_all
from standings.services.snapshots import SnapshotManager
from standings.worker.executor import calculate


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("LS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require LS_DATABASE_URL or DATABASE_URL")
    return url


def _run(database_url: str, scenario: Callable[[RecalculationService], Awaitable[Any]]) -> Any:
    async def runner() -> Any:
        conn = await asyncpg.connect(database_url)
        try:
            await apply_schema(conn)
            await truncate_all(conn)
        finally:
            await conn.close()

        repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=4)
        snapshots = SnapshotManager(repository)
        queue = JobQueue(repository, snapshots=snapshots, policy=RetryPolicy(max_attempts=3))
        try:
            return await scenario(RecalculationService(repository, queue=queue, snapshots=snapshots))
        finally:
            await repository.close()

    return asyncio.run(runner())


def _match(match_id: str, home: str, away: str, home_goals: int, away_goals: int) -> dict[str, Any]:
    return {
        "id": match_id,
        "league_id": "L",
        "season_id": "S",
        "home_team_id": home,
        "away_team_id": away,
        "home_goals": home_goals,
        "away_goals": away_goals,
        "status": "finished",
    }


def test_enqueue_claim_commit_flow(database_url: str) -> None:
    async def scenario(service: RecalculationService):
        for row in [_match("m1", "A", "B", 3, 1), _match("m2", "B", "C", 2, 0), _match("m3", "A", "C", 1, 1)]:
            job = await service.ingest_match_result(row, actor="feed")
        packet = await service.claim("w1", 30)
        result = calculate({"matches": packet.matches, "teams": packet.teams, "head_to_head": False})
        with pytest.raises(VersionConflictError):
            await service.submit_result(
                packet.job["id"],
                "w1",
                entries=result["entries"],
                warnings=[],
                expected_version=7,
            )
        completed, table = await service.submit_result(
            packet.job["id"],
            "w1",
            entries=result["entries"],
            warnings=result["warnings"],
            expected_version=packet.standings_version,
        )
        audit = await service.repository.list_audit_logs(job_id=packet.job["id"])
        return job, completed, table, audit

    job, completed, table, audit = _run(database_url, scenario)

    assert job["priority"] == Priority.HIGH
    assert len(job["metadata"]["reasons"]) == 3
    assert completed["status"] == "completed"
    assert table["version"] == 1
    assert [entry["team_id"] for entry in table["entries"]] == ["A", "B", "C"]
    assert [entry["action"] for entry in audit] == ["standings_committed"]


def test_concurrent_claims_hand_out_each_job_once(database_url: str) -> None:
    async def scenario(service: RecalculationService):
        for index in range(4):
            await service.queue.enqueue("L", f"S{index}")
        results = await asyncio.gather(
            *(service.queue.dequeue(f"w{index}", 30) for index in range(8)),
            return_exceptions=True,
        )
        return results

    results = _run(database_url, scenario)

    claimed = [result["id"] for result in results if isinstance(result, dict)]
    errors = [result for result in results if isinstance(result, BaseException)]
    assert len(claimed) == len(set(claimed))
    assert 1 <= len(claimed) <= 4
    assert all(isinstance(error, LockConflictError) for error in errors)


def test_pause_team_sync_and_manual_retry(database_url: str) -> None:
    async def scenario(service: RecalculationService):
        await service.queue.pause(actor="ops", reason="maintenance")
        job = await service.sync_teams("L", "S", [{"id": "A", "name": "Arsenal"}, {"id": "B", "name": "Brentford"}])
        while_paused = await service.queue.dequeue("w1", 30)
        state = await service.queue.state()
        await service.queue.resume(actor="ops")

        packet = await service.claim("w1", 30)
        await service.report_failure(job["id"], "w1", "checksum mismatch", fatal=True)
        await service.queue.enqueue("L", "S", reason="blocking job")
        with pytest.raises(RepositoryConflictError):
            await service.queue.retry_failed(job["id"], actor="ops")
        return while_paused, state, packet

    while_paused, state, packet = _run(database_url, scenario)

    assert while_paused is None
    assert state["paused"] is True and state["changed_by"] == "ops"
    assert [(team["id"], team["name"]) for team in packet.teams] == [("A", "Arsenal"), ("B", "Brentford")]
