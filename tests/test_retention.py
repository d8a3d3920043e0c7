from __future__ import annotations

import asyncio
from datetime import timedelta

from standings.services.audit import AuditRecord
from standings.services.retention import RetentionPolicy, RetentionSweeper


def test_terminal_jobs_age_out_while_active_jobs_stay(queue, repository, clock) -> None:
    sweeper = RetentionSweeper(repository, clock=clock)

    async def scenario():
        old = await queue.enqueue("L", "S1")
        await queue.dequeue("w1", 30)
        await queue.complete(old["id"], "w1", None)

        clock.advance(days=2)
        recent = await queue.enqueue("L", "S2")
        await queue.dequeue("w1", 30)
        await queue.complete(recent["id"], "w1", None)
        waiting = await queue.enqueue("L", "S3")

        clock.advance(days=6)
        first = await sweeper.run()
        second = await sweeper.run()
        return old, recent, waiting, first, second

    old, recent, waiting, first, second = asyncio.run(scenario())

    assert first.jobs_deleted == 1
    assert second.jobs_deleted == 0
    assert old["id"] not in repository.jobs
    assert recent["id"] in repository.jobs
    assert repository.jobs[waiting["id"]]["status"] == "pending"


def test_snapshot_sweep_spares_newest_and_in_use(recalculation, snapshots, queue, repository, clock) -> None:
    policy = RetentionPolicy(snapshot_ttl=timedelta(days=30), snapshot_min_keep=1, audit_ttl=timedelta(days=30))
    sweeper = RetentionSweeper(repository, policy=policy, clock=clock)

    async def scenario():
        await queue.enqueue("L", "S")
        packet = await recalculation.claim("w1", 3600)
        spare = await snapshots.snapshot("L", "S", description="manual")
        newest = await snapshots.snapshot("L", "S", description="manual")
        await repository.insert_audit_log(AuditRecord(league_id="L", season_id="S", action="job_failed"), now=clock())

        clock.advance(days=31)
        first = await sweeper.run()
        second = await sweeper.run()
        return packet, spare, newest, first, second

    packet, spare, newest, first, second = asyncio.run(scenario())

    assert first.snapshots_deleted == 1
    assert sorted(repository.snapshots) == [packet.snapshot_id, newest["id"]]
    assert spare["id"] not in repository.snapshots
    assert first.audit_logs_deleted == 1
    assert repository.audit_logs == []
    assert (second.jobs_deleted, second.snapshots_deleted, second.audit_logs_deleted) == (0, 0, 0)
    assert repository.jobs[packet.job["id"]]["status"] == "processing"


def test_report_serializes(repository, clock) -> None:
    report = asyncio.run(RetentionSweeper(repository, clock=clock).run())

    assert report.to_dict() == {
        "ran_at": clock(),
        "jobs_deleted": 0,
        "snapshots_deleted": 0,
        "audit_logs_deleted": 0,
    }
