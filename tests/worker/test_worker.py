from __future__ import annotations

import asyncio
import os
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from standings.services.errors import SnapshotCorruptedError
from standings.worker import main as worker_main
from standings.worker.config import WorkerSettings


class FakeJobClient:
    def __init__(self, *, submit_status: int = 200, failure_status: int = 200) -> None:
        self.submit_status = submit_status
        self.failure_status = failure_status
        self.submitted: list[dict[str, Any]] = []
        self.failures: list[dict[str, Any]] = []

    async def submit_result(self, job_id: str, **kwargs: Any) -> dict[str, Any]:
        self.submitted.append({"job_id": job_id, **kwargs})
        self._maybe_raise(self.submit_status, f"/jobs/{job_id}/result")
        return {}

    async def report_failure(self, job_id: str, *, error: str, fatal: bool) -> dict[str, Any]:
        self.failures.append({"job_id": job_id, "error": error, "fatal": fatal})
        self._maybe_raise(self.failure_status, f"/jobs/{job_id}/failure")
        return {}

    @staticmethod
    def _maybe_raise(status_code: int, path: str) -> None:
        if status_code < 400:
            return
        request = httpx.Request("POST", f"http://api.test{path}")
        response = httpx.Response(status_code, request=request, json={"detail": "rejected"})
        raise httpx.HTTPStatusError("rejected", request=request, response=response)


def _packet(**job_overrides: Any) -> dict[str, Any]:
    lease = datetime.now(timezone.utc) + timedelta(minutes=1)
    job = {"id": "j1", "league_id": "L", "season_id": "S", "lease_expires_at": lease.isoformat(), **job_overrides}
    return {
        "job": job,
        "snapshot_id": 1,
        "standings_version": 3,
        "matches": [
            {"id": "m1", "home_team_id": "A", "away_team_id": "B", "home_goals": 1, "away_goals": 0},
            {"id": "m2", "home_team_id": "A", "away_team_id": "B", "home_goals": None, "away_goals": None},
        ],
        "teams": [],
        "head_to_head": False,
    }


def test_process_packet_commits_result() -> None:
    client = FakeJobClient()

    outcome = asyncio.run(worker_main.process_packet(client, _packet(), executor=None, timeout_seconds=5.0))

    assert outcome == "committed"
    submitted = client.submitted[0]
    assert submitted["expected_version"] == 3
    assert [entry["team_id"] for entry in submitted["entries"]] == ["A", "B"]
    assert [warning["code"] for warning in submitted["warnings"]] == ["missing_score"]
    assert client.failures == []


def test_process_packet_reports_version_conflict_as_retryable() -> None:
    client = FakeJobClient(submit_status=409)

    outcome = asyncio.run(worker_main.process_packet(client, _packet(), executor=None, timeout_seconds=5.0))

    assert outcome == "conflict"
    assert client.failures == [{"job_id": "j1", "error": "standings changed before commit", "fatal": False}]


def test_calculation_errors_are_classified(monkeypatch) -> None:
    async def corrupted(packet, *, executor=None, timeout_seconds=None):
        raise SnapshotCorruptedError("checksum mismatch")

    async def timed_out(packet, *, executor=None, timeout_seconds=None):
        raise TimeoutError()

    client = FakeJobClient()
    monkeypatch.setattr(worker_main, "execute_job", corrupted)
    assert asyncio.run(worker_main.process_packet(client, _packet(), executor=None, timeout_seconds=5.0)) == "failed"
    monkeypatch.setattr(worker_main, "execute_job", timed_out)
    assert asyncio.run(worker_main.process_packet(client, _packet(), executor=None, timeout_seconds=5.0)) == "failed"

    assert [failure["fatal"] for failure in client.failures] == [True, False]
    assert client.failures[0]["error"].startswith("SnapshotCorruptedError")


def test_timeout_is_bounded_by_remaining_lease(monkeypatch) -> None:
    captured = {}

    async def fake_execute(packet, *, executor=None, timeout_seconds=None):
        captured["timeout"] = timeout_seconds
        return {"entries": [], "warnings": [], "counted_matches": 0}

    monkeypatch.setattr(worker_main, "execute_job", fake_execute)
    packet = _packet(lease_expires_at=(datetime.now(timezone.utc) + timedelta(seconds=10)).isoformat())

    asyncio.run(worker_main.process_packet(FakeJobClient(), packet, executor=None, timeout_seconds=30.0))

    assert 0 < captured["timeout"] <= 10


def test_failure_report_conflict_is_tolerated(monkeypatch) -> None:
    async def broken(packet, *, executor=None, timeout_seconds=None):
        raise ValueError("bad packet")

    monkeypatch.setattr(worker_main, "execute_job", broken)
    client = FakeJobClient(failure_status=409)

    outcome = asyncio.run(worker_main.process_packet(client, _packet(), executor=None, timeout_seconds=5.0))

    assert outcome == "failed"
    assert client.failures[0]["fatal"] is False


def test_broken_pool_failures_are_retryable_and_pool_is_replaced() -> None:
    executor = ProcessPoolExecutor(max_workers=1)
    with pytest.raises(BrokenProcessPool):
        executor.submit(os._exit, 1).result(timeout=30)

    client = FakeJobClient()
    outcomes = [
        asyncio.run(worker_main.process_packet(client, _packet(), executor=executor, timeout_seconds=30.0))
        for _ in range(3)
    ]

    assert outcomes == ["executor_broken"] * 3
    assert [failure["fatal"] for failure in client.failures] == [False, False, False]
    assert client.failures[0]["error"].startswith("BrokenProcessPool")

    replacement = worker_main.replace_executor(executor, WorkerSettings(calculation_processes=1))
    try:
        outcome = asyncio.run(
            worker_main.process_packet(client, _packet(), executor=replacement, timeout_seconds=30.0)
        )
    finally:
        replacement.shutdown(wait=True)

    assert outcome == "committed"
    assert len(client.submitted) == 1
