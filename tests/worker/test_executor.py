from __future__ import annotations

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from standings.worker import executor

PACKET = {
    "matches": [
        {"id": "m1", "home_team_id": "A", "away_team_id": "B", "home_goals": 2, "away_goals": 2, "status": "finished"},
        {"id": "m2", "home_team_id": "B", "away_team_id": "C", "home_goals": 0, "away_goals": 1, "status": "finished"},
    ],
    "teams": [
        {"id": "A", "name": "Ajax"},
        {"id": "B", "name": "Benfica"},
        {"id": "C", "name": "Celtic"},
    ],
    "head_to_head": False,
}


def test_calculate_uses_registered_team_names() -> None:
    result = executor.calculate(PACKET)

    assert [(entry["team_id"], entry["team_name"], entry["points"]) for entry in result["entries"]] == [
        ("C", "Celtic", 3),
        ("A", "Ajax", 1),
        ("B", "Benfica", 1),
    ]
    assert result["counted_matches"] == 2
    assert result["warnings"] == []


def test_calculate_derives_teams_when_none_registered() -> None:
    result = executor.calculate({**PACKET, "teams": []})

    assert {entry["team_name"] for entry in result["entries"]} == {"A", "B", "C"}


def test_execute_job_runs_in_default_executor() -> None:
    result = asyncio.run(executor.execute_job(PACKET, timeout_seconds=5.0))

    assert result["entries"][0]["team_id"] == "C"


def test_execute_job_times_out(monkeypatch) -> None:
    def slow_calculate(packet):
        time.sleep(0.5)
        return {}

    monkeypatch.setattr(executor, "calculate", slow_calculate)

    async def scenario():
        with ThreadPoolExecutor(max_workers=1) as pool:
            await executor.execute_job(PACKET, executor=pool, timeout_seconds=0.05)

    with pytest.raises(TimeoutError):
        asyncio.run(scenario())
