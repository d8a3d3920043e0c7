from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from typing import Any

from standings.services.calculation import MatchResult, TiebreakConfig, compute_standings


def calculate(packet: dict[str, Any]) -> dict[str, Any]:
    """Run the calculation for a claimed work packet. Must stay picklable."""
    matches = [MatchResult.from_dict(row) for row in packet.get("matches") or []]
    teams = {str(team["id"]): team["name"] for team in packet.get("teams") or []}
    config = TiebreakConfig(head_to_head=bool(packet.get("head_to_head")))
    result = compute_standings(matches, config, teams=teams or None)
    return result.to_dict()


async def execute_job(
    packet: dict[str, Any],
    *,
    executor: Executor | None = None,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(executor, calculate, packet)
    if timeout_seconds is None:
        return await future
    return await asyncio.wait_for(future, timeout=timeout_seconds)
