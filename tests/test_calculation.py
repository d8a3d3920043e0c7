from __future__ import annotations

import random

import pytest

from standings.services.calculation import (
    CalculationWarning,
    MatchResult,
    StandingsEntry,
    TiebreakConfig,
    compute_standings,
    entries_from_payload,
    table_hash,
)
from standings.services.errors import DataError

TEAMS = {"A": "Arsenal", "B": "Brentford", "C": "Chelsea", "D": "Derby", "E": "Everton"}


def _match(match_id: str, home: str, away: str, home_goals: int | None, away_goals: int | None, **kwargs) -> MatchResult:
    return MatchResult(match_id, home, away, home_goals, away_goals, **kwargs)


def _scenario() -> list[MatchResult]:
    return [
        _match("m1", "A", "B", 3, 1),
        _match("m2", "B", "C", 2, 0),
        _match("m3", "A", "C", 1, 1),
    ]


def test_three_team_scenario_totals_and_order() -> None:
    result = compute_standings(_scenario())

    assert [entry.team_id for entry in result.entries] == ["A", "B", "C"]
    a, b, c = result.entries
    assert (a.points, a.won, a.drawn, a.lost, a.goals_for, a.goals_against, a.goal_difference) == (4, 1, 1, 0, 4, 2, 2)
    assert (b.points, b.won, b.drawn, b.lost, b.goals_for, b.goals_against, b.goal_difference) == (3, 1, 0, 1, 4, 4, 0)
    assert (c.points, c.won, c.drawn, c.lost, c.goals_for, c.goals_against, c.goal_difference) == (1, 0, 1, 1, 1, 4, -3)
    assert [entry.rank for entry in result.entries] == [1, 2, 3]
    assert result.warnings == []
    assert result.counted_matches == 3


def test_match_without_score_is_skipped_with_warning() -> None:
    matches = [*_scenario(), _match("m4", "D", "E", None, None)]
    result = compute_standings(matches, teams=TEAMS)

    by_id = {entry.team_id: entry for entry in result.entries}
    assert by_id["A"].points == 4 and by_id["B"].points == 3 and by_id["C"].points == 1
    assert by_id["D"].played == 0 and by_id["E"].played == 0
    assert [entry.team_id for entry in result.entries][:3] == ["A", "B", "C"]
    assert [(warning.match_id, warning.code) for warning in result.warnings] == [("m4", "missing_score")]


def test_teams_are_derived_from_matches_when_not_given() -> None:
    result = compute_standings([*_scenario(), _match("m4", "D", "E", None, None)])

    assert {entry.team_id for entry in result.entries} == {"A", "B", "C", "D", "E"}
    assert {entry.team_name for entry in result.entries if entry.team_id in {"D", "E"}} == {"D", "E"}


def test_compute_is_idempotent_and_ignores_input_order() -> None:
    matches = [*_scenario(), _match("m4", "D", "E", 2, 2), _match("m5", "E", "A", 0, 1)]
    shuffled = matches[:]
    random.Random(7).shuffle(shuffled)

    first = compute_standings(matches, teams=TEAMS)
    second = compute_standings(matches, teams=TEAMS)
    third = compute_standings(shuffled, teams=TEAMS)

    assert first.entries == second.entries == third.entries
    assert table_hash(first.entries) == table_hash(third.entries)


def test_goals_for_breaks_tie_on_points_and_difference() -> None:
    teams = {"y": "Yak", "z": "Zebra", "p": "Aardvark", "q": "Abacus"}
    matches = [_match("m1", "y", "z", 2, 2), _match("m2", "p", "q", 0, 0)]

    result = compute_standings(matches, teams=teams)

    assert [entry.team_name for entry in result.entries] == ["Yak", "Zebra", "Aardvark", "Abacus"]


def _head_to_head_fixture() -> tuple[list[MatchResult], dict[str, str]]:
    teams = {"a": "Alpha", "z": "Zeta", "c": "Cobra", "d": "Delta"}
    matches = [
        _match("m1", "z", "a", 1, 0),
        _match("m2", "c", "z", 1, 0),
        _match("m3", "a", "c", 1, 0),
        _match("m4", "c", "d", 2, 0),
    ]
    return matches, teams


def test_name_decides_remaining_ties_without_head_to_head() -> None:
    matches, teams = _head_to_head_fixture()

    result = compute_standings(matches, TiebreakConfig(head_to_head=False), teams=teams)

    assert [entry.team_id for entry in result.entries] == ["c", "a", "z", "d"]


def test_head_to_head_orders_tied_teams_when_enabled() -> None:
    matches, teams = _head_to_head_fixture()

    result = compute_standings(matches, TiebreakConfig(head_to_head=True), teams=teams)

    assert [entry.team_id for entry in result.entries] == ["c", "z", "a", "d"]
    assert [entry.rank for entry in result.entries] == [1, 2, 3, 4]


def test_identical_names_fall_back_to_team_id() -> None:
    teams = {"t2": "United", "t1": "United"}

    result = compute_standings([], teams=teams)

    assert [entry.team_id for entry in result.entries] == ["t1", "t2"]


def test_data_errors_are_reported_and_excluded() -> None:
    matches = [
        _match("m1", "A", "B", 1, 0),
        _match("m1", "A", "C", 5, 0),
        _match("m2", "A", "X", 1, 0),
        _match("m3", "B", "B", 1, 1),
        _match("m4", "B", "C", -1, 0),
        _match("m5", "B", "C", 1.5, 0),
        _match("m6", "C", "A", 2, 0, status="scheduled"),
        _match("m7", "C", "B", True, 0),
    ]

    result = compute_standings(matches, teams={"A": "A", "B": "B", "C": "C"})

    codes = {warning.match_id + ":" + warning.code for warning in result.warnings}
    assert codes == {
        "m1:duplicate_match",
        "m2:unresolved_team",
        "m3:self_match",
        "m4:invalid_score",
        "m5:invalid_score",
        "m6:not_final",
        "m7:invalid_score",
    }
    by_id = {entry.team_id: entry for entry in result.entries}
    assert by_id["A"].points == 3 and by_id["A"].goals_for == 1
    assert by_id["C"].played == 0
    assert result.counted_matches == 1


def test_table_hash_ignores_key_order() -> None:
    entry = StandingsEntry(team_id="A", team_name="Arsenal", played=1, won=1, goals_for=2, goal_difference=2, points=3, rank=1)
    reordered = dict(reversed(list(entry.to_dict().items())))

    assert table_hash([entry]) == table_hash([reordered])


_GOOD_ROW = StandingsEntry(team_id="A", team_name="Arsenal", rank=1).to_dict()


def test_entries_from_payload_accepts_engine_rows() -> None:
    assert entries_from_payload([_GOOD_ROW])[0].team_name == "Arsenal"


@pytest.mark.parametrize(
    "row",
    [
        {**_GOOD_ROW, "points": "3"},
        {key: value for key, value in _GOOD_ROW.items() if key != "rank"},
        {**_GOOD_ROW, "team_name": ""},
    ],
)
def test_entries_from_payload_rejects_malformed_rows(row: dict) -> None:
    with pytest.raises(ValueError):
        entries_from_payload([row])


def test_data_error_becomes_warning() -> None:
    error = DataError("match status is postponed", code="not_final", match_id="m7")

    assert error.to_payload() == {
        "kind": "data",
        "message": "match status is postponed",
        "details": {"code": "not_final", "match_id": "m7"},
    }
    assert CalculationWarning.from_error("m7", error).to_dict() == {
        "match_id": "m7",
        "code": "not_final",
        "message": "match status is postponed",
    }
