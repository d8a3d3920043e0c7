"""Standings calculation engine.

``compute_standings`` is a pure function: the same matches, reference teams
and tie-break configuration always produce the same ordered table. Matches
that cannot be counted are skipped and reported as warnings so that one bad
record never corrupts the totals of unaffected teams.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from itertools import groupby
from typing import Any, Literal, cast

from standings.services.errors import DataError

POINTS_FOR_WIN = 3
POINTS_FOR_DRAW = 1
FINAL_MATCH_STATUSES = frozenset({"finished"})

WarningCode = Literal[
    "missing_score",
    "not_final",
    "invalid_score",
    "unresolved_team",
    "self_match",
    "duplicate_match",
]

_ENTRY_FIELDS = (
    "team_id",
    "team_name",
    "played",
    "won",
    "drawn",
    "lost",
    "goals_for",
    "goals_against",
    "goal_difference",
    "points",
    "rank",
)


@dataclass(slots=True, frozen=True)
class MatchResult:
    match_id: str
    home_team_id: str
    away_team_id: str
    home_goals: int | None
    away_goals: int | None
    status: str = "finished"

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> MatchResult:
        return cls(
            match_id=str(row["match_id"] if "match_id" in row else row["id"]),
            home_team_id=str(row["home_team_id"]),
            away_team_id=str(row["away_team_id"]),
            home_goals=row.get("home_goals"),
            away_goals=row.get("away_goals"),
            status=str(row.get("status") or "finished"),
        )


@dataclass(slots=True, frozen=True)
class TiebreakConfig:
    head_to_head: bool = False


@dataclass(slots=True, frozen=True)
class StandingsEntry:
    team_id: str
    team_name: str
    played: int = 0
    won: int = 0
    drawn: int = 0
    lost: int = 0
    goals_for: int = 0
    goals_against: int = 0
    goal_difference: int = 0
    points: int = 0
    rank: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> StandingsEntry:
        missing = [name for name in _ENTRY_FIELDS if name not in row]
        if missing:
            raise ValueError(f"standings entry is missing fields: {missing}")
        team_name = row["team_name"]
        if not isinstance(team_name, str) or not team_name:
            raise ValueError("standings entry team_name must be a non-empty string")
        counters: dict[str, int] = {}
        for name in _ENTRY_FIELDS[2:]:
            value = row[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"standings entry field {name} must be an integer")
            counters[name] = value
        return cls(team_id=str(row["team_id"]), team_name=team_name, **counters)


@dataclass(slots=True, frozen=True)
class CalculationWarning:
    match_id: str
    code: WarningCode
    message: str

    @classmethod
    def from_error(cls, match_id: str, error: DataError) -> CalculationWarning:
        return cls(match_id=match_id, code=cast(WarningCode, error.code), message=error.message)

    def to_dict(self) -> dict[str, str]:
        return {"match_id": self.match_id, "code": self.code, "message": self.message}


@dataclass(slots=True)
class CalculationResult:
    entries: list[StandingsEntry]
    warnings: list[CalculationWarning] = field(default_factory=list)
    counted_matches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "warnings": [warning.to_dict() for warning in self.warnings],
            "counted_matches": self.counted_matches,
        }


@dataclass(slots=True)
class _Totals:
    played: int = 0
    won: int = 0
    drawn: int = 0
    lost: int = 0
    goals_for: int = 0
    goals_against: int = 0

    def record(self, scored: int, conceded: int) -> None:
        self.played += 1
        self.goals_for += scored
        self.goals_against += conceded
        if scored > conceded:
            self.won += 1
        elif scored == conceded:
            self.drawn += 1
        else:
            self.lost += 1

    @property
    def points(self) -> int:
        return self.won * POINTS_FOR_WIN + self.drawn * POINTS_FOR_DRAW


def compute_standings(
    matches: Iterable[MatchResult],
    config: TiebreakConfig | None = None,
    *,
    teams: Mapping[str, str] | None = None,
) -> CalculationResult:
    """Aggregate match results into a ranked table.

    ``teams`` maps team id to display name. When given, every listed team
    appears in the table (with zero played if it has no counted match) and a
    match referencing an unknown team is skipped. When omitted, the teams are
    taken from the matches themselves and named by id.
    """
    config = config or TiebreakConfig()
    match_list = sorted(matches, key=lambda match: match.match_id)
    names = dict(teams) if teams is not None else _names_from_matches(match_list)

    warnings: list[CalculationWarning] = []
    counted: list[MatchResult] = []
    totals = {team_id: _Totals() for team_id in names}
    seen_ids: set[str] = set()
    for match in match_list:
        try:
            home_goals, away_goals = _validated_score(match, names, seen_ids)
        except DataError as exc:
            warnings.append(CalculationWarning.from_error(match.match_id, exc))
            continue
        finally:
            seen_ids.add(match.match_id)
        counted.append(match)
        totals[match.home_team_id].record(home_goals, away_goals)
        totals[match.away_team_id].record(away_goals, home_goals)

    entries = [
        StandingsEntry(
            team_id=team_id,
            team_name=names[team_id],
            played=total.played,
            won=total.won,
            drawn=total.drawn,
            lost=total.lost,
            goals_for=total.goals_for,
            goals_against=total.goals_against,
            goal_difference=total.goals_for - total.goals_against,
            points=total.points,
        )
        for team_id, total in totals.items()
    ]
    ordered = sort_entries(entries, counted, config)
    return CalculationResult(entries=ordered, warnings=warnings, counted_matches=len(counted))


def sort_entries(
    entries: Iterable[StandingsEntry],
    matches: Iterable[MatchResult],
    config: TiebreakConfig,
) -> list[StandingsEntry]:
    """Order entries and assign ranks starting at 1.

    ``matches`` must already be validated; it is only read for head-to-head.
    """
    match_list = list(matches)
    ordered: list[StandingsEntry] = []
    for _, group_iter in groupby(sorted(entries, key=_primary_key), key=_primary_key):
        group = list(group_iter)
        if len(group) > 1 and config.head_to_head:
            ordered.extend(_order_by_head_to_head(group, match_list))
        else:
            ordered.extend(sorted(group, key=_name_key))
    return [replace(entry, rank=index) for index, entry in enumerate(ordered, start=1)]


def canonical_payload(entries: Iterable[StandingsEntry | Mapping[str, Any]]) -> bytes:
    rows = [entry.to_dict() if isinstance(entry, StandingsEntry) else dict(entry) for entry in entries]
    return json.dumps(rows, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def table_hash(entries: Iterable[StandingsEntry | Mapping[str, Any]]) -> str:
    return hashlib.sha256(canonical_payload(entries)).hexdigest()


def entries_from_payload(payload: Any) -> list[StandingsEntry]:
    if not isinstance(payload, list):
        raise ValueError("standings payload must be a list")
    entries: list[StandingsEntry] = []
    for row in payload:
        if not isinstance(row, Mapping):
            raise ValueError("standings payload rows must be objects")
        entries.append(StandingsEntry.from_dict(row))
    return entries


def _primary_key(entry: StandingsEntry) -> tuple[int, int, int]:
    return (-entry.points, -entry.goal_difference, -entry.goals_for)


def _name_key(entry: StandingsEntry) -> tuple[str, str, str]:
    return (entry.team_name.casefold(), entry.team_name, entry.team_id)


def _order_by_head_to_head(group: list[StandingsEntry], matches: list[MatchResult]) -> list[StandingsEntry]:
    team_ids = {entry.team_id for entry in group}
    mini = {team_id: _Totals() for team_id in team_ids}
    for match in matches:
        if match.home_team_id not in team_ids or match.away_team_id not in team_ids:
            continue
        home_goals, away_goals = cast(int, match.home_goals), cast(int, match.away_goals)
        mini[match.home_team_id].record(home_goals, away_goals)
        mini[match.away_team_id].record(away_goals, home_goals)

    def key(entry: StandingsEntry) -> tuple[int, int, int, str, str, str]:
        h2h = mini[entry.team_id]
        return (
            -h2h.points,
            -(h2h.goals_for - h2h.goals_against),
            -h2h.goals_for,
            *_name_key(entry),
        )

    return sorted(group, key=key)


def _names_from_matches(matches: Iterable[MatchResult]) -> dict[str, str]:
    names: dict[str, str] = {}
    for match in matches:
        names.setdefault(match.home_team_id, match.home_team_id)
        names.setdefault(match.away_team_id, match.away_team_id)
    return names


def _validated_score(
    match: MatchResult,
    names: Mapping[str, str],
    seen_ids: set[str],
) -> tuple[int, int]:
    """Return ``(home_goals, away_goals)`` or raise ``DataError`` for a match that cannot count."""
    match_id = match.match_id
    if match_id in seen_ids:
        raise DataError("match id appears more than once", code="duplicate_match", match_id=match_id)
    for side, team_id in (("home", match.home_team_id), ("away", match.away_team_id)):
        if team_id not in names:
            raise DataError(
                f"{side} team {team_id} is not part of this league season",
                code="unresolved_team",
                match_id=match_id,
            )
    if match.home_team_id == match.away_team_id:
        raise DataError("home and away team are the same", code="self_match", match_id=match_id)
    if match.home_goals is None or match.away_goals is None:
        raise DataError("match has no recorded final score", code="missing_score", match_id=match_id)
    if not _is_goal_count(match.home_goals) or not _is_goal_count(match.away_goals):
        raise DataError("goals must be non-negative integers", code="invalid_score", match_id=match_id)
    if match.status not in FINAL_MATCH_STATUSES:
        raise DataError(f"match status is {match.status}", code="not_final", match_id=match_id)
    return match.home_goals, match.away_goals


def _is_goal_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0
