from datetime import datetime

from pydantic import BaseModel, Field


class StandingsEntryOut(BaseModel):
    team_id: str
    team_name: str = Field(min_length=1)
    played: int = Field(ge=0)
    won: int = Field(ge=0)
    drawn: int = Field(ge=0)
    lost: int = Field(ge=0)
    goals_for: int = Field(ge=0)
    goals_against: int = Field(ge=0)
    goal_difference: int
    points: int = Field(ge=0)
    rank: int = Field(ge=1)


class CalculationWarningOut(BaseModel):
    match_id: str
    code: str
    message: str


class StandingsOut(BaseModel):
    league_id: str
    season_id: str
    version: int = 0
    updated_at: datetime | None = None
    source: str | None = None
    entries: list[StandingsEntryOut] = Field(default_factory=list)
    in_progress: bool = False
    active_job_id: str | None = None
