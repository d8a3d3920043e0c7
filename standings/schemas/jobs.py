from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from standings.schemas.standings import CalculationWarningOut, StandingsEntryOut, StandingsOut

JobStatus = Literal["pending", "processing", "completed", "failed"]


class JobMetadataOut(BaseModel):
    reasons: list[str] = Field(default_factory=list)
    snapshot_id: int | None = None
    rerun_requested: bool = False


class JobOut(BaseModel):
    id: str
    league_id: str
    season_id: str
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_run_at: datetime
    lease_expires_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    metadata: JobMetadataOut = Field(default_factory=JobMetadataOut)
    result: dict[str, Any] | None = None


class EnqueueRequest(BaseModel):
    league_id: str = Field(min_length=1, max_length=200)
    season_id: str = Field(min_length=1, max_length=200)
    priority: int = Field(default=2, ge=1, le=4)
    reason: str | None = Field(default=None, max_length=500)


class ClaimRequest(BaseModel):
    lease_seconds: int | None = Field(default=None, ge=1, le=3600)


class MatchOut(BaseModel):
    id: str
    league_id: str
    season_id: str
    home_team_id: str
    away_team_id: str
    home_goals: int | None = None
    away_goals: int | None = None
    status: str = "scheduled"
    kickoff_at: datetime | None = None


class TeamOut(BaseModel):
    id: str
    name: str
    league_id: str
    season_id: str


class WorkPacketOut(BaseModel):
    job: JobOut
    snapshot_id: int
    standings_version: int
    matches: list[MatchOut] = Field(default_factory=list)
    teams: list[TeamOut] = Field(default_factory=list)
    head_to_head: bool = False


class ResultRequest(BaseModel):
    entries: list[StandingsEntryOut]
    warnings: list[CalculationWarningOut] = Field(default_factory=list)
    expected_version: int = Field(ge=0)


class FailureRequest(BaseModel):
    error: str = Field(min_length=1, max_length=2000)
    fatal: bool = False


class CommitOut(BaseModel):
    job: JobOut
    standings: StandingsOut


class ReapRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class ReapOut(BaseModel):
    reclaimed: int


class MatchResultRequest(BaseModel):
    id: str = Field(min_length=1, max_length=200)
    league_id: str = Field(min_length=1, max_length=200)
    season_id: str = Field(min_length=1, max_length=200)
    home_team_id: str = Field(min_length=1)
    away_team_id: str = Field(min_length=1)
    home_goals: int | None = None
    away_goals: int | None = None
    status: str = "finished"
    kickoff_at: datetime | None = None


class TeamIn(BaseModel):
    id: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=200)


class TeamsSyncRequest(BaseModel):
    league_id: str = Field(min_length=1, max_length=200)
    season_id: str = Field(min_length=1, max_length=200)
    teams: list[TeamIn] = Field(min_length=1, max_length=500)
