from datetime import datetime

from pydantic import BaseModel, Field


class ForceEnqueueRequest(BaseModel):
    league_id: str = Field(min_length=1, max_length=200)
    season_id: str = Field(min_length=1, max_length=200)
    priority: int = Field(default=4, ge=1, le=4)
    reason: str | None = Field(default=None, max_length=500)


class RetentionReportOut(BaseModel):
    ran_at: datetime
    jobs_deleted: int
    snapshots_deleted: int
    audit_logs_deleted: int


class QueuePauseRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class QueueStateOut(BaseModel):
    paused: bool
    reason: str | None = None
    changed_by: str | None = None
    changed_at: datetime | None = None


class SnapshotCreateRequest(BaseModel):
    description: str = Field(default="", max_length=500)
