from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class QueueHealthOut(BaseModel):
    status: str
    priority: int
    count: int
    avg_duration_seconds: float | None = None
    oldest_created_at: datetime | None = None
    newest_created_at: datetime | None = None


class ComponentHealthOut(BaseModel):
    component: Literal["jobs", "snapshots", "standings"]
    total: int
    pending: int = 0
    processing: int = 0
    failed: int = 0
    recent: int = 0


class HealthSummaryOut(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    issues: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)
