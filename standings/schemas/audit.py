from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AuditAction = Literal["standings_committed", "standings_restored", "job_failed", "job_cancelled", "job_retried"]


class AuditLogOut(BaseModel):
    id: int
    created_at: datetime
    job_id: str | None = None
    league_id: str
    season_id: str
    action: AuditAction
    before_hash: str | None = None
    after_hash: str | None = None
    actor_type: Literal["system", "manual"]
    actor_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
