from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SnapshotOut(BaseModel):
    id: int
    league_id: str
    season_id: str
    created_at: datetime
    description: str = ""
    size: int
    checksum: str
    standings_version: int


class SnapshotDetailOut(SnapshotOut):
    payload: list[dict[str, Any]] = Field(default_factory=list)
