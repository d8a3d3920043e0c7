"""Append-only audit trail of committed standings changes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from standings.services.calculation import table_hash
from standings.services.clock import utcnow
from standings.services.errors import RepositoryValidationError

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = frozenset(
    {"standings_committed", "standings_restored", "job_failed", "job_cancelled", "job_retried"}
)
ACTOR_TYPES = frozenset({"system", "manual"})


@dataclass(slots=True)
class AuditRecord:
    league_id: str
    season_id: str
    action: str
    actor_type: str = "system"
    actor_id: str | None = None
    job_id: str | None = None
    before_hash: str | None = None
    after_hash: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if self.action not in AUDIT_ACTIONS:
            raise RepositoryValidationError(f"unknown audit action: {self.action}")
        if self.actor_type not in ACTOR_TYPES:
            raise RepositoryValidationError("actor_type must be one of: system, manual")
        if not self.league_id or not self.season_id:
            raise RepositoryValidationError("league_id and season_id are required")

    def to_row(self, *, entry_id: int, created_at: datetime) -> dict[str, Any]:
        return {
            "id": entry_id,
            "created_at": created_at,
            "job_id": self.job_id,
            "league_id": self.league_id,
            "season_id": self.season_id,
            "action": self.action,
            "before_hash": self.before_hash,
            "after_hash": self.after_hash,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "details": dict(self.details),
        }


class AuditLogger:
    def __init__(self, repository: Any, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self._clock = clock

    async def log(self, record: AuditRecord) -> dict[str, Any]:
        record.validate()
        entry = await self.repository.insert_audit_log(record, now=self._clock())
        logger.info(
            "audit %s league=%s season=%s job=%s actor=%s:%s",
            record.action,
            record.league_id,
            record.season_id,
            record.job_id,
            record.actor_type,
            record.actor_id,
        )
        return entry

    async def list(
        self,
        *,
        job_id: str | None = None,
        league_id: str | None = None,
        season_id: str | None = None,
        action: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if action is not None and action not in AUDIT_ACTIONS:
            raise RepositoryValidationError(f"unknown audit action: {action}")
        return await self.repository.list_audit_logs(
            job_id=job_id,
            league_id=league_id,
            season_id=season_id,
            action=action,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
        )

    async def explain(self, league_id: str, season_id: str) -> dict[str, Any] | None:
        """Return the audit entry that produced the current table, if any."""
        table = await self.repository.get_standings(league_id, season_id)
        if table is None:
            return None
        return await self.repository.find_audit_log_by_after_hash(
            league_id=league_id,
            season_id=season_id,
            after_hash=table_hash(table["entries"]),
        )
