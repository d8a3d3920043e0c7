from fastapi import APIRouter, Depends

from standings.api.deps import http_error
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.standings import StandingsOut
from standings.services.errors import RepositoryError
from standings.services.repository import get_repository

router = APIRouter()


@router.get("/{league_id}/{season_id}", response_model=StandingsOut)
async def get_standings(
    league_id: str,
    season_id: str,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> StandingsOut:
    ensure_scopes(principal, {"standings:read"})
    try:
        table = await repository.get_standings(league_id, season_id)
        active = await repository.get_active_job(league_id, season_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc

    if table is None:
        table = {"league_id": league_id, "season_id": season_id, "version": 0, "entries": []}
    return StandingsOut(
        **table,
        in_progress=active is not None and active["status"] == "processing",
        active_job_id=active["id"] if active is not None else None,
    )
