from fastapi import APIRouter, Depends, Query, status

from standings.api.deps import get_recalculation_service, http_error
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.jobs import JobOut, TeamOut, TeamsSyncRequest
from standings.services.errors import RepositoryError
from standings.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def sync_teams(
    payload: TeamsSyncRequest,
    principal=Depends(get_principal),
    service=Depends(get_recalculation_service),
) -> JobOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        job = await service.sync_teams(
            payload.league_id,
            payload.season_id,
            [team.model_dump() for team in payload.teams],
            actor=principal.subject,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)


@router.get("", response_model=list[TeamOut])
async def list_teams(
    league_id: str = Query(min_length=1),
    season_id: str = Query(min_length=1),
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> list[TeamOut]:
    ensure_scopes(principal, {"standings:read"})
    try:
        teams = await repository.list_teams(league_id, season_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [TeamOut(**team) for team in teams]
