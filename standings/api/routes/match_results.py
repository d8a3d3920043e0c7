from fastapi import APIRouter, Depends, status

from standings.api.deps import get_recalculation_service, http_error
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.jobs import JobOut, MatchResultRequest
from standings.services.errors import RepositoryError

router = APIRouter()


@router.post("", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def record_match_result(
    payload: MatchResultRequest,
    principal=Depends(get_principal),
    service=Depends(get_recalculation_service),
) -> JobOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        job = await service.ingest_match_result(payload.model_dump(), actor=principal.subject)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)
