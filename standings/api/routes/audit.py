from fastapi import APIRouter, Depends, HTTPException, Query, status

from standings.api.deps import get_audit_logger, http_error
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.audit import AuditAction, AuditLogOut
from standings.services.errors import RepositoryError

router = APIRouter()


@router.get("", response_model=list[AuditLogOut])
async def list_audit_logs(
    principal=Depends(get_principal),
    audit=Depends(get_audit_logger),
    job_id: str | None = Query(default=None, min_length=1),
    league_id: str | None = Query(default=None, min_length=1),
    season_id: str | None = Query(default=None, min_length=1),
    action: AuditAction | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditLogOut]:
    ensure_scopes(principal, {"standings:read"})
    try:
        rows = await audit.list(
            job_id=job_id,
            league_id=league_id,
            season_id=season_id,
            action=action,
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [AuditLogOut(**row) for row in rows]


@router.get("/explain/{league_id}/{season_id}", response_model=AuditLogOut)
async def explain_standings(
    league_id: str,
    season_id: str,
    principal=Depends(get_principal),
    audit=Depends(get_audit_logger),
) -> AuditLogOut:
    ensure_scopes(principal, {"standings:read"})
    try:
        entry = await audit.explain(league_id, season_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no audit entry produced the current table")
    return AuditLogOut(**entry)
