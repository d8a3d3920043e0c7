from fastapi import APIRouter, Depends

from standings.api.deps import get_health_monitor, http_error
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.monitoring import ComponentHealthOut, HealthSummaryOut, QueueHealthOut
from standings.services.clock import utcnow
from standings.services.errors import RepositoryError

router = APIRouter()


@router.get("/queue", response_model=list[QueueHealthOut])
async def queue_health(principal=Depends(get_principal), monitor=Depends(get_health_monitor)) -> list[QueueHealthOut]:
    ensure_scopes(principal, {"jobs:read"})
    try:
        rows = await monitor.queue(utcnow())
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [QueueHealthOut(**row.to_dict()) for row in rows]


@router.get("/system", response_model=list[ComponentHealthOut])
async def system_health(
    principal=Depends(get_principal),
    monitor=Depends(get_health_monitor),
) -> list[ComponentHealthOut]:
    ensure_scopes(principal, {"jobs:read"})
    try:
        rows = await monitor.system(utcnow())
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [ComponentHealthOut(**row.to_dict()) for row in rows]


@router.get("/summary", response_model=HealthSummaryOut)
async def health_summary(principal=Depends(get_principal), monitor=Depends(get_health_monitor)) -> HealthSummaryOut:
    ensure_scopes(principal, {"jobs:read"})
    try:
        summary = await monitor.summary(utcnow())
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return HealthSummaryOut(**summary.to_dict())
