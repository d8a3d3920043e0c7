from fastapi import APIRouter, Depends

from standings.api.deps import get_snapshot_manager, http_error
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.snapshots import SnapshotDetailOut, SnapshotOut
from standings.services.errors import RepositoryError

router = APIRouter()


@router.get("/{snapshot_id}", response_model=SnapshotDetailOut)
async def get_snapshot(
    snapshot_id: int,
    principal=Depends(get_principal),
    snapshots=Depends(get_snapshot_manager),
) -> SnapshotDetailOut:
    ensure_scopes(principal, {"standings:read"})
    try:
        snapshot = await snapshots.get(snapshot_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SnapshotDetailOut(**snapshot)


@router.get("/{league_id}/{season_id}", response_model=list[SnapshotOut])
async def list_snapshots(
    league_id: str,
    season_id: str,
    principal=Depends(get_principal),
    snapshots=Depends(get_snapshot_manager),
) -> list[SnapshotOut]:
    ensure_scopes(principal, {"standings:read"})
    try:
        rows = await snapshots.list(league_id, season_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [SnapshotOut(**row) for row in rows]
