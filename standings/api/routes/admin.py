from fastapi import APIRouter, Depends, status

from standings.api.deps import get_job_queue, get_retention_sweeper, get_snapshot_manager, http_error
from standings.core.config import Settings, get_settings
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.admin import (
    ForceEnqueueRequest,
    QueuePauseRequest,
    QueueStateOut,
    RetentionReportOut,
    SnapshotCreateRequest,
)
from standings.schemas.jobs import JobOut
from standings.schemas.snapshots import SnapshotOut
from standings.schemas.standings import StandingsOut
from standings.services.errors import RepositoryError, StandingsError

router = APIRouter()


@router.post("/jobs/force-enqueue", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def force_enqueue(
    payload: ForceEnqueueRequest,
    principal=Depends(get_principal),
    queue=Depends(get_job_queue),
) -> JobOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        job = await queue.enqueue(
            payload.league_id,
            payload.season_id,
            priority=payload.priority,
            reason=payload.reason or f"manual recalculation by {principal.subject}",
            actor=principal.subject,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)


@router.post("/jobs/{job_id}/retry", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def retry_failed_job(job_id: str, principal=Depends(get_principal), queue=Depends(get_job_queue)) -> JobOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        job = await queue.retry_failed(job_id, actor=principal.subject)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)


@router.get("/queue", response_model=QueueStateOut)
async def queue_state(principal=Depends(get_principal), queue=Depends(get_job_queue)) -> QueueStateOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        state = await queue.state()
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return QueueStateOut(**state)


@router.post("/queue/pause", response_model=QueueStateOut)
async def pause_queue(
    payload: QueuePauseRequest | None = None,
    principal=Depends(get_principal),
    queue=Depends(get_job_queue),
) -> QueueStateOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        state = await queue.pause(actor=principal.subject, reason=payload.reason if payload else None)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return QueueStateOut(**state)


@router.post("/queue/resume", response_model=QueueStateOut)
async def resume_queue(principal=Depends(get_principal), queue=Depends(get_job_queue)) -> QueueStateOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        state = await queue.resume(actor=principal.subject)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return QueueStateOut(**state)


@router.post("/snapshots/{league_id}/{season_id}", response_model=SnapshotOut, status_code=status.HTTP_201_CREATED)
async def create_snapshot(
    league_id: str,
    season_id: str,
    payload: SnapshotCreateRequest | None = None,
    principal=Depends(get_principal),
    snapshots=Depends(get_snapshot_manager),
) -> SnapshotOut:
    ensure_scopes(principal, {"admin:write"})
    description = payload.description if payload and payload.description else f"manual snapshot by {principal.subject}"
    try:
        snapshot = await snapshots.snapshot(league_id, season_id, description=description)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SnapshotOut(**snapshot)


@router.delete("/snapshots/{snapshot_id}", response_model=SnapshotOut)
async def delete_snapshot(
    snapshot_id: int,
    principal=Depends(get_principal),
    snapshots=Depends(get_snapshot_manager),
    settings: Settings = Depends(get_settings),
) -> SnapshotOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        snapshot = await snapshots.delete(snapshot_id, min_keep=settings.snapshot_min_keep)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SnapshotOut(**snapshot)


@router.post("/snapshots/{snapshot_id}/restore", response_model=StandingsOut)
async def restore_snapshot(
    snapshot_id: int,
    principal=Depends(get_principal),
    snapshots=Depends(get_snapshot_manager),
) -> StandingsOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        table = await snapshots.restore(snapshot_id, actor=principal.subject)
    except (RepositoryError, StandingsError) as exc:
        raise http_error(exc) from exc
    return StandingsOut(**table)


@router.post("/retention/run", response_model=RetentionReportOut)
async def run_retention(principal=Depends(get_principal), sweeper=Depends(get_retention_sweeper)) -> RetentionReportOut:
    ensure_scopes(principal, {"admin:write"})
    try:
        report = await sweeper.run()
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return RetentionReportOut(**report.to_dict())
