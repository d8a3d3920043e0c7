from fastapi import APIRouter, Depends, Query, Response, status

from standings.api.deps import get_job_queue, get_recalculation_service, http_error
from standings.core.config import Settings, get_settings
from standings.core.security import ensure_scopes, get_principal
from standings.schemas.jobs import (
    ClaimRequest,
    CommitOut,
    EnqueueRequest,
    FailureRequest,
    JobOut,
    JobStatus,
    ReapOut,
    ReapRequest,
    ResultRequest,
    WorkPacketOut,
)
from standings.schemas.standings import StandingsOut
from standings.services.errors import RepositoryError, StandingsError

router = APIRouter()


@router.post("", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(payload: EnqueueRequest, principal=Depends(get_principal), queue=Depends(get_job_queue)) -> JobOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        job = await queue.enqueue(
            payload.league_id,
            payload.season_id,
            priority=payload.priority,
            reason=payload.reason,
            actor=principal.subject,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    principal=Depends(get_principal),
    queue=Depends(get_job_queue),
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    league_id: str | None = Query(default=None, min_length=1),
    season_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    ensure_scopes(principal, {"jobs:read"})
    try:
        rows = await queue.list(
            status=status_filter,
            league_id=league_id,
            season_id=season_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [JobOut(**row) for row in rows]


@router.post("/claim", response_model=WorkPacketOut, responses={204: {"description": "no claimable job"}})
async def claim_job(
    payload: ClaimRequest,
    principal=Depends(get_principal),
    service=Depends(get_recalculation_service),
    settings: Settings = Depends(get_settings),
):
    ensure_scopes(principal, {"jobs:write"})
    try:
        packet = await service.claim(principal.subject, payload.lease_seconds or settings.job_lease_seconds)
    except (RepositoryError, StandingsError) as exc:
        raise http_error(exc) from exc
    if packet is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return WorkPacketOut(
        job=packet.job,
        snapshot_id=packet.snapshot_id,
        standings_version=packet.standings_version,
        matches=packet.matches,
        teams=packet.teams,
        head_to_head=packet.head_to_head,
    )


@router.post("/reap-expired", response_model=ReapOut)
async def reap_expired_jobs(
    payload: ReapRequest,
    principal=Depends(get_principal),
    queue=Depends(get_job_queue),
) -> ReapOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        reclaimed = await queue.reclaim(payload.limit)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return ReapOut(reclaimed=reclaimed)


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, principal=Depends(get_principal), queue=Depends(get_job_queue)) -> JobOut:
    ensure_scopes(principal, {"jobs:read"})
    try:
        job = await queue.get(job_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)


@router.delete("/{job_id}", response_model=JobOut)
async def cancel_job(job_id: str, principal=Depends(get_principal), queue=Depends(get_job_queue)) -> JobOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        job = await queue.cancel(job_id, actor=principal.subject)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return JobOut(**job)


@router.post("/{job_id}/result", response_model=CommitOut)
async def submit_job_result(
    job_id: str,
    payload: ResultRequest,
    principal=Depends(get_principal),
    service=Depends(get_recalculation_service),
) -> CommitOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        job, table = await service.submit_result(
            job_id,
            principal.subject,
            entries=[entry.model_dump() for entry in payload.entries],
            warnings=[warning.model_dump() for warning in payload.warnings],
            expected_version=payload.expected_version,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return CommitOut(job=JobOut(**job), standings=StandingsOut(**table))


@router.post("/{job_id}/failure", response_model=JobOut)
async def report_job_failure(
    job_id: str,
    payload: FailureRequest,
    principal=Depends(get_principal),
    service=Depends(get_recalculation_service),
) -> JobOut:
    ensure_scopes(principal, {"jobs:write"})
    try:
        job = await service.report_failure(job_id, principal.subject, payload.error, fatal=payload.fatal)
    except (RepositoryError, StandingsError) as exc:
        raise http_error(exc) from exc
    return JobOut(**job)
