from datetime import timedelta

from fastapi import Depends, HTTPException, status

from standings.core.config import Settings, get_settings
from standings.services.audit import AuditLogger
from standings.services.errors import (
    InvariantViolationError,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    SnapshotCorruptedError,
    StandingsError,
)
from standings.services.health import HealthMonitor
from standings.services.queue import JobQueue, RetryPolicy
from standings.services.recalculation import RecalculationService
from standings.services.repository import Repository, get_repository
from standings.services.retention import RetentionPolicy, RetentionSweeper
from standings.services.snapshots import SnapshotManager


def get_snapshot_manager(repository: Repository = Depends(get_repository)) -> SnapshotManager:
    return SnapshotManager(repository)


def get_job_queue(
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
    snapshots: SnapshotManager = Depends(get_snapshot_manager),
) -> JobQueue:
    policy = RetryPolicy(
        max_attempts=max(1, settings.job_max_attempts),
        base_seconds=max(0, settings.job_retry_base_seconds),
        max_seconds=max(0, settings.job_retry_max_seconds),
    )
    return JobQueue(repository, snapshots=snapshots, policy=policy)


def get_recalculation_service(
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
    queue: JobQueue = Depends(get_job_queue),
    snapshots: SnapshotManager = Depends(get_snapshot_manager),
) -> RecalculationService:
    return RecalculationService(
        repository,
        queue=queue,
        snapshots=snapshots,
        head_to_head=settings.head_to_head_enabled,
    )


def get_audit_logger(repository: Repository = Depends(get_repository)) -> AuditLogger:
    return AuditLogger(repository)


def get_health_monitor(
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> HealthMonitor:
    return HealthMonitor(
        repository,
        duration_window=timedelta(hours=settings.health_duration_window_hours),
        recent_window=timedelta(minutes=settings.health_recent_window_minutes),
        pending_backlog_threshold=settings.health_pending_backlog_threshold,
        failed_jobs_threshold=settings.health_failed_jobs_threshold,
    )


def get_retention_sweeper(
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> RetentionSweeper:
    policy = RetentionPolicy(
        job_ttl=timedelta(days=settings.job_ttl_days),
        snapshot_ttl=timedelta(days=settings.snapshot_ttl_days),
        snapshot_min_keep=settings.snapshot_min_keep,
        audit_ttl=timedelta(days=settings.audit_ttl_days),
    )
    return RetentionSweeper(repository, policy=policy)


def http_error(exc: RepositoryError | StandingsError) -> HTTPException:
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (RepositoryConflictError, InvariantViolationError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (RepositoryValidationError, SnapshotCorruptedError)):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc))
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
