from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from standings.services.audit import AuditLogger
from standings.services.queue import JobQueue, RetryPolicy
from standings.services.recalculation import RecalculationService
from standings.services.snapshots import SnapshotManager
from standings.services.store import InMemoryRepository


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def snapshots(repository: InMemoryRepository, clock: FrozenClock) -> SnapshotManager:
    return SnapshotManager(repository, clock=clock)


@pytest.fixture
def queue(repository: InMemoryRepository, snapshots: SnapshotManager, clock: FrozenClock) -> JobQueue:
    return JobQueue(
        repository,
        snapshots=snapshots,
        policy=RetryPolicy(max_attempts=3, base_seconds=2, max_seconds=30),
        clock=clock,
    )


@pytest.fixture
def recalculation(
    repository: InMemoryRepository,
    queue: JobQueue,
    snapshots: SnapshotManager,
    clock: FrozenClock,
) -> RecalculationService:
    return RecalculationService(repository, queue=queue, snapshots=snapshots, clock=clock)


@pytest.fixture
def audit(repository: InMemoryRepository, clock: FrozenClock) -> AuditLogger:
    return AuditLogger(repository, clock=clock)
