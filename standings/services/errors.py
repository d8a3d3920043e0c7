"""Failure taxonomy for the recalculation pipeline.

Transient errors are retried within the job's attempt budget. Fatal errors
end the job immediately and trigger a rollback. Data errors describe one bad
match; the calculation engine catches them and reports the match as a
warning instead of failing the job.
"""

from __future__ import annotations


class StandingsError(Exception):
    """Base error for standings automation."""

    kind = "error"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class TransientError(StandingsError):
    """I/O timeout, lock conflict or lease race. Safe to retry."""

    kind = "transient"


class DataError(StandingsError):
    """Invalid or incomplete match data."""

    kind = "data"

    def __init__(self, message: str, *, code: str, match_id: str | None = None) -> None:
        super().__init__(message, details={"code": code, "match_id": match_id})
        self.code = code
        self.match_id = match_id


class FatalError(StandingsError):
    """Corrupted snapshot or a broken queue invariant."""

    kind = "fatal"


class SnapshotCorruptedError(FatalError):
    pass


class InvariantViolationError(FatalError):
    pass


def classify_error(exc: BaseException) -> str:
    """Return the taxonomy kind for ``exc``.

    Exceptions outside the taxonomy (a dead process pool child raising
    ``BrokenExecutor``, an ``OSError`` from a socket, a bug in a dependency)
    are infrastructure faults and count as transient; the attempt budget
    bounds how often they are retried.
    """
    if isinstance(exc, StandingsError):
        return exc.kind
    return TransientError.kind


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class LockConflictError(RepositoryConflictError, TransientError):
    """Raised when another worker claimed the job first."""


class VersionConflictError(RepositoryConflictError, TransientError):
    """Raised when the standings table moved past the expected version."""
