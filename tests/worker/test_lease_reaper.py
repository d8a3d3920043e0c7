from datetime import datetime, timedelta, timezone

from standings.worker.lease_reaper import lease_expired, lease_remaining_seconds


def test_lease_expired_when_deadline_passed() -> None:
    now = datetime.now(timezone.utc)
    job = {"status": "processing", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert lease_expired(job, now=now)


def test_lease_not_expired_without_deadline() -> None:
    assert not lease_expired({"status": "pending", "lease_expires_at": None})


def test_remaining_seconds_accepts_zulu_timestamps() -> None:
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    job = {"lease_expires_at": "2024-03-01T12:00:45Z"}
    assert lease_remaining_seconds(job, now=now) == 45.0
    assert lease_remaining_seconds(job, now=now + timedelta(minutes=5)) == 0.0
    assert lease_remaining_seconds({}, now=now) is None
