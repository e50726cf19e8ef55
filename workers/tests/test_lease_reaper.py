from datetime import datetime, timedelta, timezone

from patch_sync_worker.jobs.lease_reaper import lease_expired


def test_lease_expired_for_past_deadline() -> None:
    now = datetime.now(timezone.utc)
    job = {"status": "claimed", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert lease_expired(job, now=now)


def test_lease_not_expired_for_future_deadline() -> None:
    now = datetime.now(timezone.utc)
    job = {"status": "claimed", "lease_expires_at": (now + timedelta(seconds=30)).isoformat()}
    assert not lease_expired(job, now=now)


def test_zulu_suffix_is_parsed() -> None:
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    job = {"lease_expires_at": "2025-01-01T11:59:00Z"}
    assert lease_expired(job, now=now)


def test_missing_lease_never_expires() -> None:
    assert not lease_expired({"status": "claimed"})
