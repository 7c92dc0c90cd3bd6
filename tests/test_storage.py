"""
tests/test_storage.py

Storage capacity, retention period, extensions and the expiry sweep.
"""

import time
from datetime import timedelta

import pytest

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.storage import RetentionSweeper, VideoArtifact


def _artifact(clock, artifact_id, job_id="job-1", expires_in_days=7, size_bytes=0):
    return VideoArtifact(
        id=artifact_id,
        job_id=job_id,
        title="lecture (original)",
        language_code="ko",
        is_original=True,
        created_at=clock(),
        expires_at=clock() + timedelta(days=expires_in_days) if expires_in_days is not None else None,
        size_bytes=size_bytes,
    )


def test_default_capacity_and_period(policy, guest):
    assert policy.get_storage_capacity(guest) == 1
    assert policy.get_storage_period(guest) == 7


def test_charged_account_gets_more_capacity(policy, ledger, guest):
    ledger.charge_credits(guest, 100)
    assert policy.get_storage_capacity(guest) == 5


@pytest.mark.parametrize("kind,capacity,period", [
    ("plus", 6, 30),
    ("pro", 21, 90),
])
def test_extension_adds_capacity_and_period(policy, guest, kind, capacity, period):
    policy.purchase_extension(guest, kind)
    assert policy.get_storage_capacity(guest) == capacity
    assert policy.get_storage_period(guest) == period


def test_unknown_extension_is_rejected(policy, guest):
    with pytest.raises(ValueError):
        policy.purchase_extension(guest, "ultra")


def test_expired_extension_is_evicted(policy, guest, clock):
    policy.purchase_extension(guest, "plus")
    clock.advance(days=30)
    assert policy.active_extension(guest) is None
    assert policy.get_storage_period(guest) == 7
    assert policy.get_storage_capacity(guest) == 1


def test_calculate_expiry_date_follows_period(policy, guest, clock):
    assert policy.calculate_expiry_date(guest) == clock() + timedelta(days=7)
    policy.purchase_extension(guest, "pro")
    assert policy.calculate_expiry_date(guest) == clock() + timedelta(days=90)


def test_sweep_removes_only_expired(policy, guest, clock, blobs):
    policy.save_artifacts(guest.account_id, [
        _artifact(clock, "old", expires_in_days=1),
        _artifact(clock, "fresh", expires_in_days=10),
        _artifact(clock, "forever", expires_in_days=None),
    ])
    blobs.put("old", b"data")
    clock.advance(days=2)

    assert policy.cleanup_expired_videos() == 1
    assert {a.id for a in policy.list_artifacts(guest)} == {"fresh", "forever"}
    assert not blobs.exists("old")


def test_artifact_expiring_exactly_now_is_kept(policy, guest, clock):
    policy.save_artifacts(guest.account_id, [_artifact(clock, "edge", expires_in_days=1)])
    clock.advance(days=1)
    assert policy.cleanup_expired_videos(guest) == 0
    clock.advance(seconds=1)
    assert policy.cleanup_expired_videos(guest) == 1


def test_reads_never_return_expired_artifacts(policy, guest, clock):
    policy.save_artifacts(guest.account_id, [_artifact(clock, "old", expires_in_days=1)])
    clock.advance(days=3)
    assert policy.get_artifact(guest, "old") is None


def test_sweep_covers_every_account(policy, clock):
    first = AccountContext(account_id="a")
    second = AccountContext(account_id="b")
    policy.save_artifacts(first.account_id, [_artifact(clock, "a1", expires_in_days=1)])
    policy.save_artifacts(second.account_id, [_artifact(clock, "b1", expires_in_days=1)])
    clock.advance(days=2)
    assert policy.cleanup_expired_videos() == 2


def test_quota_reports_usage(policy, guest, clock):
    policy.save_artifacts(guest.account_id, [
        _artifact(clock, "a", size_bytes=512 * 1024 ** 2),
        _artifact(clock, "b", size_bytes=512 * 1024 ** 2),
    ])
    quota = policy.get_storage_quota(guest)
    assert quota.used_gb == 1.0
    assert quota.capacity_gb == 1
    assert quota.extension is None


def test_delete_job_artifacts(policy, guest, clock, blobs):
    policy.save_artifacts(guest.account_id, [
        _artifact(clock, "x1", job_id="job-x"),
        _artifact(clock, "y1", job_id="job-y"),
    ])
    blobs.put("x1", b"data")
    assert policy.delete_job_artifacts(guest.account_id, "job-x") == 1
    assert [a.id for a in policy.list_artifacts(guest)] == ["y1"]
    assert not blobs.exists("x1")


def test_retention_sweeper_runs_on_start_and_interval(policy, guest, clock):
    policy.save_artifacts(guest.account_id, [_artifact(clock, "old", expires_in_days=1)])
    clock.advance(days=2)
    sweeper = RetentionSweeper(policy, interval_seconds=0.05)
    try:
        assert sweeper.start() == 1
        policy.save_artifacts(guest.account_id, [_artifact(clock, "later", expires_in_days=1)])
        clock.advance(days=2)
        deadline = time.monotonic() + 2
        while policy._artifacts(guest) and time.monotonic() < deadline:
            time.sleep(0.02)
        assert policy._artifacts(guest) == []
    finally:
        sweeper.stop()
