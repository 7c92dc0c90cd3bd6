"""
tests/test_api.py

HTTP surface over the ledger, lifecycle and storage policy.
"""

import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.services import build_services
from ax2_studio.core.store import InMemoryLedgerStore
from ax2_studio.main import create_app, get_duration_probe

GUEST = {"X-Device-Id": "device-1"}
VIDEO = {"video": ("lecture.mp4", b"not really a video", "video/mp4")}


@pytest.fixture
def duration():
    return {"seconds": 278.0}


@pytest.fixture
def services(settings):
    return build_services(replace(settings, max_jobs_per_minute=3), store=InMemoryLedgerStore())


@pytest.fixture
def client(services, duration):
    app = create_app(services)
    app.dependency_overrides[get_duration_probe] = lambda: (lambda path: duration["seconds"])
    with TestClient(app) as client:
        yield client


def _wait_for(services, job_id, device="device-1"):
    return services.lifecycle.wait(AccountContext(account_id=device), job_id, timeout=5)


def test_health(client):
    assert client.get("/api/health").json() == {"ok": True, "service": "ax2-studio"}


def test_login_grants_welcome_once_per_pool(client):
    first = client.post("/api/auth/login", json={}, headers=GUEST).json()
    assert first["welcome_granted"] is True
    assert first["pool"] == "anonymous"
    assert first["balance"] == 100

    again = client.post("/api/auth/login", json={}, headers=GUEST).json()
    assert again["welcome_granted"] is False

    member = client.post("/api/auth/login", json={"email": "User@Example.com"}, headers=GUEST).json()
    assert member["logged_in"] is True
    assert member["pool"] == "signed_in"
    assert member["balance"] == 100


def test_balance_estimate_and_charge(client):
    assert client.get("/api/credits/balance", headers=GUEST).json() == {"pool": "anonymous", "balance": 100}

    preview = client.get("/api/credits/estimate", params={"duration": 278, "languages": 2}, headers=GUEST).json()
    assert preview == {"required_credits": 66, "balance": 100, "affordable": True}

    charged = client.post("/api/credits/charge", json={"amount": 50}, headers=GUEST)
    assert charged.json()["balance"] == 150
    assert client.post("/api/credits/charge", json={"amount": 0}, headers=GUEST).status_code == 422

    history = client.get("/api/credits/history", headers=GUEST).json()
    assert [(h["type"], h["amount"]) for h in history] == [("charge", 50), ("charge", 100)]


def test_free_trial_eligibility(client):
    ok = client.get("/api/free-trial/eligibility", params={"duration": 300, "languages": 1}, headers=GUEST).json()
    assert ok == {"eligible": True, "reason": None}
    too_long = client.get("/api/free-trial/eligibility", params={"duration": 900, "languages": 1}, headers=GUEST)
    assert too_long.json()["eligible"] is False


def test_job_round_trip_and_download(client, services):
    response = client.post(
        "/api/jobs", files=VIDEO, data={"original_lang": "ko", "target_langs": "en"}, headers=GUEST
    )
    assert response.status_code == 200
    job_id = response.json()["id"]
    assert response.json()["status"] == "processing"
    _wait_for(services, job_id)

    detail = client.get(f"/api/jobs/{job_id}", headers=GUEST).json()
    assert detail["status"] == "completed"
    assert detail["progress"] == 100.0
    assert detail["required_credits"] == 56
    assert client.get("/api/credits/balance", headers=GUEST).json()["balance"] == 44

    artifacts = client.get("/api/artifacts", headers=GUEST).json()
    assert len(artifacts) == 2
    artifact = artifacts[0]
    assert artifact["download_url"]

    deadline = time.monotonic() + 5
    while not services.blobs.exists(artifact["id"]) and time.monotonic() < deadline:
        time.sleep(0.02)
    download = client.get(artifact["download_url"])
    assert download.status_code == 200
    assert download.content == b"not really a video"


def test_download_rejects_bad_token(client):
    assert client.get("/api/artifacts/abc/download", params={"token": "nope"}).status_code == 403


def test_free_trial_artifacts_are_not_downloadable(client, services):
    response = client.post(
        "/api/jobs",
        files=VIDEO,
        data={"original_lang": "ko", "target_langs": "en", "use_free_trial": "true"},
        headers=GUEST,
    )
    _wait_for(services, response.json()["id"])

    artifacts = client.get("/api/artifacts", headers=GUEST).json()
    assert artifacts and all(a["is_free_trial"] and a["download_url"] is None for a in artifacts)
    assert client.get("/api/credits/balance", headers=GUEST).json()["balance"] == 200 - 56


def test_insufficient_credits_is_payment_required(client, duration):
    duration["seconds"] = 6000.0
    response = client.post("/api/jobs", files=VIDEO, data={"target_langs": "en"}, headers=GUEST)
    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "INSUFFICIENT_CREDITS"
    assert client.get("/api/credits/balance", headers=GUEST).json()["balance"] == 100


def test_unsupported_upload_type(client):
    files = {"video": ("notes.txt", b"hello", "text/plain")}
    assert client.post("/api/jobs", files=files, headers=GUEST).status_code == 400


def test_job_submissions_are_rate_limited(client, duration):
    duration["seconds"] = 6.0
    codes = [client.post("/api/jobs", files=VIDEO, headers=GUEST).status_code for _ in range(4)]
    assert codes == [200, 200, 200, 429]


def test_unknown_job_is_not_found(client):
    response = client.post("/api/jobs/missing/cancel", headers=GUEST)
    assert response.status_code == 404
    assert response.json()["code"] == "JOB_NOT_FOUND"


def test_cancel_finished_job_conflicts(client, services, duration):
    duration["seconds"] = 6.0
    job_id = client.post("/api/jobs", files=VIDEO, headers=GUEST).json()["id"]
    _wait_for(services, job_id)
    response = client.post(f"/api/jobs/{job_id}/cancel", headers=GUEST)
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_JOB_STATE"


def test_storage_quota_and_extension(client):
    quota = client.get("/api/storage/quota", headers=GUEST).json()
    assert quota == {"capacity_gb": 1, "period_days": 7, "used_gb": 0.0, "extension": None}

    bought = client.post("/api/storage/extensions", json={"type": "pro"}, headers=GUEST)
    assert bought.json()["type"] == "pro"
    quota = client.get("/api/storage/quota", headers=GUEST).json()
    assert (quota["capacity_gb"], quota["period_days"], quota["extension"]) == (21, 90, "pro")

    assert client.post("/api/storage/extensions", json={"type": "mega"}, headers=GUEST).status_code == 422


def test_manual_sweep(client):
    assert client.post("/api/storage/sweep").json() == {"evicted": 0}


def test_startup_settles_unfinished_reservations(services, duration):
    device = AccountContext(account_id="device-1")
    services.ledger.ensure_welcome_grant(device)
    services.ledger.reserve(device, "lost-job", 40)

    app = create_app(services)
    app.dependency_overrides[get_duration_probe] = lambda: (lambda path: duration["seconds"])
    with TestClient(app) as client:
        assert client.get("/api/credits/balance", headers=GUEST).json()["balance"] == 100
