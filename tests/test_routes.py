"""
API tests for the job and credit routes.
"""

import pytest
from fastapi.testclient import TestClient

from cgi_workers.main import app
from cgi_workers.pipeline import service as service_module

from conftest import ACCOUNT, OTHER_ACCOUNT, PRODUCT_URL, SCENE_URL, ScriptedAdapter

SECRET = "test-secret"


@pytest.fixture(autouse=True)
def worker_secret(monkeypatch):
    monkeypatch.setenv("WORKER_SHARED_SECRET", SECRET)


@pytest.fixture
def install(monkeypatch, make_service):
    """Install a scripted JobService as the app-wide singleton."""

    def _install(**kwargs):
        svc = make_service(**kwargs)
        monkeypatch.setattr(service_module, "_service", svc)
        return svc

    return _install


def _headers(account=ACCOUNT):
    return {"X-Worker-Secret": SECRET, "X-Account-Id": account}


def _submit_body(content_type="video", **overrides):
    return {
        "content_type": content_type,
        "product_image_url": PRODUCT_URL,
        "scene_image_url": SCENE_URL,
        "description": "perfume on a beach",
        **overrides,
    }


def test_submit_then_poll_until_completed(install):
    svc = install(balance=10)

    # Lifespan shutdown waits for the spawned pipeline to finish
    with TestClient(app) as client:
        response = client.post("/jobs", json=_submit_body(title="Summer"), headers=_headers())
        assert response.status_code == 200
        submitted = response.json()
        assert submitted["status"] == "processing"
        assert submitted["stage"] == "initial"
        assert submitted["progress"] == 0
        assert submitted["credits_reserved"] == 5

    with TestClient(app) as client:
        status = client.get(f"/jobs/{submitted['id']}/status", headers=_headers()).json()
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["title"] == "Summer"
        assert status["artifacts"]["output_url"] == "https://cdn.example.com/primary.mp4"
        assert status["cost_breakdown"]["video_generation"] == 0.40

        listing = client.get("/jobs", headers=_headers()).json()
        assert [j["id"] for j in listing] == [submitted["id"]]

        download = client.get(f"/jobs/{submitted['id']}/download", headers=_headers()).json()
        assert download["download_url"] == "https://cdn.example.com/primary.mp4"
        assert download["preview_url"] == "https://cdn.example.com/cgi.jpg"

        assert client.get("/credits", headers=_headers()).json()["credits"] == 5
    assert svc.get_balance(ACCOUNT) == 5


def test_insufficient_credits_is_402(install):
    svc = install(balance=3)
    with TestClient(app) as client:
        response = client.post("/jobs", json=_submit_body(), headers=_headers())
    assert response.status_code == 402
    assert svc.get_balance(ACCOUNT) == 3
    assert svc.list_jobs(ACCOUNT) == []


@pytest.mark.parametrize("body", [
    _submit_body(content_type="gif"),
    _submit_body(product_image_url=None),
    _submit_body(scene_image_url=""),
    {"product_image_url": PRODUCT_URL, "scene_image_url": SCENE_URL},
])
def test_validation_is_400(install, body):
    svc = install(balance=10)
    with TestClient(app) as client:
        response = client.post("/jobs", json=body, headers=_headers())
    assert response.status_code == 400
    assert svc.get_balance(ACCOUNT) == 10


def test_foreign_job_is_404(install):
    install(balance=10)
    with TestClient(app) as client:
        job_id = client.post("/jobs", json=_submit_body("image"), headers=_headers()).json()["id"]
        response = client.get(f"/jobs/{job_id}/status", headers=_headers(OTHER_ACCOUNT))
        missing = client.get("/jobs/does-not-exist/status", headers=_headers())
    assert response.status_code == 404
    assert missing.status_code == 404
    assert response.json() == missing.json()


def test_failed_job_download_is_409_and_refunded(install):
    svc = install(balance=10, imager=ScriptedAdapter("imager", 0.04, RuntimeError("fal.ai down")))
    with TestClient(app) as client:
        job_id = client.post("/jobs", json=_submit_body(), headers=_headers()).json()["id"]

    with TestClient(app) as client:
        status = client.get(f"/jobs/{job_id}/status", headers=_headers()).json()
        download = client.get(f"/jobs/{job_id}/download", headers=_headers())

    assert status["status"] == "failed"
    assert "fal.ai down" in status["error"]
    assert download.status_code == 409
    assert svc.get_balance(ACCOUNT) == 10


def test_missing_secret_is_401(install):
    install()
    with TestClient(app) as client:
        response = client.get("/jobs", headers={"X-Account-Id": ACCOUNT})
    assert response.status_code == 401


def test_missing_account_is_401(install):
    install()
    with TestClient(app) as client:
        response = client.get("/jobs", headers={"X-Worker-Secret": SECRET})
    assert response.status_code == 401


def test_grant_credits(install):
    svc = install(balance=0)
    with TestClient(app) as client:
        ok = client.post("/internal/credits/grant", json={"account_id": ACCOUNT, "amount": 10},
                         headers={"X-Worker-Secret": SECRET})
        bad = client.post("/internal/credits/grant", json={"account_id": ACCOUNT, "amount": 0},
                          headers={"X-Worker-Secret": SECRET})
    assert ok.status_code == 200
    assert ok.json() == {"account_id": ACCOUNT, "credits": 10}
    assert bad.status_code == 400
    assert svc.get_balance(ACCOUNT) == 10


def test_health_is_public(install):
    install()
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["storage"] == {"ledger": "memory", "job_store": "memory"}
    assert body["jobs"] == {"processing": 0, "completed": 0, "failed": 0}


def test_metrics_counts_submissions(install):
    install(balance=10)
    with TestClient(app) as client:
        client.post("/jobs", json=_submit_body("image"), headers=_headers())
    with TestClient(app) as client:
        snapshot = client.get("/metrics", headers=_headers()).json()
    assert snapshot["counters"]["requests.submit"] == 1
    assert snapshot["counters"]["jobs.completed"] == 1
    assert snapshot["jobs"]["success_rate"] == 1.0
