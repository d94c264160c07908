"""
HTTP surface tests. The app's ImportService dependency is replaced by the
test service so requests run against the per-test SQLite database.
"""

import time

import pytest
from fastapi.testclient import TestClient

from migration_engine.api.dependencies import get_import_service
from migration_engine.main import app
from tests.utils.migration_data import OTHER_TENANT, SAMPLE_ROWS, TENANT, make_csv

client = TestClient(app)
HEADERS = {"X-Tenant-ID": TENANT}
TERMINAL = {"COMPLETED", "COMPLETED_WITH_ERRORS", "FAILED", "CANCELLED", "ROLLED_BACK"}


@pytest.fixture(autouse=True)
def use_test_service(service):
    original_overrides = app.dependency_overrides.copy()
    app.dependency_overrides[get_import_service] = lambda: service
    yield
    app.dependency_overrides = original_overrides


def _wait_for_status(job_id, statuses, timeout=30):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/migrations/jobs/{job_id}", headers=HEADERS).json()["job"]
        if job["status"] in statuses:
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} never reached {statuses}")


def test_root_and_health():
    assert client.get("/").json() == {"message": "Migration Engine API", "version": "0.1.0"}
    health = client.get("/health").json()
    assert health["status"] == "healthy"


def test_tenant_header_is_required():
    response = client.get("/migrations/jobs")

    assert response.status_code == 422


def test_unknown_job_is_404():
    response = client.get("/migrations/jobs/does-not-exist", headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "JobNotFound"


def test_create_upload_and_propose_mapping():
    response = client.post(
        "/migrations/jobs",
        json={"source_system": "custom", "target_entity_type": "case", "options": {"batch_size": 25}},
        headers=HEADERS,
    )
    assert response.status_code == 201
    job = response.json()["job"]
    assert job["status"] == "CREATED"
    assert job["batch_size"] == 25

    response = client.post(
        f"/migrations/jobs/{job['id']}/file",
        files={"file": ("cases.csv", make_csv(SAMPLE_ROWS), "text/csv")},
        headers=HEADERS,
    )
    assert response.status_code == 200
    analysis = response.json()["analysis"]
    assert analysis["record_count"] == 3
    assert analysis["file_format"] == "csv"

    response = client.post(f"/migrations/jobs/{job['id']}/mapping/propose", headers=HEADERS)
    assert response.status_code == 200
    entries = {e["source_column"]: e for e in response.json()["mapping"]["entries"]}
    assert entries["case_number"]["target_field"] == "case_number"
    assert entries["case_number"]["status"] == "AUTO_ACCEPTED"

    listing = client.get("/migrations/jobs", headers=HEADERS).json()
    assert listing["total_count"] == 1
    assert client.get("/migrations/jobs", headers={"X-Tenant-ID": OTHER_TENANT}).json()["total_count"] == 0


def test_invalid_rule_is_rejected(prepare_job):
    job_id = prepare_job()

    response = client.put(
        f"/migrations/jobs/{job_id}/rules/status", json={"config": {"type": "teleport"}}, headers=HEADERS
    )

    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "InvalidMapping"


def test_execute_before_validation_is_a_conflict(prepare_job):
    job_id = prepare_job()

    response = client.post(f"/migrations/jobs/{job_id}/execute", json={}, headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "InvalidJobTransition"


def test_validate_dry_run_execute_and_rollback(prepare_job):
    job_id = prepare_job()

    report = client.post(f"/migrations/jobs/{job_id}/validate", headers=HEADERS).json()
    assert report["error_count"] == 0

    response = client.post(f"/migrations/jobs/{job_id}/execute", json={"dry_run": True}, headers=HEADERS)
    assert response.status_code == 200
    dry_run = response.json()
    assert dry_run["dry_run"] is True
    assert [p["action"] for p in dry_run["previews"]] == ["create", "create", "create"]

    response = client.post(f"/migrations/jobs/{job_id}/execute", json={}, headers=HEADERS)
    assert response.status_code == 202
    assert response.json()["kind"] == "execute"

    job = _wait_for_status(job_id, TERMINAL)
    assert job["status"] == "COMPLETED"
    assert job["imported_count"] == 3

    check = client.get(f"/migrations/jobs/{job_id}/rollback", headers=HEADERS).json()
    assert check["can_rollback"] is True

    response = client.post(f"/migrations/jobs/{job_id}/rollback", json={}, headers=HEADERS)
    assert response.status_code == 202
    assert _wait_for_status(job_id, {"ROLLED_BACK"})["status"] == "ROLLED_BACK"

    report = client.get(f"/migrations/jobs/{job_id}/report", headers=HEADERS).json()
    assert report["counts"]["created"] == 3
    assert report["restore_point"]["status"] == "USED"
