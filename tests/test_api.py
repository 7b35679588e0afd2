"""Tests for the HTTP API."""

import sqlite3
import time

import pytest
import tempfile
from pathlib import Path
from fastapi.testclient import TestClient

from lead_lifecycle.api.main import create_app
from lead_lifecycle.journeys import JourneyDefinitionStore
from lead_lifecycle.service import LifecycleService
from lead_lifecycle.storage import Lead, LifecycleDatabase

TENANT = {"X-Tenant-ID": "t1"}
ADVISOR = {"X-Tenant-ID": "t1", "X-Actor-ID": "advisor-1"}


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def service(temp_data_dir):
    service = LifecycleService(
        LifecycleDatabase(temp_data_dir / "lifecycle.db"),
        JourneyDefinitionStore(temp_data_dir / "journeys.json"),
    )
    service.seed_templates("t1")
    for lead_id in ("L1", "L2", "L3"):
        service.add_lead("t1", Lead(id=lead_id, tenant_id="t1", email=f"{lead_id.lower()}@example.com"))
    return service


@pytest.fixture
def client(service):
    return TestClient(create_app(service, start_sweeper=False))


def enroll(client, lead_id="L1", journey_id="master-domestic"):
    response = client.post("/v1/enrollments", json={"lead_id": lead_id, "journey_id": journey_id},
                           headers=TENANT)
    assert response.status_code == 201
    return response.json()


class TestTenantScoping:
    """Tests for tenant headers and isolation."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_tenant(self, client):
        response = client.get("/v1/journeys")
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_tenant_isolation(self, client):
        """Another tenant cannot see or score the first tenant's data."""
        enrollment = enroll(client)
        other = {"X-Tenant-ID": "t2"}

        assert client.get("/v1/journeys", headers=other).json()["journeys"] == []
        assert client.get(f"/v1/enrollments/{enrollment['id']}", headers=other).status_code == 400
        assert client.post("/v1/scores/L1", headers=other).status_code == 400


class TestScoring:
    """Tests for model and score routes."""

    def test_create_model_then_score(self, client):
        response = client.post("/v1/models", json={"weights": {"has_email": 0.5}, "activate": True},
                               headers=TENANT)
        assert response.status_code == 201
        assert response.json()["version"] == 1

        result = client.post("/v1/scores/L1", headers=TENANT).json()
        assert result["score"] == 55
        assert result["tier"] == "warm"
        assert result["model_version"] == 1
        assert result["breakdown"][0]["feature"] == "has_email"

        history = client.get("/v1/scores/L1/history", headers=TENANT).json()["history"]
        assert [h["score"] for h in history] == [55]

    def test_score_without_model(self, client):
        assert client.post("/v1/scores/L1", headers=TENANT).json()["score"] == 50

    def test_unknown_lead(self, client):
        response = client.post("/v1/scores/nobody", headers=TENANT)
        assert response.status_code == 400

    def test_storage_failure_is_opaque(self, client, service, monkeypatch):
        """Internal failures map to 503 without leaking the cause."""
        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(service.ledger, "compute_score", locked)
        response = client.post("/v1/scores/L1", headers=TENANT)
        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "operation_failed"
        assert body["detail"] == "operation failed, retry"
        assert "locked" not in response.text


class TestEnrollments:
    """Tests for enrollment routes."""

    def test_duplicate_enrollment(self, client):
        enroll(client)
        response = client.post("/v1/enrollments", json={"lead_id": "L1", "journey_id": "master-domestic"},
                               headers=TENANT)
        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_active_enrollment"

    def test_manual_advance_requires_actor(self, client):
        enrollment = enroll(client)
        url = f"/v1/enrollments/{enrollment['id']}/advance"

        assert client.post(url, json={}, headers=TENANT).status_code == 400

        response = client.post(url, json={"note": "Called the lead"}, headers=ADVISOR)
        assert response.status_code == 200
        assert response.json()["current_stage_index"] == 1
        assert response.json()["version"] == 1

    def test_stale_version(self, client):
        enrollment = enroll(client)
        url = f"/v1/enrollments/{enrollment['id']}/advance"
        client.post(url, json={"expected_version": 0}, headers=ADVISOR)

        response = client.post(url, json={"expected_version": 0}, headers=ADVISOR)
        assert response.status_code == 409
        assert response.json()["error"] == "concurrent_modification"

    def test_removed_enrollment_is_terminal(self, client):
        enrollment = enroll(client)
        base = f"/v1/enrollments/{enrollment['id']}"

        assert client.post(f"{base}/remove", json={"reason": "Duplicate"}, headers=TENANT).status_code == 400
        removed = client.post(f"{base}/remove", json={"reason": "Duplicate"}, headers=ADVISOR)
        assert removed.json()["status"] == "exited"

        response = client.post(f"{base}/advance", json={}, headers=ADVISOR)
        assert response.status_code == 409
        assert response.json()["error"] == "terminal_state_violation"

    def test_state_and_log(self, client):
        enrollment = enroll(client)
        state = client.get(f"/v1/enrollments/{enrollment['id']}", headers=TENANT).json()
        assert state["stage"]["id"] == "lead_capture"
        assert state["enrollment"]["status"] == "active"
        assert len(state["history"]) == 1

        log = client.get(f"/v1/enrollments/{enrollment['id']}/log", headers=TENANT).json()
        assert log["entries"][0]["to_stage"] == "lead_capture"

    def test_channel_preview_outside_business_hours(self, client):
        enrollment = enroll(client)
        response = client.post(
            f"/v1/enrollments/{enrollment['id']}/channel-preview",
            json={"channel": "sms", "action": "reminder", "at": "2024-01-10T20:00:00"},
            headers=TENANT,
        )
        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["check"] == "time"

    def test_utc_timestamps_with_history(self, client):
        """UTC timestamps work against stored communication history."""
        enrollment = enroll(client)
        base = f"/v1/enrollments/{enrollment['id']}"
        sent = client.post(f"{base}/communications",
                           json={"channel": "email", "action": "welcome", "at": "2030-01-07T10:00:00Z"},
                           headers=TENANT)
        assert sent.status_code == 200
        assert sent.json()["sent"] is True

        response = client.post(f"{base}/channel-preview",
                               json={"channel": "email", "action": "reminder", "at": "2030-01-07T11:00:00Z"},
                               headers=TENANT)
        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["check"] == "frequency"

        later = client.post(f"{base}/channel-preview",
                            json={"channel": "email", "action": "reminder", "at": "2030-01-07T14:00:00+00:00"},
                            headers=TENANT)
        assert later.json()["allowed"] is True

    def test_invalid_channel(self, client):
        enrollment = enroll(client)
        response = client.post(f"/v1/enrollments/{enrollment['id']}/channel-preview",
                               json={"channel": "pigeon", "action": "reminder"}, headers=TENANT)
        assert response.status_code == 400

    def test_state_by_lead_and_journey(self, client):
        enrollment = enroll(client)
        params = {"lead_id": "L1", "journey_id": "master-domestic"}

        state = client.get("/v1/enrollments", params=params, headers=TENANT).json()
        assert state["enrollment"]["id"] == enrollment["id"]
        assert state["stage"]["id"] == "lead_capture"

        client.post(f"/v1/enrollments/{enrollment['id']}/remove", json={"reason": "Duplicate"}, headers=ADVISOR)
        state = client.get("/v1/enrollments", params=params, headers=TENANT).json()
        assert state["enrollment"]["status"] == "exited"

        missing = client.get("/v1/enrollments", params={"lead_id": "L2", "journey_id": "master-domestic"},
                             headers=TENANT)
        assert missing.status_code == 400
        assert client.get("/v1/enrollments", params={"lead_id": "L1"}, headers=TENANT).status_code == 400

    def test_replaced_enrollment_keeps_its_log(self, client):
        first = enroll(client)
        response = client.post("/v1/enrollments",
                               json={"lead_id": "L1", "journey_id": "master-domestic", "replace": True},
                               headers=TENANT)
        assert response.status_code == 201

        state = client.get("/v1/enrollments", params={"lead_id": "L1", "journey_id": "master-domestic"},
                           headers=TENANT).json()
        assert state["enrollment"]["id"] == response.json()["id"]

        log = client.get(f"/v1/enrollments/{first['id']}/log", headers=TENANT)
        assert log.status_code == 200
        assert [e["to_stage"] for e in log.json()["entries"]] == ["lead_capture", "exited"]
        assert client.get(f"/v1/enrollments/{first['id']}", headers=TENANT).json()["enrollment"]["status"] == "exited"

    def test_bulk_enroll(self, client):
        response = client.post("/v1/enrollments/bulk",
                               json={"lead_ids": ["L1", "L2", "ghost"], "journey_id": "master-domestic"},
                               headers=TENANT)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] == 2
        assert body["failed"][0]["lead_id"] == "ghost"

    def test_bulk_enroll_requires_leads(self, client):
        response = client.post("/v1/enrollments/bulk", json={"lead_ids": [], "journey_id": "master-domestic"},
                               headers=TENANT)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestReEnroll:
    """Tests for background re-routing."""

    def wait_for(self, client, job_id):
        for _ in range(100):
            job = client.get(f"/v1/jobs/{job_id}", headers=TENANT).json()
            if job["status"] in ("completed", "failed"):
                return job
            time.sleep(0.05)
        raise AssertionError(f"job {job_id} did not finish")

    def test_requires_confirmation(self, client):
        response = client.post("/v1/routing/re-enroll", json={}, headers=TENANT)
        assert response.status_code == 400

    def test_dry_run_job(self, client):
        client.post("/v1/routing/rules", json={"name": "All", "target": "advisor-1"}, headers=TENANT)
        response = client.post("/v1/routing/re-enroll", json={"dry_run": True}, headers=TENANT)
        assert response.status_code == 202

        job = self.wait_for(client, response.json()["job_id"])
        assert job["status"] == "completed"
        assert job["result"]["processed"] == 3
        assert job["result"]["assigned"] == 3
        assert job["result"]["dry_run"] is True

    def test_job_not_visible_to_other_tenant(self, client):
        response = client.post("/v1/routing/re-enroll", json={"dry_run": True}, headers=TENANT)
        job_id = response.json()["job_id"]
        assert client.get(f"/v1/jobs/{job_id}", headers={"X-Tenant-ID": "t2"}).status_code == 404
        assert self.wait_for(client, job_id)["status"] == "completed"

    def test_invalid_rule(self, client):
        response = client.post("/v1/routing/rules",
                               json={"name": "Bad", "target": "a", "conditions": {"x": {"near": 1}}},
                               headers=TENANT)
        assert response.status_code == 400
