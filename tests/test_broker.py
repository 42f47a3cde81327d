"""Tests for the jobs HTTP API contract."""

import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from batchprompt.broker import app, get_job_store
from batchprompt.store import PersistenceError, SQLiteJobStore


@pytest.fixture
def store(jobs_db_path):
    return SQLiteJobStore(jobs_db_path)


@pytest.fixture
def client(store):
    app.dependency_overrides[get_job_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _payload(**overrides):
    payload = {
        "name": "Weekly deps",
        "prompt": "Bump dependencies",
        "projectPaths": ["/src/app", "/src/lib"],
        "trigger": "manual",
    }
    payload.update(overrides)
    return payload


class TestJobsApi:
    """Test job create/list/get/delete endpoints."""

    def test_create_returns_201_with_record(self, client):
        response = client.post("/api/jobs", json=_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["id"].startswith("job_")
        assert data["projectPaths"] == ["/src/app", "/src/lib"]
        assert data["createdAt"] is not None

    def test_replace_existing_returns_200(self, client):
        created = client.post("/api/jobs", json=_payload()).json()

        response = client.post("/api/jobs", json=_payload(id=created["id"], name="Renamed"))

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["createdAt"] == created["createdAt"]
        assert len(client.get("/api/jobs").json()["jobs"]) == 1

    def test_list(self, client):
        client.post("/api/jobs", json=_payload(name="one"))
        client.post("/api/jobs", json=_payload(name="two", trigger="on-login"))

        response = client.get("/api/jobs")
        assert response.status_code == 200
        assert [job["name"] for job in response.json()["jobs"]] == ["one", "two"]

    def test_list_filtered_by_trigger(self, client):
        client.post("/api/jobs", json=_payload(name="one"))
        client.post("/api/jobs", json=_payload(name="two", trigger="on-login"))

        response = client.get("/api/jobs", params={"trigger": "on-login"})
        assert [job["name"] for job in response.json()["jobs"]] == ["two"]

    def test_get_and_missing(self, client):
        created = client.post("/api/jobs", json=_payload()).json()

        assert client.get(f"/api/jobs/{created['id']}").json()["name"] == "Weekly deps"
        assert client.get("/api/jobs/job_missing").status_code == 404

    def test_delete(self, client):
        created = client.post("/api/jobs", json=_payload()).json()

        assert client.delete(f"/api/jobs/{created['id']}").json() == {"success": True}
        assert client.delete(f"/api/jobs/{created['id']}").status_code == 404

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"prompt": "   "},
            {"projectPaths": []},
            {"trigger": "hourly"},
        ],
    )
    def test_invalid_job_returns_422(self, client, overrides):
        response = client.post("/api/jobs", json=_payload(**overrides))
        assert response.status_code == 422

    def test_missing_required_fields_returns_422(self, client):
        response = client.post("/api/jobs", json={"name": "only a name"})
        assert response.status_code == 422


class TestRunState:
    """Test recording run outcomes on stored jobs."""

    def test_record_status(self, client):
        created = client.post("/api/jobs", json=_payload()).json()

        response = client.post(
            f"/api/jobs/{created['id']}/status",
            json={"status": "needs-human", "lastResultUrl": "https://github.com/o/r/issues/9"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "needs-human"
        assert data["lastRun"] is not None
        assert data["lastResultUrl"] == "https://github.com/o/r/issues/9"

    def test_record_skip(self, client):
        created = client.post("/api/jobs", json=_payload()).json()

        response = client.post(f"/api/jobs/{created['id']}/skipped")
        assert response.status_code == 200
        assert response.json()["lastSkipped"] is not None

    def test_unknown_status_rejected(self, client):
        created = client.post("/api/jobs", json=_payload()).json()
        response = client.post(f"/api/jobs/{created['id']}/status", json={"status": "paused"})
        assert response.status_code == 422

    def test_missing_job(self, client):
        assert client.post("/api/jobs/job_missing/status", json={"status": "idle"}).status_code == 404
        assert client.post("/api/jobs/job_missing/skipped").status_code == 404


class TestStoreFailures:
    """Test store failures surface as 503."""

    @pytest.fixture
    def failing_client(self):
        store = MagicMock()
        store.list.side_effect = PersistenceError("database is locked")
        store.get.return_value = None
        store.save.side_effect = PersistenceError("database is locked")
        app.dependency_overrides[get_job_store] = lambda: store
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_list_failure(self, failing_client):
        response = failing_client.get("/api/jobs")
        assert response.status_code == 503
        assert response.json()["error_code"] == "STORE_UNAVAILABLE"

    def test_create_failure(self, failing_client):
        response = failing_client.post("/api/jobs", json=_payload())
        assert response.status_code == 503
        assert "locked" in response.json()["detail"]

    def test_health_reports_unhealthy_store(self, failing_client):
        response = failing_client.get("/health")
        assert response.status_code == 200
        assert response.json()["store"] == "unhealthy"


class TestHealth:
    def test_health(self, client):
        client.post("/api/jobs", json=_payload())
        data = client.get("/health").json()
        assert data["broker"] == "healthy"
        assert data["store"] == "healthy"
        assert data["job_count"] == 1
