"""
API tests for the sync and health endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.routes.sync import get_orchestrator

SCHEDULER_HEADERS = {
    "X-Appengine-Cron": "true",
    "X-Internal-Service-Token": "test-scheduler-token",
}


@pytest.fixture
def client(orchestrator):
    """Test client wired to the per-test orchestrator."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    """Tests for /api/health."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] in ("healthy", "degraded")
        assert data["version"] == "1.0.0"
        assert set(data["checks"]) == {"database", "sheets", "sync"}

    def test_startup_runs_with_lifespan(self, orchestrator):
        """Entering the client runs the app's startup handler."""
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            with TestClient(app) as client:
                assert client.get("/api/health").status_code == 200
        finally:
            app.dependency_overrides.clear()

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"


class TestScheduledRun:
    """Tests for POST /api/sync/run."""

    def test_missing_headers(self, client):
        response = client.post("/api/sync/run")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED_CRON"

    def test_wrong_token(self, client):
        headers = dict(SCHEDULER_HEADERS, **{"X-Internal-Service-Token": "nope"})

        response = client.post("/api/sync/run", headers=headers)

        assert response.status_code == 401

    def test_cron_header_required(self, client):
        headers = {"X-Internal-Service-Token": "test-scheduler-token"}

        response = client.post("/api/sync/run", headers=headers)

        assert response.status_code == 401

    def test_unconfigured_token(self, client, monkeypatch):
        """Without a configured token the endpoint refuses every caller."""
        monkeypatch.setenv("SYNC_SCHEDULER_TOKEN", "")

        response = client.post("/api/sync/run", headers=SCHEDULER_HEADERS)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "CONFIG_MISSING"

    def test_success(self, client):
        response = client.post("/api/sync/run", headers=SCHEDULER_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["run"]["trigger"] == "scheduled"
        assert data["run"]["added"] == 3

    def test_cadence_skip_is_accepted(self, client):
        client.post("/api/sync/run", headers=SCHEDULER_HEADERS)

        response = client.post("/api/sync/run", headers=SCHEDULER_HEADERS)

        assert response.status_code == 202
        assert response.json()["reason"] == "cadence_window"


class TestManualRun:
    """Tests for POST /api/sync/manual."""

    def test_manual_sync(self, client, orchestrator):
        response = client.post("/api/sync/manual", json={"requested_by": "ops@nyu.edu"})

        assert response.status_code == 200
        run = response.json()["run"]
        assert run["trigger"] == "manual"
        assert run["requestedBy"] == "ops@nyu.edu"
        assert orchestrator.devices.count() == 3

    def test_manual_sync_without_body(self, client):
        response = client.post("/api/sync/manual")

        assert response.status_code == 200

    def test_inflight_returns_202(self, client, orchestrator):
        orchestrator.lock.acquire("other-run", 60_000)

        response = client.post("/api/sync/manual")

        assert response.status_code == 202
        assert response.json()["status"] == "skipped"
        assert response.json()["reason"] == "inflight"

    def test_failure_uses_catalog_status(self, client, fake_source):
        from core.errors import SheetErrorCode, SheetFetchError

        fake_source.error = SheetFetchError(SheetErrorCode.SHEET_NOT_FOUND, "no such sheet", status=404)

        response = client.post("/api/sync/manual")

        assert response.status_code == 502
        data = response.json()
        assert data["status"] == "failed"
        assert data["error"]["code"] == "SHEET_NOT_FOUND"
        assert data["error"]["referenceId"] == data["run"]["referenceId"]

    def test_lock_store_failure_is_a_failed_run(self, client, orchestrator):
        import sqlite3
        from unittest.mock import patch

        with patch.object(orchestrator.lock, "acquire", side_effect=sqlite3.OperationalError("database is locked")):
            response = client.post("/api/sync/manual")

        assert response.status_code == 500
        data = response.json()
        assert data["status"] == "failed"
        assert data["error"]["code"] == "DB_WRITE_FAILED"
        assert orchestrator.events.latest().metadata["status"] == "failed"

    def test_request_id_reaches_telemetry(self, client, orchestrator):
        client.post("/api/sync/manual", headers={"X-Request-ID": "req-42"})

        assert orchestrator.events.latest().request_id == "req-42"


class TestStatusAndColumns:
    """Tests for GET /api/sync/status and /api/sync/columns."""

    def test_status(self, client):
        client.post("/api/sync/manual")

        response = client.get("/api/sync/status")

        assert response.status_code == 200
        data = response.json()
        assert data["deviceCount"] == 3
        assert data["latestRun"]["metadata"]["status"] == "success"

    def test_columns(self, client):
        client.post("/api/sync/manual")

        response = client.get("/api/sync/columns")

        assert response.status_code == 200
        data = response.json()
        assert data["sheet_id"] == "sheet-123"
        assert data["total"] == 7
        assert data["columns"][0]["columnKey"] == "serial"

    def test_columns_before_first_sync(self, client):
        assert client.get("/api/sync/columns").json()["total"] == 0


class TestAudit:
    """Tests for POST /api/sync/audit."""

    def test_audit(self, client):
        response = client.post("/api/sync/audit", json={"persist": False})

        assert response.status_code == 200
        assert response.json()["status"] == "passed"

    def test_audit_error(self, client, fake_source):
        fake_source.set_data(["Status"], [{"Status": "active"}])

        response = client.post("/api/sync/audit")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SYNC_CONFIGURATION"
