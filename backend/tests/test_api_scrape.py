"""
Tests for the HTTP control surface

Tests cover:
- Admin session required (403 {"error": "forbidden"} otherwise)
- Status polling and no-store caching headers
- Start / already running / cancel actions
- Managed source validation errors
- Cron trigger secret checks and result mapping
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from jobfeed.auth import COOKIE_NAME, ROLE_ADMIN, ROLE_USER, create_session_token
from jobfeed.main import app
from jobfeed.schemas import RunProgressSnapshot
from jobfeed.services.orchestrator import RunResult, StartOutcome, get_orchestrator
from jobfeed.services.run_state import RunStateError
from jobfeed.services.schedule import ScheduleSettings
from jobfeed.services.sources import SourceNotFoundError, SourceValidationError

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


def running_snapshot(run_id: str = "run-1") -> RunProgressSnapshot:
    return RunProgressSnapshot(
        run_id=run_id,
        trigger="manual",
        state="running",
        started_at=NOW,
        updated_at=NOW,
        total_sources=3,
        processed_sources=1,
        message="Processing LinkedIn Meghalaya Tura (2/3)",
    )


def run_result(ok: bool = True, **overrides) -> RunResult:
    fields = dict(
        ok=ok,
        run_id="cron-1",
        trigger="auto",
        skipped=False,
        settings=ScheduleSettings(),
        started_at=NOW,
        finished_at=NOW,
    )
    fields.update(overrides)
    return RunResult(**fields)


@pytest.fixture
def orchestrator():
    fake = MagicMock()
    fake.get_snapshot = AsyncMock(return_value=running_snapshot())
    fake.request_cancel = AsyncMock(return_value=running_snapshot())
    fake.start = AsyncMock()
    fake.get_history = AsyncMock(return_value=[])
    fake.run = AsyncMock(return_value=run_result())
    fake.registry = MagicMock()
    return fake


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    # No context manager: the lifespan (database, scheduler) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_client(client):
    client.cookies.set(COOKIE_NAME, create_session_token(ROLE_ADMIN))
    return client


class TestAdminGate:
    def test_status_without_session(self, client):
        response = client.get("/scrape/status")

        assert response.status_code == 403
        assert response.json() == {"error": "forbidden"}
        assert response.headers["cache-control"] == "no-store"

    def test_user_role_is_forbidden(self, client):
        client.cookies.set(COOKIE_NAME, create_session_token(ROLE_USER))

        assert client.post("/scrape", json={"action": "start"}).status_code == 403

    def test_tampered_token_is_forbidden(self, client):
        client.cookies.set(COOKIE_NAME, "not-a-jwt")

        assert client.get("/scrape/history").status_code == 403

    def test_jobs_require_admin(self, client):
        assert client.get("/jobs").json() == {"error": "forbidden"}

    def test_login_sets_admin_role(self, client):
        response = client.post("/auth/login", json={"password": "admin-pass"})

        assert response.status_code == 200
        assert response.json()["role"] == ROLE_ADMIN
        assert client.get("/auth/check").json() == {"authenticated": True, "role": ROLE_ADMIN}

    def test_login_rejects_wrong_password(self, client):
        assert client.post("/auth/login", json={"password": "nope"}).status_code == 401


class TestStatus:
    def test_returns_snapshot_without_caching(self, admin_client):
        response = admin_client.get("/scrape/status")

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert body["ok"] is True
        assert body["progress"]["runId"] == "run-1"
        assert body["progress"]["processedSources"] == 1
        assert body["progress"]["state"] == "running"

    def test_no_run_yet(self, admin_client, orchestrator):
        orchestrator.get_snapshot.return_value = None

        assert admin_client.get("/scrape/status").json() == {"ok": True, "progress": None}


class TestControl:
    def test_start_accepted(self, admin_client, orchestrator):
        orchestrator.start.return_value = StartOutcome(
            accepted=True, run_id="run-2", progress=running_snapshot("run-2")
        )

        body = admin_client.post("/scrape", json={"action": "start"}).json()

        assert body["ok"] is True
        assert body["action"] == "start"
        assert body["accepted"] is True
        assert body["runId"] == "run-2"
        assert "alreadyRunning" not in body

    def test_start_while_running(self, admin_client, orchestrator):
        orchestrator.start.return_value = StartOutcome(
            accepted=False, already_running=True, progress=running_snapshot()
        )

        body = admin_client.post("/scrape", json={"action": "start"}).json()

        assert body["accepted"] is False
        assert body["alreadyRunning"] is True
        assert body["progress"]["runId"] == "run-1"

    def test_missing_body_defaults_to_start(self, admin_client, orchestrator):
        orchestrator.start.return_value = StartOutcome(accepted=True, run_id="run-3")

        body = admin_client.post("/scrape").json()

        assert body["action"] == "start"
        orchestrator.start.assert_awaited_once()

    def test_cancel(self, admin_client, orchestrator):
        body = admin_client.post("/scrape", json={"action": "cancel"}).json()

        assert body["action"] == "cancel"
        assert body["progress"]["runId"] == "run-1"
        orchestrator.request_cancel.assert_awaited_once()
        orchestrator.start.assert_not_called()

    def test_store_unavailable(self, admin_client, orchestrator):
        orchestrator.start.side_effect = RunStateError("database is locked")

        response = admin_client.post("/scrape", json={"action": "start"})

        assert response.status_code == 500
        assert response.json()["error"] == "run_state_unavailable"

    def test_history_limit_bounds(self, admin_client, orchestrator):
        assert admin_client.get("/scrape/history?limit=5").status_code == 200
        orchestrator.get_history.assert_awaited_once_with(5)
        assert admin_client.get("/scrape/history?limit=500").status_code == 422


class TestSources:
    def test_invalid_source(self, admin_client, orchestrator):
        orchestrator.registry.add = AsyncMock(side_effect=SourceValidationError("Source URL must be a valid http(s) URL."))

        response = admin_client.post("/scrape/sources", json={"url": "nope"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_source"

    def test_unknown_source(self, admin_client, orchestrator):
        orchestrator.registry.delete = AsyncMock(side_effect=SourceNotFoundError("Source not found."))

        response = admin_client.delete("/scrape/sources/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestCron:
    def test_missing_secret_configuration(self, client):
        with patch("jobfeed.api.scrape.get_settings", return_value=MagicMock(scrape_secret="")):
            response = client.post("/scrape/cron", headers={"x-scrape-token": "anything"})

        assert response.status_code == 500
        assert response.json()["error"] == "missing_secret_configuration"

    def test_wrong_secret(self, client, orchestrator):
        response = client.get("/scrape/cron", headers={"authorization": "Bearer wrong"})

        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "unauthorized"}
        orchestrator.run.assert_not_called()

    def test_header_secret_runs_auto(self, client, orchestrator):
        response = client.post("/scrape/cron", headers={"x-scrape-token": "cron-secret"})

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.json()["runId"] == "cron-1"
        orchestrator.run.assert_awaited_once_with("auto")

    def test_bearer_secret_manual_trigger(self, client, orchestrator):
        response = client.get("/scrape/cron?trigger=manual", headers={"authorization": "Bearer cron-secret"})

        assert response.status_code == 200
        orchestrator.run.assert_awaited_once_with("manual")

    def test_skipped_run_is_ok(self, client, orchestrator):
        orchestrator.run.return_value = run_result(skipped=True, skip_reason="not_due", next_due_at=NOW)

        body = client.get("/scrape/cron", headers={"x-scrape-token": "cron-secret"}).json()

        assert body["skipped"] is True
        assert body["skipReason"] == "not_due"
        assert body["nextDueAt"] == NOW.isoformat()

    def test_failed_run_is_500(self, client, orchestrator):
        orchestrator.run.return_value = run_result(ok=False, error_message="disk full")

        response = client.post("/scrape/cron", headers={"x-scrape-token": "cron-secret"})

        assert response.status_code == 500
        assert response.json()["error"] == "scrape_failed"
        assert response.json()["message"] == "disk full"
        assert response.json()["errorMessage"] == "disk full"
