"""Tests for the HTTP routes, run through FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from api.database import UserIntegration, atomic_transaction, get_session_maker
from conftest import NOW, FakeClientFactory, FakeJiraClient, make_issue, make_sprint
from jira_sync.client import ExternalServiceError
from jira_sync.sync_service import SyncOrchestrator
from server.dependencies import get_orchestrator
from server.main import app

ACTIVE = make_sprint(10, "ABC Sprint 7", "active", "2026-03-10T09:00:00.000Z", "2026-03-24T17:00:00.000Z")
RECENT = make_sprint(9, "ABC Sprint 6", "closed", "2026-02-24T09:00:00.000Z", "2026-03-10T17:00:00.000Z")
XYZ = make_sprint(20, "XYZ Sprint 3", "closed", "2026-02-23T09:00:00.000Z", "2026-03-09T17:00:00.000Z")


@pytest.fixture
def jira():
    return FakeJiraClient(
        sprints={1: [ACTIVE, RECENT, XYZ]},
        issues={10: [make_issue("ABC-1", "Done", "Jane Doe")], 9: [make_issue("ABC-2")], 20: []},
    )


@pytest.fixture
def client(tmp_path, monkeypatch, session_maker, jira):
    monkeypatch.setenv("SPRINT_SYNC_DB", str(tmp_path / "sprints.db"))
    for name in ("JIRA_BASE_URL", "JIRA_BOARD_IDS", "SPRINT_HISTORY_DAYS", "SPRINT_REPORT_CUTOFF"):
        monkeypatch.delenv(name, raising=False)
    app.dependency_overrides[get_orchestrator] = lambda: SyncOrchestrator(
        get_session_maker(), app.state.settings, client_factory=FakeClientFactory(jira), clock=lambda: NOW
    )
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(user_id):
    return {"X-User-Id": str(user_id)}


class TestSyncRoute:

    def test_active(self, client, user_id):
        resp = client.post("/api/admin/sprints/sync", json={"type": "active"}, headers=_headers(user_id))
        assert resp.status_code == 200
        body = resp.json()
        assert body["type"] == "active"
        assert body["message"] == "Sprint sync completed"
        assert body["result"]["success"] is True
        assert body["result"]["count"] == 1

    def test_all_reports_each_branch(self, client, user_id, jira):
        jira.fail["list_board_sprints:active"] = ExternalServiceError(404, "Not found (404).")
        resp = client.post("/api/admin/sprints/sync", json={}, headers=_headers(user_id))
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Sprint sync completed with errors"
        assert body["result"]["active"]["success"] is False
        assert body["result"]["active"]["error_kind"] == "not_found"
        assert body["result"]["closed"]["success"] is True
        assert body["result"]["closed"]["count"] == 2

    def test_board_url_alias(self, client, user_id, jira):
        jira.sprints[42] = [ACTIVE]
        resp = client.post(
            "/api/admin/sprints/sync",
            json={"type": "active", "boardUrl": "https://jira.example.com/secure/RapidBoard.jspa?rapidView=42"},
            headers=_headers(user_id),
        )
        assert resp.status_code == 200
        assert ("list_board_sprints", 42, "active") in jira.calls

    def test_external_error_single_branch(self, client, user_id, jira):
        jira.fail["list_boards"] = ExternalServiceError(401, "Unauthorized (401).")
        resp = client.post("/api/admin/sprints/sync", json={"type": "closed"}, headers=_headers(user_id))
        assert resp.status_code == 502
        assert resp.json()["detail"]["kind"] == "unauthorized"

    def test_configuration_error(self, client, session_maker):
        with atomic_transaction(session_maker) as session:
            user = UserIntegration(email="new@example.com")
            session.add(user)
            session.flush()
            new_id = user.id
        resp = client.post("/api/admin/sprints/sync", json={"type": "all"}, headers=_headers(new_id))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Jira integration not configured: missing base URL"

    def test_unknown_user(self, client):
        resp = client.post("/api/admin/sprints/sync", json={"type": "active"}, headers=_headers(999))
        assert resp.status_code == 404

    def test_missing_user_header(self, client):
        resp = client.post("/api/admin/sprints/sync", json={"type": "active"})
        assert resp.status_code == 400

    def test_invalid_type(self, client, user_id):
        resp = client.post("/api/admin/sprints/sync", json={"type": "weekly"}, headers=_headers(user_id))
        assert resp.status_code == 400


def test_sync_status(client, user_id):
    client.post("/api/admin/sprints/sync", json={"type": "active"}, headers=_headers(user_id))
    resp = client.get("/api/admin/sprints/sync-status")
    assert resp.status_code == 200
    runs = resp.json()["runs"]
    assert [(r["branch"], r["success"], r["count"]) for r in runs] == [("active", True, 1)]


def test_sprint_report(client, user_id):
    client.post("/api/admin/sprints/sync", json={"type": "closed"}, headers=_headers(user_id))

    resp = client.get("/api/reports/sprints", params={"perTeam": 1})
    assert resp.status_code == 200
    body = resp.json()
    assert body["per_team"] == 1
    assert [s["name"] for s in body["snapshots"]] == ["ABC Sprint 6", "XYZ Sprint 3"]


def test_jira_connection(client, user_id):
    resp = client.post("/api/integrations/jira/test", headers=_headers(user_id))
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["display_name"] == "Jane Doe"


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}
