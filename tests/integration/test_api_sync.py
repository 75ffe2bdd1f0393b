"""
Integration tests for the /sync routes.

The app is built from real services on in-memory SQLite; the Rise-X side is
an httpx.MockTransport. Opportunistic background syncs are stubbed out so
every DB write happens inside a request.
"""
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from fleetsync.api.main import create_app
from fleetsync.container import build_services

USER = {"X-User-Id": "user-1"}

TOKEN_BODY = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_in": 3600,
    "token_type": "Bearer",
    "scope": "openid profile offline_access",
}

WORK = {
    "id": "w-1",
    "flowOriginId": "flow-a",
    "currentState": "Open",
    "modifiedAt": "2024-05-01T00:00:00Z",
    "data": {
        "ranVessel": {
            "id": "v-1",
            "displayName": "HMAS Example",
            "data": {
                "generalArrangement": [{
                    "name": "Rudder",
                    "frRatingData": [{"foulingRatingType": "FR2", "foulingCoverage": 40}],
                }],
            },
        }
    },
}


def risex_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/connect/token":
        if b"code=bad" in request.content:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json=TOKEN_BODY)
    if path == "/connect/userinfo":
        return httpx.Response(200, json={"sub": "sub-1", "email": "diver@example.com"})
    if path == "/connect/revocation":
        return httpx.Response(200)
    if path == "/api/v3/work/user/open":
        works = [WORK] if request.url.params["flowOriginId"] == "flow-a" else []
        return httpx.Response(200, json=works)
    if path == "/api/v3/work":
        return httpx.Response(200, json=[])
    if path == "/api/v3/thing":
        return httpx.Response(200, json=[{"id": "t-1", "displayName": "HMAS Example"}])
    if path.startswith("/api/v3/flow/"):
        return httpx.Response(200, json={"displayName": "Inspection"})
    return httpx.Response(404)


@pytest.fixture(name="services")
def services_fixture(engine, settings):
    services = build_services(engine, settings, transport=httpx.MockTransport(risex_handler))
    services.trigger.maybe_trigger = MagicMock(return_value=False)
    return services


@pytest.fixture(name="client")
def client_fixture(services):
    with TestClient(create_app(services)) as client:
        yield client


@pytest.fixture(name="connected")
def connected_fixture(services):
    services.token_manager.store_connection("user-1", TOKEN_BODY)


class TestAuthentication:
    def test_missing_user_header(self, client):
        resp = client.get("/sync/status")
        assert resp.status_code == 401

    def test_requests_feed_opportunistic_trigger(self, client, services):
        client.get("/sync/status", headers=USER)
        services.trigger.maybe_trigger.assert_called_once_with("user-1")


class TestConnection:
    def test_no_connection(self, client):
        resp = client.get("/sync/connection", headers=USER)
        assert resp.status_code == 200
        assert resp.json()["connected"] is False

    def test_store_connection_runs_initial_sync(self, client):
        resp = client.post("/sync/connection", headers=USER, json={
            "token_data": TOKEN_BODY,
            "user_info": {"email": "diver@example.com"},
        })
        assert resp.status_code == 200
        assert resp.json() == {"connected": True, "sync_started": True}

        conn = client.get("/sync/connection", headers=USER).json()
        assert conn["connected"] is True
        assert conn["upstream_email"] == "diver@example.com"
        assert conn["scopes"] == ["openid", "profile", "offline_access"]

        status = client.get("/sync/status", headers=USER).json()
        assert set(status["entities"]) == {"work_items", "assets", "flows"}
        assert status["entities"]["work_items"]["status"] == "completed"

    def test_store_connection_without_access_token(self, client):
        resp = client.post("/sync/connection", headers=USER, json={"token_data": {"refresh_token": "r"}})
        assert resp.status_code == 400

    def test_authorize_exchanges_code(self, client):
        resp = client.post("/sync/connection/authorize", headers=USER, json={
            "code": "good", "redirect_uri": "https://app/cb", "code_verifier": "v",
        })
        assert resp.status_code == 200
        conn = client.get("/sync/connection", headers=USER).json()
        assert conn["upstream_email"] == "diver@example.com"

    def test_authorize_rejected_code(self, client):
        resp = client.post("/sync/connection/authorize", headers=USER, json={
            "code": "bad", "redirect_uri": "https://app/cb", "code_verifier": "v",
        })
        assert resp.status_code == 400
        assert "invalid_grant" in resp.json()["detail"]

    def test_disconnect(self, client, connected):
        resp = client.delete("/sync/connection", headers=USER)
        assert resp.json() == {"connected": False, "disconnected": True}
        assert client.get("/sync/connection", headers=USER).json()["connected"] is False

    def test_disconnect_without_connection(self, client):
        assert client.delete("/sync/connection", headers=USER).json()["disconnected"] is False


class TestTrigger:
    def test_requires_connection(self, client):
        resp = client.post("/sync/trigger", headers=USER, json={})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "NO_CONNECTION"

    def test_incremental(self, client, connected):
        resp = client.post("/sync/trigger", headers=USER, json={"type": "incremental"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["type"] == "incremental"
        assert body["result"]["work_items"]["created"] == 1
        assert body["completed_at"]

    def test_full(self, client, connected):
        resp = client.post("/sync/trigger", headers=USER, json={"type": "full"})
        result = resp.json()["result"]
        assert result["success"] is True
        assert set(result["results"]) == {"work_items", "assets", "flows"}

    def test_failure_is_500(self, client, services, connected):
        services.sync_service.sync_work_items = AsyncMock(side_effect=RuntimeError("boom"))
        resp = client.post("/sync/trigger", headers=USER, json={})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "boom"

    def test_async_returns_immediately(self, client, services, connected):
        services.trigger.trigger_sync_async = MagicMock()
        resp = client.post("/sync/trigger/async", headers=USER, json={"type": "full"})
        assert resp.status_code == 200
        assert resp.json()["type"] == "full"
        services.trigger.trigger_sync_async.assert_called_once_with("user-1", "full")

    def test_async_requires_connection(self, client):
        resp = client.post("/sync/trigger/async", headers=USER, json={})
        assert resp.status_code == 400


class TestSyncedData:
    @pytest.fixture(autouse=True)
    def synced(self, client, connected):
        client.post("/sync/trigger", headers=USER, json={"type": "full"})

    def test_work_items(self, client):
        body = client.get("/sync/work-items", headers=USER).json()
        assert body["meta"] == {"count": 1, "limit": 100, "offset": 0}
        item = body["data"][0]
        assert item["upstream_id"] == "w-1"
        assert item["vessel_name"] == "HMAS Example"
        assert item["hull_performance"] == 93

    def test_work_items_filtered(self, client):
        body = client.get("/sync/work-items?status=Complete", headers=USER).json()
        assert body["data"] == []

    def test_assets(self, client):
        body = client.get("/sync/assets", headers=USER).json()
        assert [a["upstream_id"] for a in body["data"]] == ["t-1"]

    def test_vessel_assessments(self, client):
        body = client.get("/sync/vessels/v-1/assessments", headers=USER).json()
        assert body["meta"] == {"vessel_id": "v-1", "count": 1}
        assert body["data"][0]["component_category"] == "rudder"

    def test_logs(self, client):
        logs = client.get("/sync/logs", headers=USER).json()["data"]
        assert {log["entity_type"] for log in logs} == {"work_items", "assets", "flows"}
        assert all(log["status"] == "completed" for log in logs)
