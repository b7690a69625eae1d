"""REST tests for the operator device registry."""

import pytest
from fastapi.testclient import TestClient

from signage.main import create_app
from signage.models.device_log import DeviceLog
from signage.services.auth import TokenVerifier


@pytest.fixture
def app():
    return create_app(verifier=TokenVerifier("test-secret"), start_sweep=False)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(verifier):
    def _headers(tenant_id: str = "tenant-1", user_id: str = "user-1") -> dict:
        return {"Authorization": f"Bearer {verifier.create_token(tenant_id, user_id)}"}

    return _headers


def register(client, headers, **overrides):
    payload = {"device_id": "hw-lobby-01", "name": "Lobby", "location_name": "Main lobby", "tags": ["lobby"]}
    payload.update(overrides)
    return client.post("/devices", json=payload, headers=headers)


class TestAuth:
    def test_missing_token_is_401(self, client):
        response = client.get("/devices")

        assert response.status_code == 401
        assert response.json()["detail"] == "Access token required"

    def test_invalid_token_is_403(self, client):
        response = client.get("/devices", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 403


class TestRegister:
    def test_register_starts_offline_with_credential(self, client, auth_headers):
        response = register(client, auth_headers())

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "offline"
        assert data["last_heartbeat"] is None
        assert data["tenant_id"] == "tenant-1"
        assert data["orientation"] == "landscape"
        assert data["connection_token"]

    def test_duplicate_hardware_id_conflicts(self, client, auth_headers):
        register(client, auth_headers())

        response = register(client, auth_headers("tenant-2"))

        assert response.status_code == 409

    def test_invalid_payload_rejected(self, client, auth_headers):
        response = register(client, auth_headers(), orientation="diagonal")

        assert response.status_code == 422


class TestReadUpdate:
    def test_list_is_tenant_scoped_and_filterable(self, client, auth_headers):
        register(client, auth_headers(), device_id="hw-1", name="Lobby")
        register(client, auth_headers(), device_id="hw-2", name="Cafeteria", location_name="Level 2")
        register(client, auth_headers("tenant-2"), device_id="hw-3", name="Elsewhere")

        everything = client.get("/devices", headers=auth_headers()).json()
        searched = client.get("/devices", params={"search": "Level"}, headers=auth_headers()).json()
        online = client.get("/devices", params={"status": "online"}, headers=auth_headers()).json()

        assert {row["device_id"] for row in everything} == {"hw-1", "hw-2"}
        assert [row["device_id"] for row in searched] == ["hw-2"]
        assert online == []

    def test_foreign_device_is_not_found(self, client, auth_headers):
        device = register(client, auth_headers()).json()

        response = client.get(f"/devices/{device['id']}", headers=auth_headers("tenant-2"))

        assert response.status_code == 404

    def test_partial_update(self, client, auth_headers):
        device = register(client, auth_headers()).json()

        response = client.put(
            f"/devices/{device['id']}",
            json={"name": "Lobby North", "status": "maintenance", "tags": ["north"]},
            headers=auth_headers(),
        )

        data = response.json()
        assert response.status_code == 200
        assert data["name"] == "Lobby North"
        assert data["status"] == "maintenance"
        assert data["tags"] == ["north"]
        assert data["location_name"] == "Main lobby"

    def test_status_update_notifies_dashboards_and_logs(self, client, auth_headers, verifier):
        device = register(client, auth_headers()).json()

        with client.websocket_connect(f"/ws?token={verifier.create_token('tenant-1', 'user-1')}") as dashboard:
            assert dashboard.receive_json()["type"] == "hello"

            client.put(f"/devices/{device['id']}", json={"status": "maintenance"}, headers=auth_headers())
            event = dashboard.receive_json()

        assert event["type"] == "status-change"
        assert event["payload"]["deviceId"] == device["id"]
        assert event["payload"]["status"] == "maintenance"
        assert event["payload"]["reason"] == "updated"
        logs = client.get(f"/devices/{device['id']}/logs?log_type=status_change", headers=auth_headers()).json()
        assert logs[0]["message"] == "maintenance"
        assert logs[0]["metadata"]["previous"] == "offline"

    def test_update_without_status_change_is_silent(self, client, auth_headers):
        device = register(client, auth_headers()).json()

        client.put(f"/devices/{device['id']}", json={"name": "Renamed", "status": "offline"}, headers=auth_headers())

        logs = client.get(f"/devices/{device['id']}/logs?log_type=status_change", headers=auth_headers()).json()
        assert logs == []

    def test_stats_before_first_contact(self, client, auth_headers):
        device = register(client, auth_headers()).json()

        stats = client.get(f"/devices/{device['id']}/stats", headers=auth_headers()).json()

        assert stats == {
            "status": "offline",
            "last_heartbeat": None,
            "uptime_ms": None,
            "player_version": None,
            "device_info": {},
        }


class TestCredentialAndDelete:
    def test_regenerate_token_invalidates_old(self, app, client, auth_headers):
        device = register(client, auth_headers()).json()

        response = client.post(f"/devices/{device['id']}/regenerate-token", headers=auth_headers())

        new_token = response.json()["connection_token"]
        assert new_token != device["connection_token"]
        assert app.state.registry.resolve_credential(device["connection_token"]) is None
        assert app.state.registry.resolve_credential(new_token).device_pk == device["id"]

    def test_delete_cascades_logs(self, app, client, auth_headers, db):
        device = register(client, auth_headers()).json()
        app.state.registry.add_log(device["id"], "warning", "low disk")

        response = client.delete(f"/devices/{device['id']}", headers=auth_headers())

        assert response.status_code == 200
        assert client.get(f"/devices/{device['id']}", headers=auth_headers()).status_code == 404
        assert db.query(DeviceLog).filter(DeviceLog.device_id == device["id"]).count() == 0

    def test_logs_endpoint(self, app, client, auth_headers):
        device = register(client, auth_headers()).json()
        app.state.registry.add_log(device["id"], "command", "reload", {"issued_by": "user-1"})

        logs = client.get(f"/devices/{device['id']}/logs", headers=auth_headers()).json()

        assert logs[0]["log_type"] == "command"
        assert logs[0]["metadata"] == {"issued_by": "user-1"}


def test_health(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["sweep_running"] is False
