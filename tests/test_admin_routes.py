"""
Tests for admin API routes.

Covers:
- Bearer token authentication (401 / 503)
- Device listing with filter, status filter and pagination
- Device detail, events and notes
- Status changes
- Command enqueue and inspection
"""
import dataclasses

import pytest
from fastapi.testclient import TestClient

from registry.main import app, create_app
from tests.conftest import command_status, count_rows, enqueue, register_device


class TestAdminAuth:
    def test_missing_token_is_unauthorized(self, client):
        resp = client.get("/admin/api/devices")
        assert resp.status_code == 401
        body = resp.json()
        assert body["ok"] is False
        assert body["error"] == "unauthorized"
        assert body["message"]

    def test_wrong_token_is_unauthorized(self, client):
        resp = client.get("/admin/api/devices", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_non_bearer_scheme_is_unauthorized(self, client):
        resp = client.get("/admin/api/devices", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    def test_unconfigured_token_is_service_unavailable(self, client, admin_headers):
        settings = dataclasses.replace(app.state.settings, admin_token="")
        with TestClient(create_app(settings)) as no_admin:
            resp = no_admin.get("/admin/api/devices", headers=admin_headers)
        assert resp.status_code == 503
        assert resp.json()["error"] == "service_unavailable"


class TestDeviceListing:
    @pytest.fixture(autouse=True)
    def fleet(self, client):
        register_device(client, "alpha-01", hostname="build-box", username="alice")
        register_device(client, "alpha-02", hostname="laptop", username="bob")
        register_device(client, "beta-01", hostname="kiosk", username="carol", osName="Windows")

    def test_list_all(self, client, admin_headers):
        body = client.get("/admin/api/devices", headers=admin_headers).json()
        assert body["ok"] is True
        assert body["total"] == 3
        assert body["page"] == 1
        assert {d["deviceId"] for d in body["items"]} == {"alpha-01", "alpha-02", "beta-01"}

    def test_free_text_filter(self, client, admin_headers):
        body = client.get("/admin/api/devices", params={"q": "ALPHA"}, headers=admin_headers).json()
        assert body["total"] == 2

        by_user = client.get("/admin/api/devices", params={"q": "carol"}, headers=admin_headers).json()
        assert [d["deviceId"] for d in by_user["items"]] == ["beta-01"]

        by_os = client.get("/admin/api/devices", params={"q": "windows"}, headers=admin_headers).json()
        assert by_os["total"] == 1

    def test_status_filter(self, client, admin_headers):
        client.post("/admin/api/devices/alpha-02/status", json={"status": "retired"}, headers=admin_headers)
        body = client.get("/admin/api/devices", params={"status": "retired"}, headers=admin_headers).json()
        assert [d["deviceId"] for d in body["items"]] == ["alpha-02"]

        active = client.get("/admin/api/devices", params={"status": "active"}, headers=admin_headers).json()
        assert active["total"] == 2

    def test_invalid_status_filter(self, client, admin_headers):
        resp = client.get("/admin/api/devices", params={"status": "exploded"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_pagination(self, client, admin_headers):
        first = client.get("/admin/api/devices", params={"page": 1, "limit": 2}, headers=admin_headers).json()
        second = client.get("/admin/api/devices", params={"page": 2, "limit": 2}, headers=admin_headers).json()
        assert first["total"] == second["total"] == 3
        assert len(first["items"]) == 2
        assert len(second["items"]) == 1
        seen = {d["deviceId"] for d in first["items"]} | {d["deviceId"] for d in second["items"]}
        assert len(seen) == 3

    def test_bad_page_param(self, client, admin_headers):
        resp = client.get("/admin/api/devices", params={"page": "abc"}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_argument"

    def test_page_out_of_range(self, client, admin_headers):
        resp = client.get("/admin/api/devices", params={"page": 10**20}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_argument"


class TestDeviceDetail:
    def test_detail(self, client, admin_headers):
        register_device(client, "dev-1")
        body = client.get("/admin/api/devices/dev-1", headers=admin_headers).json()
        assert body["ok"] is True
        assert body["device"]["deviceId"] == "dev-1"
        assert body["device"]["hostname"] == "dev-1-host"

    def test_unknown_device(self, client, admin_headers):
        resp = client.get("/admin/api/devices/missing", headers=admin_headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"
        assert "missing" in resp.json()["message"]

    def test_events_limit(self, client, admin_headers):
        register_device(client, "dev-1")
        for _ in range(3):
            client.post("/api/heartbeat", json={"deviceId": "dev-1", "secret": "s3cret-device-key"})
        events = client.get("/admin/api/devices/dev-1/events", params={"limit": 2}, headers=admin_headers).json()
        assert len(events["events"]) == 2
        assert events["events"][0]["eventType"] == "heartbeat"

    def test_events_for_unknown_device(self, client, admin_headers):
        resp = client.get("/admin/api/devices/missing/events", headers=admin_headers)
        assert resp.status_code == 404


class TestNotes:
    def test_add_and_list_notes(self, client, admin_headers):
        register_device(client, "dev-1")
        resp = client.post(
            "/admin/api/devices/dev-1/notes",
            json={"note": "Replaced battery", "createdBy": "sam"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["note"]["createdBy"] == "sam"

        client.post("/admin/api/devices/dev-1/notes", json={"note": "Checked fan"}, headers=admin_headers)

        notes = client.get("/admin/api/devices/dev-1/notes", headers=admin_headers).json()["notes"]
        assert [n["note"] for n in notes] == ["Checked fan", "Replaced battery"]
        assert notes[0]["createdBy"] == "admin"

    def test_empty_note_rejected(self, client, admin_headers):
        register_device(client, "dev-1")
        resp = client.post("/admin/api/devices/dev-1/notes", json={"note": "   "}, headers=admin_headers)
        assert resp.status_code == 400
        assert count_rows("device_notes") == 0

    def test_note_for_unknown_device(self, client, admin_headers):
        resp = client.post("/admin/api/devices/missing/notes", json={"note": "hi"}, headers=admin_headers)
        assert resp.status_code == 404


class TestStatus:
    @pytest.mark.parametrize("status", ["active", "disabled", "retired"])
    def test_valid_statuses(self, client, admin_headers, status):
        register_device(client, "dev-1")
        resp = client.post("/admin/api/devices/dev-1/status", json={"status": status}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["device"]["status"] == status

    @pytest.mark.parametrize("status", ["deleted", "", None, "ACTIVE"])
    def test_invalid_status(self, client, admin_headers, status):
        register_device(client, "dev-1")
        resp = client.post("/admin/api/devices/dev-1/status", json={"status": status}, headers=admin_headers)
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "invalid_argument"
        assert "active" in body["message"]

    def test_status_change_is_audited(self, client, admin_headers):
        register_device(client, "dev-1")
        client.post("/admin/api/devices/dev-1/status", json={"status": "disabled"}, headers=admin_headers)
        events = client.get("/admin/api/devices/dev-1/events", headers=admin_headers).json()["events"]
        assert events[0]["eventType"] == "status_changed"
        assert events[0]["payload"]["from"] == "active"
        assert events[0]["payload"]["to"] == "disabled"

    def test_status_for_unknown_device(self, client, admin_headers):
        resp = client.post("/admin/api/devices/missing/status", json={"status": "active"}, headers=admin_headers)
        assert resp.status_code == 404


class TestCommands:
    def test_enqueue_and_inspect(self, client, admin_headers):
        register_device(client, "dev-1")
        cmd_id = enqueue(client, admin_headers, "dev-1", "reboot", {"delay": 5})
        assert command_status(cmd_id) == "queued"

        listed = client.get("/admin/api/devices/dev-1/commands", headers=admin_headers).json()["commands"]
        assert [c["id"] for c in listed] == [cmd_id]
        assert listed[0]["payload"] == {"delay": 5}
        assert listed[0]["createdBy"] == "admin"

        detail = client.get(f"/admin/api/commands/{cmd_id}", headers=admin_headers).json()["command"]
        assert detail["status"] == "queued"
        assert detail["sentAt"] is None

    def test_enqueue_unknown_device(self, client, admin_headers):
        resp = client.post(
            "/admin/api/devices/ghost/commands", json={"kind": "ping", "payload": {}}, headers=admin_headers
        )
        assert resp.status_code == 404
        assert count_rows("commands") == 0

    @pytest.mark.parametrize(
        "body",
        [
            {"payload": {}},
            {"kind": "", "payload": {}},
            {"kind": "ping", "payload": "not-an-object"},
            {"kind": "ping", "payload": [1, 2]},
            {"kind": "ping", "payload": None},
        ],
    )
    def test_enqueue_validation(self, client, admin_headers, body):
        register_device(client, "dev-1")
        resp = client.post("/admin/api/devices/dev-1/commands", json=body, headers=admin_headers)
        assert resp.status_code == 400
        assert count_rows("commands") == 0

    def test_enqueue_without_payload_defaults_to_empty_object(self, client, admin_headers):
        register_device(client, "dev-1")
        resp = client.post("/admin/api/devices/dev-1/commands", json={"kind": "ping"}, headers=admin_headers)
        assert resp.status_code == 200

    def test_command_list_status_filter(self, client, admin_headers):
        register_device(client, "dev-1")
        enqueue(client, admin_headers, "dev-1", "ping")
        resp = client.get(
            "/admin/api/devices/dev-1/commands", params={"status": "sent"}, headers=admin_headers
        )
        assert resp.json()["commands"] == []

        bad = client.get("/admin/api/devices/dev-1/commands", params={"status": "bogus"}, headers=admin_headers)
        assert bad.status_code == 400

    def test_unknown_command(self, client, admin_headers):
        resp = client.get("/admin/api/commands/nope", headers=admin_headers)
        assert resp.status_code == 404
