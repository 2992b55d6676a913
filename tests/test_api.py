"""Tests for the control API routes and authentication."""

import time

import pytest
from fastapi.testclient import TestClient

from guardian.auth import build_signature_payload, compute_signature
from guardian.main import create_app
from guardian.process import WorkerSupervisor

SECRET = "secret-123"
BEARER = {"Authorization": f"Bearer {SECRET}"}


@pytest.fixture
def api(make_config):
    config = make_config(secret=SECRET)
    supervisor = WorkerSupervisor(config)
    supervisor.stop_grace_seconds = 2.0
    app = create_app(config, supervisor=supervisor)
    with TestClient(app) as client:
        yield client, supervisor


def signed(method: str, path: str, nonce: str, body: str = "") -> dict:
    timestamp = str(int(time.time() * 1000))
    payload = build_signature_payload(method, path, timestamp, nonce, body)
    return {
        "x-guardian-ts": timestamp,
        "x-guardian-nonce": nonce,
        "x-guardian-signature": compute_signature(SECRET, payload),
    }


class TestHealthz:
    def test_needs_no_auth(self, api):
        client, _ = api
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["service"] == "guardian"
        assert isinstance(data["ts"], int)


class TestAuth:
    def test_missing_auth_is_401(self, api):
        client, _ = api
        response = client.get("/status")

        assert response.status_code == 401
        data = response.json()
        assert data["ok"] is False
        assert data["error"].startswith("Missing auth")

    def test_wrong_bearer_is_401(self, api):
        client, _ = api
        response = client.get("/status", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert SECRET not in response.text

    @pytest.mark.parametrize("param", ["token", "k"])
    def test_query_token(self, api, param):
        client, _ = api
        assert client.get(f"/status?{param}={SECRET}").status_code == 200

    def test_signed_request_and_replay(self, api):
        client, _ = api
        headers = signed("GET", "/status", "nonce-1")

        assert client.get("/status", headers=headers).status_code == 200

        replay = client.get("/status", headers=headers)
        assert replay.status_code == 401
        assert "replay" in replay.json()["error"]

    def test_signed_post_covers_body(self, api):
        client, supervisor = api
        body = '{"reason":"deploy"}'
        headers = signed("POST", "/restart", "nonce-2", body)
        headers["content-type"] = "application/json"

        tampered = client.post("/restart", content='{"reason":"other"}', headers=headers)
        assert tampered.status_code == 401

        response = client.post("/restart", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["restarted"] is True

    def test_unauthenticated_unknown_route_is_401(self, api):
        client, _ = api
        assert client.get("/nope").status_code == 401


class TestRoutes:
    def test_status_snapshot(self, api):
        client, supervisor = api
        data = client.get("/status", headers=BEARER).json()

        assert data["ok"] is True
        assert isinstance(data["guardianPid"], int)
        assert data["uptimeMs"] >= 0
        worker = data["worker"]
        assert worker["running"] is True
        assert worker["pid"] == supervisor.pid
        assert isinstance(worker["startedAtMs"], int)
        assert worker["heartbeatAgeMs"] is None
        assert worker["staleHeartbeat"] is False
        assert worker["lastExit"] is None
        assert worker["manualStop"] is False
        assert worker["cooldownRemainingMs"] == 0
        assert worker["recentRestartCount"] == 0

    def test_stop_then_start(self, api):
        client, supervisor = api

        stopped = client.post("/stop", headers=BEARER).json()
        assert stopped["worker"]["running"] is False
        assert stopped["worker"]["manualStop"] is True
        assert stopped["worker"]["lastExit"]["code"] == -15
        assert "atMs" in stopped["worker"]["lastExit"]
        assert "started" not in stopped

        started = client.post("/start", headers=BEARER).json()
        assert started["started"] is True
        assert started["worker"]["running"] is True
        assert started["worker"]["manualStop"] is False

        again = client.post("/start", headers=BEARER).json()
        assert again["started"] is False

    def test_restart_replaces_worker(self, api):
        client, supervisor = api
        first_pid = supervisor.pid

        data = client.post("/restart", headers=BEARER).json()

        assert data["restarted"] is True
        assert data["worker"]["running"] is True
        assert data["worker"]["pid"] != first_pid

    def test_form_post_redirects_to_mobile(self, api):
        client, supervisor = api
        response = client.post(f"/stop?token={SECRET}", data={"action": "stop"}, follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == f"/mobile?token={SECRET}"
        assert not supervisor.running

    def test_non_form_post_with_token_returns_json(self, api):
        client, _ = api
        response = client.post(f"/start?token={SECRET}", json={})
        assert response.status_code == 200
        assert "started" in response.json()

    def test_logs_tail_is_clamped(self, api):
        client, supervisor = api
        for i in range(30):
            supervisor.logs.append("stdout", f"line {i}")

        logs = client.get("/logs?tail=12", headers=BEARER).json()["logs"]
        assert len(logs) == 12
        assert logs[-1]["line"] == "line 29"
        assert set(logs[-1]) == {"ts", "stream", "line"}
        assert logs[-1]["stream"] == "stdout"

        assert len(client.get("/logs?tail=1", headers=BEARER).json()["logs"]) == 10

    def test_logs_invalid_tail_uses_default(self, api):
        client, supervisor = api
        response = client.get("/logs?tail=many", headers=BEARER)
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert len(response.json()["logs"]) == len(supervisor.logs)

    def test_mobile_page(self, api):
        client, _ = api
        response = client.get(f"/mobile?token={SECRET}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        html = response.text
        assert "Running" in html
        assert f'action="/restart?token={SECRET}"' in html
        assert f'action="/stop?token={SECRET}"' in html
        assert f'action="/start?token={SECRET}"' in html
        assert "guardianPid" in html

    def test_unknown_route_is_404(self, api):
        client, _ = api
        response = client.get("/nope", headers=BEARER)

        assert response.status_code == 404
        assert response.json() == {"ok": False, "error": "Not found."}

    def test_wrong_method_is_404(self, api):
        client, _ = api
        assert client.get("/restart", headers=BEARER).status_code == 404
        assert client.post("/status", headers=BEARER).status_code == 404


def test_shutdown_stops_worker(make_config):
    config = make_config(secret=SECRET)
    supervisor = WorkerSupervisor(config)
    supervisor.stop_grace_seconds = 2.0

    with TestClient(create_app(config, supervisor=supervisor)):
        assert supervisor.running

    assert not supervisor.running
    assert supervisor.logs.tail(1)[0].line == "Shutdown complete."
