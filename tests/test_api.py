# SPDX-License-Identifier: GPL-3.0-only
# Copyright (C) 2026 The Startpage Authors

"""
Startpage API Endpoint Tests

Tests for the FastAPI endpoints. The running executor is replaced with one
built around test doubles, so no git, npm or GitHub access happens.
Run with: pytest tests/test_api.py -v
"""

import time

import pytest
from fastapi.testclient import TestClient

from startpage import __version__, respawn
from startpage.config import config
from startpage.executor import CommandResult, UpdateExecutor
from startpage.main import app, get_executor
from startpage.registry import ReleaseInfo
from startpage.respawn import ProcessRespawner

from conftest import FakeRegistry, FakeRunner, RecordingRespawner

ROOT_TOKEN = "root-secret-5f1c"
USER_KEY = "user-key-9b2e"
ROOT = {"Authorization": f"Bearer {ROOT_TOKEN}"}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def client(monkeypatch):
    """Create test client with app lifespan and known tokens."""
    monkeypatch.setattr(config.server, "root_token", ROOT_TOKEN)
    monkeypatch.setattr(config.server, "api_key", USER_KEY)
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def use_executor(make_executor):
    """Install an executor built from test doubles for the request handlers."""

    def _use(**kwargs) -> UpdateExecutor:
        executor = make_executor(**kwargs)
        app.dependency_overrides[get_executor] = lambda: executor
        return executor

    return _use


# =============================================================================
# HEALTH ENDPOINT TESTS
# =============================================================================

def test_health_endpoint(client):
    """Test health endpoint needs no authentication."""
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == __version__
    assert data["restartPending"] is False
    assert isinstance(data["uptime"], float)


# =============================================================================
# AUTHENTICATION TESTS
# =============================================================================

def test_update_requires_authentication(client, use_executor):
    """Test anonymous requests are rejected."""
    use_executor()

    response = client.get("/api/admin/update/check")

    assert response.status_code == 401
    assert response.json()["ok"] is False


def test_update_rejects_user_key(client, use_executor):
    """Test a non-root token is forbidden."""
    use_executor()

    response = client.post("/api/admin/update/pull", headers={"X-Api-Key": USER_KEY})

    assert response.status_code == 403
    assert "root" in response.json()["message"]


def test_update_rejects_wrong_token(client, use_executor):
    """Test an unknown bearer token is treated as anonymous."""
    use_executor()

    response = client.post("/api/admin/update/restart", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401


def test_update_disabled_without_root_token(client, use_executor, monkeypatch):
    """Test the update API is unavailable when no root token is configured."""
    use_executor()
    monkeypatch.setattr(config.server, "root_token", None)

    response = client.get("/api/admin/update/status", headers=ROOT)

    assert response.status_code == 503


# =============================================================================
# CHECK ENDPOINT TESTS
# =============================================================================

def test_check_endpoint(client, use_executor):
    """Test the check payload uses the dashboard's field names."""
    registry = FakeRegistry(
        release=ReleaseInfo(version="1.1.0", tag_name="v1.1.0", patch=1, notes="Fixes", published_at="2026-03-01T00:00:00Z"),
        files=["frontend/src/App.tsx", "README.md"],
    )
    use_executor(registry=registry)

    response = client.get("/api/admin/update/check", headers=ROOT)

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    data = body["data"]
    assert data["current"] == "1.0.0"
    assert data["currentPatch"] == 0
    assert data["latest"] == "1.1.0"
    assert data["latestPatch"] == 1
    assert data["hasUpdate"] is True
    assert data["releaseNotes"] == "Fixes"
    assert data["releaseDate"] == "2026-03-01T00:00:00Z"
    assert data["frontendOnly"] is True
    assert data["needsRestart"] is False
    assert data["needsDeps"] is False
    assert data["needsMigration"] is False
    assert data["hasGit"] is True
    assert data["changedFiles"] == ["frontend/src/App.tsx", "README.md"]


def test_check_endpoint_unexpected_error(client, use_executor):
    """Test an unexpected failure during check is reported, not raised."""

    class BrokenRegistry(FakeRegistry):
        async def latest_release(self):
            raise RuntimeError("boom")

    use_executor(registry=BrokenRegistry())

    response = client.get("/api/admin/update/check", headers=ROOT)

    assert response.status_code == 500
    assert response.json() == {"ok": False, "message": "Update check failed"}


# =============================================================================
# OPERATION ENDPOINT TESTS
# =============================================================================

def test_pull_endpoint(client, use_executor):
    """Test a successful pull returns git's output."""
    use_executor(runner=FakeRunner({"git pull origin main": CommandResult(0, "Fast-forward\n")}))

    response = client.post("/api/admin/update/pull", headers=ROOT)

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["data"]["output"] == "Fast-forward\n"


def test_pull_endpoint_without_git(client, use_executor):
    """Test pull reports a client error when git is unavailable."""
    use_executor(runner=FakeRunner({"git --version": FileNotFoundError("git")}))

    response = client.post("/api/admin/update/pull", headers=ROOT)

    assert response.status_code == 400
    assert response.json()["ok"] is False


def test_deps_endpoint_failure(client, use_executor):
    """Test a failed install is a server error naming the root."""
    use_executor(runner=FakeRunner({("npm install", "backend"): CommandResult(1, "", "ERR!")}))

    response = client.post("/api/admin/update/deps", headers=ROOT)

    assert response.status_code == 500
    assert "backend" in response.json()["message"]


def test_full_update_endpoint_defaults(client, use_executor):
    """Test a full update without a body only pulls."""
    runner = FakeRunner()
    respawner = RecordingRespawner()
    use_executor(runner=runner, respawner=respawner)

    response = client.post("/api/admin/update/full", headers=ROOT)

    assert response.status_code == 200
    assert "npm install" not in runner.commands()
    assert respawner.calls == 0


def test_full_update_endpoint_with_flags(client, use_executor):
    """Test camelCase flags select install and restart."""
    runner = FakeRunner()
    respawner = RecordingRespawner()
    executor = use_executor(runner=runner, respawner=respawner)

    response = client.post(
        "/api/admin/update/full",
        headers=ROOT,
        json={"needsDeps": True, "needsRestart": True},
    )

    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert "npm install" in runner.commands()
    assert executor.status.restart_pending is True


# =============================================================================
# ERROR ENVELOPE TESTS
# =============================================================================

def test_invalid_body_uses_error_envelope(client, use_executor):
    """Test request validation failures use the API error envelope."""
    runner = FakeRunner()
    use_executor(runner=runner)

    response = client.post("/api/admin/update/full", headers=ROOT, json={"needsDeps": "sometimes"})

    assert response.status_code == 422
    body = response.json()
    assert body["ok"] is False
    assert "needsDeps" in body["message"]
    assert "detail" not in body
    assert runner.calls == []


def test_unknown_route_uses_error_envelope(client):
    """Test routing errors use the API error envelope."""
    response = client.get("/api/admin/update/nope", headers=ROOT)

    assert response.status_code == 404
    assert response.json()["ok"] is False


def test_wrong_method_uses_error_envelope(client):
    """Test a wrong HTTP method uses the API error envelope."""
    response = client.get("/api/admin/update/pull", headers=ROOT)

    assert response.status_code == 405
    assert response.json()["ok"] is False
    assert "POST" in response.headers["allow"]


def test_status_endpoint(client, use_executor):
    """Test the status endpoint reports the executor stage."""
    use_executor()

    response = client.get("/api/admin/update/status", headers=ROOT)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["stage"] == "idle"
    assert data["restart_pending"] is False


# =============================================================================
# RESTART ENDPOINT TESTS
# =============================================================================

class _Process:
    pid = 4242

    def poll(self):
        return None


def test_restart_endpoint_responds_before_exit(client, use_executor, deployment, monkeypatch):
    """Test restart answers first, then spawns once and terminates."""
    launched = []
    terminated = []
    monkeypatch.setattr(respawn.subprocess, "Popen", lambda args, **kwargs: launched.append(args) or _Process())

    respawner = ProcessRespawner(
        working_directory=deployment,
        command=["node", "server.js"],
        restart_delay=0.5,
        exit_delay=0,
        terminate=lambda: terminated.append(True),
    )
    respawner.windows = False
    use_executor(respawner=respawner)

    first = client.post("/api/admin/update/restart", headers=ROOT)
    second = client.post("/api/admin/update/restart", headers=ROOT)

    assert first.status_code == 200
    assert first.json()["ok"] is True
    assert second.status_code == 200
    assert "already" in second.json()["data"]["message"]
    assert terminated == []

    deadline = time.monotonic() + 5
    while not terminated and time.monotonic() < deadline:
        time.sleep(0.05)

    assert terminated == [True]
    assert launched == [["node", "server.js"]]
