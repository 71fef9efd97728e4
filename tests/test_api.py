"""Tests for the dashboard API."""

import pytest
from pathlib import Path

from fastapi.testclient import TestClient

from prism_workflow.api import create_app
from prism_workflow.lock import WorkspaceLockManager
from prism_workflow.session_logger import SessionLogger
from prism_workflow.session_store import SessionStore
from prism_workflow.workspace import WorkspaceManager


@pytest.fixture
def client(tmp_path: Path) -> TestClient:
    return TestClient(create_app(tmp_path))


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(WorkspaceManager(tmp_path))


class TestStatus:
    """Tests for /api/status."""

    def test_health(self, client: TestClient):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_uninitialized_workspace(self, client: TestClient):
        body = client.get("/api/status").json()
        assert body["initialized"] is False
        assert body["lock"]["held"] is False

    def test_lock_and_running_session(self, client: TestClient, tmp_path: Path, store: SessionStore):
        state = store.create({}, ["a"])
        store.start(state)
        handle = WorkspaceLockManager().acquire(tmp_path, session_id=state.session_id)
        try:
            body = client.get("/api/status").json()
        finally:
            handle.release()

        assert body["initialized"] is True
        assert body["lock"]["held"] is True
        assert body["lock"]["owner_session_id"] == state.session_id
        assert body["running_session_id"] == state.session_id
        assert body["total_sessions"] == 1


class TestSessions:
    """Tests for /api/sessions."""

    def test_list_and_filter(self, client: TestClient, store: SessionStore):
        first = store.create({}, ["a"])
        second = store.create({}, ["a"])
        store.start(second)
        store.interrupt(second, "stop")

        body = client.get("/api/sessions").json()
        assert body["total"] == 2
        assert [s["session_id"] for s in body["sessions"]] == [second.session_id, first.session_id]

        filtered = client.get("/api/sessions", params={"status": "interrupted"}).json()
        assert [s["session_id"] for s in filtered["sessions"]] == [second.session_id]

        page = client.get("/api/sessions", params={"page": 2, "page_size": 1}).json()
        assert [s["session_id"] for s in page["sessions"]] == [first.session_id]

    def test_detail_with_events(self, client: TestClient, store: SessionStore):
        state = store.create({"prd_path": "prd.md"}, ["a"])
        with SessionLogger(store.workspace, state.session_id) as logger:
            logger.log_session_start(["a"])

        body = client.get(f"/api/sessions/{state.session_id}").json()
        assert body["state"]["session_id"] == state.session_id
        assert body["state"]["inputs"] == {"prd_path": "prd.md"}
        assert body["active"] is False
        assert [e["type"] for e in body["events"]] == ["session_start"]

    def test_unknown_session(self, client: TestClient, store: SessionStore):
        store.workspace.ensure_structure()
        assert client.get("/api/sessions/sess-1234567890123").status_code == 404

    def test_corrupt_session(self, client: TestClient, store: SessionStore):
        state = store.create({}, ["a"])
        store.workspace.session_state_path(state.session_id).write_text("- not\n- a mapping\n")
        assert client.get(f"/api/sessions/{state.session_id}").status_code == 422


class TestControl:
    """Tests for /api/control/stop."""

    def test_stop_lifecycle(self, client: TestClient):
        assert client.get("/api/control/stop").json()["stop_requested"] is False

        response = client.post("/api/control/stop", json={"reason": "maintenance"})
        assert response.status_code == 200
        assert response.json()["success"] is True

        status = client.get("/api/control/stop").json()
        assert status["stop_requested"] is True
        assert status["reason"] == "maintenance"

        assert client.delete("/api/control/stop").json()["success"] is True
        assert client.delete("/api/control/stop").json()["success"] is False

    def test_stop_without_body(self, client: TestClient):
        assert client.post("/api/control/stop").status_code == 200
        assert client.get("/api/control/stop").json()["reason"] == "Stop requested via API"

    def test_no_project_path(self):
        client = TestClient(create_app())
        assert client.post("/api/control/stop").status_code == 400
