"""
Tests for the /api/agent router.

The agent is a mock; these tests cover request validation, response shapes
and error-to-status mapping.
"""

from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from modules.remediation.api import get_agent, router
from modules.remediation.engine import (
    ChangeApplyError,
    ChangeNotFoundError,
    RemediationAgent,
    SessionNotFoundError,
    SessionStateError,
)
from modules.remediation.models import (
    AgentSession,
    FileChange,
    FileChangeStatus,
    LogEntry,
    LogType,
    SessionStatus,
)


SESSION_ID = "5b0d7a52-2f9e-4c61-9d1e-0c3a4f7d2b11"


def _session(**overrides) -> AgentSession:
    values = dict(id=SESSION_ID, status=SessionStatus.RUNNING, current_iteration=2, total_scans=2, total_issues_found=7)
    values.update(overrides)
    return AgentSession(**values)


def _change(**overrides) -> FileChange:
    values = dict(
        id="chg-1",
        session_id=SESSION_ID,
        file_path="app/Models/User.php",
        original_content="<?php\nreturn $nme;\n",
        new_content="<?php\nreturn $name;\n",
        status=FileChangeStatus.PENDING,
        change_summary={"issue_line": 2, "diff_stats": {"additions": 1, "deletions": 1}},
    )
    values.update(overrides)
    return FileChange(**values)


@pytest.fixture
def agent():
    return MagicMock(spec=RemediationAgent)


@pytest.fixture
def client(agent):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_agent] = lambda: agent
    with TestClient(app) as test_client:
        yield test_client


class TestSessionEndpoints:
    """Start, status and control actions."""

    def test_start(self, client, agent):
        """Start passes the request through and returns the session id."""
        agent.start.return_value = SESSION_ID

        response = client.post("/api/agent/start", json={"analysis_level": 4, "auto_apply": False, "scan_paths": ["app"]})

        assert response.status_code == 200
        body = response.json()
        assert body["session_id"] == SESSION_ID
        assert body["status"] == "started"
        agent.start.assert_awaited_once_with(
            analysis_level=4,
            auto_apply=False,
            max_iterations=None,
            max_retries=None,
            scan_paths=["app"],
        )

    def test_start_validates_ranges(self, client, agent):
        """Out-of-range settings are rejected before reaching the agent."""
        response = client.post("/api/agent/start", json={"max_iterations": 500})
        assert response.status_code == 422
        agent.start.assert_not_called()

    def test_start_conflict(self, client, agent):
        """An already-active session maps to 409."""
        agent.start.side_effect = SessionStateError("Session abc is already running")
        response = client.post("/api/agent/start", json={})
        assert response.status_code == 409
        assert "already running" in response.json()["detail"]

    def test_get_session(self, client, agent):
        """Status returns counters and mode."""
        agent.status.return_value = _session(auto_apply=False)

        response = client.get(f"/api/agent/sessions/{SESSION_ID}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["mode"] == "review"
        assert body["current_iteration"] == 2
        assert body["total_issues_found"] == 7

    def test_active_session(self, client, agent):
        """The active-or-latest session is returned without knowing its id."""
        agent.current_session.return_value = _session(status=SessionStatus.PAUSED)

        response = client.get("/api/agent/sessions/active")

        assert response.status_code == 200
        assert response.json()["id"] == SESSION_ID
        assert response.json()["status"] == "paused"
        agent.status.assert_not_called()

    def test_active_session_none_yet(self, client, agent):
        agent.current_session.return_value = None
        response = client.get("/api/agent/sessions/active")
        assert response.status_code == 404

    def test_get_session_not_found(self, client, agent):
        agent.status.side_effect = SessionNotFoundError("Session not found: nope")
        response = client.get("/api/agent/sessions/nope")
        assert response.status_code == 404

    @pytest.mark.parametrize("action, status", [
        ("pause", SessionStatus.PAUSED),
        ("resume", SessionStatus.RUNNING),
        ("stop", SessionStatus.STOPPED),
    ])
    def test_control_actions(self, client, agent, action, status):
        """pause / resume / stop return the updated session."""
        getattr(agent, action).return_value = _session(status=status)

        response = client.post(f"/api/agent/sessions/{SESSION_ID}/{action}")

        assert response.status_code == 200
        assert response.json()["status"] == status.value

    def test_control_invalid_state(self, client, agent):
        """Invalid transitions map to 409."""
        agent.pause.side_effect = SessionStateError("Cannot pause a session that is completed")
        response = client.post(f"/api/agent/sessions/{SESSION_ID}/pause")
        assert response.status_code == 409


class TestLogEndpoints:
    """Log stream and cached last log."""

    def test_logs(self, client, agent):
        """Logs are returned oldest first with their type."""
        agent.logs.return_value = [
            LogEntry(id=1, session_id=SESSION_ID, type=LogType.INFO, message="Agent started (level 1, auto-apply mode)"),
            LogEntry(id=2, session_id=SESSION_ID, type=LogType.SCAN_COMPLETE, message="Found 7 issues", data={"issues_count": 7}),
        ]

        response = client.get(f"/api/agent/sessions/{SESSION_ID}/logs?limit=20")

        assert response.status_code == 200
        body = response.json()
        assert [entry["type"] for entry in body] == ["info", "scan_complete"]
        assert body[1]["data"] == {"issues_count": 7}
        agent.logs.assert_awaited_once_with(SESSION_ID, limit=20, after_id=None)

    def test_logs_after_id(self, client, agent):
        """``after_id`` is passed through for incremental polling."""
        agent.logs.return_value = []

        response = client.get(f"/api/agent/sessions/{SESSION_ID}/logs?after_id=41")

        assert response.status_code == 200
        assert response.json() == []
        agent.logs.assert_awaited_once_with(SESSION_ID, limit=100, after_id=41)

    def test_logs_limit_bounds(self, client, agent):
        response = client.get(f"/api/agent/sessions/{SESSION_ID}/logs?limit=0")
        assert response.status_code == 422

    def test_last_log(self, client, agent):
        """The cached last log is returned as-is (or null when expired)."""
        agent.status.return_value = _session()
        agent.last_log.return_value = {"type": "info", "message": "Starting iteration 2/50", "data": None, "timestamp": "t"}

        response = client.get(f"/api/agent/sessions/{SESSION_ID}/last-log")

        assert response.status_code == 200
        assert response.json()["last_log"]["message"] == "Starting iteration 2/50"

        agent.last_log.return_value = None
        assert client.get(f"/api/agent/sessions/{SESSION_ID}/last-log").json()["last_log"] is None


class TestChangeEndpoints:
    """Review of staged changes."""

    def test_list_changes_without_content(self, client, agent):
        """Content is omitted unless requested."""
        agent.changes.return_value = [_change()]

        response = client.get(f"/api/agent/sessions/{SESSION_ID}/changes?status=pending")

        assert response.status_code == 200
        body = response.json()
        assert body[0]["file_path"] == "app/Models/User.php"
        assert body[0]["new_content"] is None
        agent.changes.assert_awaited_once_with(SESSION_ID, status=FileChangeStatus.PENDING)

    def test_list_changes_with_content(self, client, agent):
        agent.changes.return_value = [_change()]
        response = client.get(f"/api/agent/sessions/{SESSION_ID}/changes?include_content=true")
        assert response.json()[0]["new_content"] == "<?php\nreturn $name;\n"

    def test_approve(self, client, agent):
        agent.approve_change.return_value = _change(status=FileChangeStatus.APPLIED, backup_path="/tmp/User.php.bak")

        response = client.post("/api/agent/changes/chg-1/approve")

        assert response.status_code == 200
        assert response.json()["status"] == "applied"
        assert response.json()["backup_path"] == "/tmp/User.php.bak"

    @pytest.mark.parametrize("error, status_code", [
        (ChangeNotFoundError("File change not found: chg-1"), 404),
        (SessionStateError("Change chg-1 is rejected"), 409),
        (ChangeApplyError("Parse error: syntax error, unexpected '}'"), 422),
    ])
    def test_approve_errors(self, client, agent, error, status_code):
        """Approval errors map to 404 / 409 / 422."""
        agent.approve_change.side_effect = error
        response = client.post("/api/agent/changes/chg-1/approve")
        assert response.status_code == status_code

    def test_reject_with_reason(self, client, agent):
        agent.reject_change.return_value = _change(status=FileChangeStatus.REJECTED, rejection_reason="too broad")

        response = client.post("/api/agent/changes/chg-1/reject", json={"reason": "too broad"})

        assert response.status_code == 200
        assert response.json()["rejection_reason"] == "too broad"
        agent.reject_change.assert_awaited_once_with("chg-1", "too broad")

    def test_reject_without_body(self, client, agent):
        agent.reject_change.return_value = _change(status=FileChangeStatus.REJECTED)
        response = client.post("/api/agent/changes/chg-1/reject")
        assert response.status_code == 200
        agent.reject_change.assert_awaited_once_with("chg-1", None)
