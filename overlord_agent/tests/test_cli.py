"""
Tests for the overlord.py command line.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import overlord
from modules.remediation.config import AgentConfig
from modules.remediation.engine import RemediationAgent
from modules.remediation.models import AgentSession, FileChangeStatus, SessionStatus


@pytest.fixture
def agent():
    mock = MagicMock(spec=RemediationAgent)
    mock.status.return_value = AgentSession(id="sess-1", status=SessionStatus.COMPLETED, current_iteration=3)
    mock.start.return_value = "sess-1"
    mock.pending_changes.return_value = []
    return mock


class TestParser:
    """Argument parsing."""

    def test_run_options(self):
        args = overlord.build_parser().parse_args(
            ["run", "--level", "6", "--review", "--max-iterations", "10", "--paths", "app", "routes"]
        )
        assert args.command == "run"
        assert args.level == 6
        assert args.review is True
        assert args.max_iterations == 10
        assert args.paths == ["app", "routes"]
        assert args.session is None

    def test_changes_status_choices(self):
        args = overlord.build_parser().parse_args(["changes", "sess-1", "--status", "pending"])
        assert args.status == "pending"
        with pytest.raises(SystemExit):
            overlord.build_parser().parse_args(["changes", "sess-1", "--status", "merged"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            overlord.build_parser().parse_args([])


class TestExitCodes:
    @pytest.mark.parametrize("status, code", [
        (SessionStatus.COMPLETED, 0),
        (SessionStatus.FAILED, 1),
        (SessionStatus.STOPPED, 2),
        (SessionStatus.RUNNING, 1),
        (None, 1),
    ])
    def test_exit_code_for(self, status, code):
        assert overlord.exit_code_for(status) == code


class TestRunCommand:
    """Dispatch to the agent."""

    @pytest.mark.asyncio
    async def test_run_starts_in_foreground(self, agent):
        """`run --review` starts a foreground session in review mode."""
        args = overlord.build_parser().parse_args(["run", "--review", "--level", "2"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            code = await overlord.run_command(args, AgentConfig(), agent=agent)

        assert code == 0
        agent.start.assert_awaited_once_with(
            analysis_level=2,
            auto_apply=False,
            max_iterations=None,
            max_retries=None,
            scan_paths=None,
            background=False,
        )

    @pytest.mark.asyncio
    async def test_run_existing_session(self, agent):
        """`run --session` drives an existing session and maps its status."""
        agent.run.return_value = AgentSession(id="sess-1", status=SessionStatus.STOPPED)
        args = overlord.build_parser().parse_args(["run", "--session", "sess-1"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            code = await overlord.run_command(args, AgentConfig(), agent=agent)

        assert code == 2
        agent.run.assert_awaited_once_with("sess-1")
        agent.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_unknown_session(self, agent):
        agent.run.return_value = None
        args = overlord.build_parser().parse_args(["run", "--session", "missing"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            assert await overlord.run_command(args, AgentConfig(), agent=agent) == 1

    @pytest.mark.asyncio
    async def test_resume_does_not_relaunch(self, agent):
        """The CLI only flips the status; the driving process continues the loop."""
        agent.resume.return_value = AgentSession(id="sess-1", status=SessionStatus.RUNNING)
        args = overlord.build_parser().parse_args(["resume", "sess-1"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            assert await overlord.run_command(args, AgentConfig(), agent=agent) == 0
        agent.resume.assert_awaited_once_with("sess-1", relaunch=False)

    @pytest.mark.asyncio
    async def test_changes_filter(self, agent):
        agent.changes.return_value = []
        args = overlord.build_parser().parse_args(["changes", "sess-1", "--status", "pending"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            await overlord.run_command(args, AgentConfig(), agent=agent)
        agent.changes.assert_awaited_once_with("sess-1", status=FileChangeStatus.PENDING)

    @pytest.mark.asyncio
    async def test_logs_after_id(self, agent):
        """`logs --after` only asks for entries newer than the given id."""
        agent.logs.return_value = []
        args = overlord.build_parser().parse_args(["logs", "sess-1", "--limit", "5", "--after", "42"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            await overlord.run_command(args, AgentConfig(), agent=agent)
        agent.logs.assert_awaited_once_with("sess-1", limit=5, after_id=42)

    @pytest.mark.asyncio
    async def test_reject_with_reason(self, agent):
        agent.reject_change.return_value = MagicMock(model_dump=lambda mode: {"id": "chg-1"})
        args = overlord.build_parser().parse_args(["reject", "chg-1", "--reason", "not needed"])
        with patch("overlord.ensure_schema", new=AsyncMock()):
            await overlord.run_command(args, AgentConfig(), agent=agent)
        agent.reject_change.assert_awaited_once_with("chg-1", "not needed")


class TestMain:
    def test_state_error_exits_1(self, agent):
        """Known agent errors exit with status 1."""
        from modules.remediation.engine import SessionStateError

        with patch("overlord.run_command", new=AsyncMock(side_effect=SessionStateError("already running"))), \
                patch("overlord.AgentConfig.load", return_value=AgentConfig()):
            with pytest.raises(SystemExit) as exc:
                overlord.main(["status", "sess-1"])
        assert exc.value.code == 1
