#!/usr/bin/env python3
"""
Overlord Agent - Autonomous Static-Analysis Remediation

Runs the analyzer over a project, asks a language model for a fix per issue,
and applies (or stages for review) each fix with backup and syntax check,
until the analyzer reports zero issues or the iteration budget is spent.

Usage:
    python overlord.py run                          # Start a session, auto-apply fixes
    python overlord.py run --review --level 5       # Stage fixes for review instead
    python overlord.py status <session-id>
    python overlord.py changes <session-id> --status pending
    python overlord.py approve <change-id>
    python overlord.py serve --port 8001            # HTTP API
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, List, Optional

# Add modules to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from loguru import logger

from modules.persistence.init import ensure_schema
from modules.remediation.config import AgentConfig
from modules.remediation.engine import (
    ChangeApplyError,
    RemediationAgent,
    SessionNotFoundError,
    SessionStateError,
)
from modules.remediation.models import FileChangeStatus, SessionStatus

EXIT_CODES = {
    SessionStatus.COMPLETED: 0,
    SessionStatus.FAILED: 1,
    SessionStatus.STOPPED: 2,
}


# Configure loguru
def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging with loguru."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
        )


def _print_json(payload: Any) -> None:
    if isinstance(payload, list):
        payload = [item.model_dump(mode="json") for item in payload]
    elif hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, default=str))


def exit_code_for(status: Optional[SessionStatus]) -> int:
    return EXIT_CODES.get(status, 1) if status is not None else 1


async def run_command(args: argparse.Namespace, config: AgentConfig, agent: Optional[RemediationAgent] = None) -> int:
    """Execute one CLI subcommand and return the process exit code."""
    await ensure_schema()
    agent = agent or RemediationAgent(config=config)

    if args.command == "run":
        if args.session:
            session = await agent.run(args.session)
            if session is None:
                logger.error(f"Session not found: {args.session}")
                return 1
        else:
            session_id = await agent.start(
                analysis_level=args.level,
                auto_apply=False if args.review else None,
                max_iterations=args.max_iterations,
                max_retries=args.max_retries,
                scan_paths=args.paths or None,
                background=False,
            )
            session = await agent.status(session_id)

        logger.info("=" * 70)
        logger.info(
            f"Session {session.id}: {session.status.value} after {session.current_iteration} iteration(s), "
            f"{session.total_issues_fixed} fixed, {session.failed_issues_count} failed"
        )
        if session.error_message:
            logger.error(f"Error: {session.error_message}")
        if not session.auto_apply:
            pending = await agent.pending_changes(session.id)
            logger.info(f"{len(pending)} change(s) pending review: overlord.py changes {session.id}")
        _print_json(session)
        return exit_code_for(session.status)

    if args.command == "status":
        _print_json(await agent.status(args.session_id))
    elif args.command == "logs":
        _print_json(await agent.logs(args.session_id, limit=args.limit, after_id=args.after))
    elif args.command == "pause":
        _print_json(await agent.pause(args.session_id))
    elif args.command == "resume":
        # The process driving the session picks the change up on its next poll
        _print_json(await agent.resume(args.session_id, relaunch=False))
    elif args.command == "stop":
        _print_json(await agent.stop(args.session_id))
    elif args.command == "changes":
        status = FileChangeStatus(args.status) if args.status else None
        changes = await agent.changes(args.session_id, status=status)
        for change in changes:
            summary = change.change_summary or {}
            logger.info(f"{change.id}  {change.status.value:<8}  {change.file_path}:{summary.get('issue_line')}  {summary.get('issue_message', '')}")
        _print_json(changes)
    elif args.command == "approve":
        _print_json(await agent.approve_change(args.change_id))
    elif args.command == "reject":
        _print_json(await agent.reject_change(args.change_id, args.reason))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Overlord Agent - autonomous static-analysis remediation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes for `run`:
  0  completed (clean scan or iteration limit reached)
  1  failed
  2  stopped

Environment Variables:
  DATABASE_URL                 - Session database (default: local SQLite file)
  OVERLORD_AGENT_MODEL         - Model used for fixes (LiteLLM model name)
  OVERLORD_AGENT_PHPSTAN       - Path to the phpstan executable
  OPENAI_API_KEY / ANTHROPIC_API_KEY / ... - Provider keys read by LiteLLM
""",
    )
    parser.add_argument("--config", "-c", type=str, default="config.yaml", help="Path to configuration file (default: config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose/debug output")
    parser.add_argument("--log-file", type=str, help="Path to log file (optional)")
    parser.add_argument("--version", action="version", version="Overlord Agent v0.1")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start a session and drive it in the foreground")
    run_parser.add_argument("--level", "-l", type=int, help="Analyzer level 0-9 (default: from config)")
    run_parser.add_argument("--review", action="store_true", help="Stage fixes for review instead of applying them")
    run_parser.add_argument("--max-iterations", type=int, help="Iteration budget 1-100")
    run_parser.add_argument("--max-retries", type=int, help="Fix attempts per issue 1-10")
    run_parser.add_argument("--paths", nargs="*", help="Paths to analyse, relative to the project root")
    run_parser.add_argument("--session", type=str, help="Drive an existing idle/paused session instead of starting one")

    for name, help_text in (
        ("status", "Show session status"),
        ("pause", "Pause a running session"),
        ("resume", "Resume a paused session"),
        ("stop", "Stop a session"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("session_id")

    logs_parser = subparsers.add_parser("logs", help="Show session logs")
    logs_parser.add_argument("session_id")
    logs_parser.add_argument("--limit", type=int, default=100)
    logs_parser.add_argument("--after", type=int, help="Only entries with a log id greater than this")

    changes_parser = subparsers.add_parser("changes", help="List file changes of a session")
    changes_parser.add_argument("session_id")
    changes_parser.add_argument("--status", choices=[s.value for s in FileChangeStatus])

    approve_parser = subparsers.add_parser("approve", help="Apply a staged change")
    approve_parser.add_argument("change_id")

    reject_parser = subparsers.add_parser("reject", help="Reject a staged change")
    reject_parser.add_argument("change_id")
    reject_parser.add_argument("--reason", type=str)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8001")))

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("modules.api:app", host=args.host, port=args.port)
        sys.exit(0)

    try:
        config = AgentConfig.load(args.config)
        sys.exit(asyncio.run(run_command(args, config)))
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        sys.exit(130)
    except (SessionNotFoundError, SessionStateError, ChangeApplyError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
