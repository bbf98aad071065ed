"""
Remediation Agent - Session Orchestrator

Drives one session through the remediation loop:
1. Static analysis scan (AnalysisRunner)
2. Per-issue fix generation (FixGenerator + language-model collaborator)
3. Safe apply or staging for review (FileMutator)
4. Audit trail (ChangeLedger)

until the scan comes back clean, the iteration budget is spent, or the
session is stopped / fails. Also exposes the caller-facing control surface
(start, status, pause, resume, stop, approve / reject staged changes).
"""

from __future__ import annotations

import asyncio
import difflib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from loguru import logger

from .analysis import AnalysisError, AnalysisRequest, AnalysisRunner
from .config import AgentConfig
from .generator import FixGenerator, FixResult, build_context_window, normalize_content
from .ledger import ChangeLedger, TTLCache
from .llm import LiteLLMCollaborator, LLMCollaborator
from .models import (
    AgentSession,
    FailureStage,
    FileChange,
    FileChangeStatus,
    Issue,
    IssueOutcome,
    LogEntry,
    LogType,
    SessionStatus,
    utcnow,
)
from .mutator import FileMutator


# =============================================================================
# ERRORS
# =============================================================================


class SessionNotFoundError(LookupError):
    """No session with the requested id."""


class ChangeNotFoundError(SessionNotFoundError):
    """No file change with the requested id."""


class SessionStateError(RuntimeError):
    """The requested control action is not valid in the current state."""


class ChangeApplyError(RuntimeError):
    """An approved change could not be written."""


def diff_stats(original: str, new: str) -> Dict[str, int]:
    additions = deletions = 0
    matcher = difflib.SequenceMatcher(a=original.splitlines(), b=new.splitlines(), autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            deletions += i2 - i1
        if tag in ("replace", "insert"):
            additions += j2 - j1
    return {"additions": additions, "deletions": deletions}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _age_seconds(value: datetime) -> float:
    return (utcnow() - _as_utc(value)).total_seconds()


# =============================================================================
# AGENT
# =============================================================================


class RemediationAgent:
    """
    Owns the session state machine.

    idle -> running -> {paused, completed, failed, stopped}
    paused -> {running, stopped}

    Only one loop per session is advanced by an agent instance at a time.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        store: Optional[Any] = None,
        runner: Optional[AnalysisRunner] = None,
        generator: Optional[FixGenerator] = None,
        mutator: Optional[FileMutator] = None,
        ledger: Optional[ChangeLedger] = None,
        collaborator: Optional[LLMCollaborator] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.config = config or AgentConfig()
        project_root = Path(self.config.project_root)

        if store is None:
            from modules.persistence.session_store import SessionStore  # persistence imports our models

            store = SessionStore()
        self.store = store

        self.mutator = mutator or FileMutator(
            project_root,
            backup_dir=self.config.backup_dir,
            max_file_bytes=self.config.max_file_bytes,
            php_binary=self.config.php_binary,
        )

        analysis = self.config.analysis
        self.runner = runner or AnalysisRunner(
            project_root,
            executable=analysis.executable,
            default_paths=analysis.default_paths,
            default_level=analysis.level,
            timeout_seconds=analysis.timeout_seconds,
            config_file=analysis.config_file,
            baseline_file=analysis.baseline_file,
            memory_limit=analysis.memory_limit,
        )

        if generator is None:
            llm = self.config.llm
            collaborator = collaborator or LiteLLMCollaborator(
                model=llm.model,
                fallback_models=llm.fallback_models,
                timeout_seconds=llm.timeout_seconds,
                temperature=llm.temperature,
                max_tokens=llm.max_tokens,
            )
            generator = FixGenerator(
                collaborator,
                max_retries=self.config.max_retries,
                syntax_validator=self.mutator.check_syntax,
                content_validator=self._analyzer_validator if analysis.validate_fixes else None,
            )
        self.generator = generator

        self.ledger = ledger or ChangeLedger(
            self.store,
            cache=cache,
            last_log_ttl_seconds=self.config.last_log_ttl_seconds,
        )

        self._running: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._signals: Dict[str, asyncio.Event] = {}

    # =========================================================================
    # CONTROL SURFACE
    # =========================================================================

    async def start(
        self,
        *,
        analysis_level: Optional[int] = None,
        auto_apply: Optional[bool] = None,
        max_iterations: Optional[int] = None,
        max_retries: Optional[int] = None,
        scan_paths: Optional[Sequence[str]] = None,
        background: bool = True,
    ) -> str:
        """
        Create a session and start its loop.

        Returns the session id. With ``background=False`` the loop is awaited
        before returning.

        Raises:
            ValueError: Settings out of range.
            SessionStateError: Another session is still active.
        """
        level = self.config.analysis.level if analysis_level is None else int(analysis_level)
        iterations = self.config.max_iterations if max_iterations is None else int(max_iterations)
        retries = self.config.max_retries if max_retries is None else int(max_retries)
        if not 0 <= level <= 9:
            raise ValueError(f"analysis_level must be between 0 and 9 (got {level})")
        if not 1 <= iterations <= 100:
            raise ValueError(f"max_iterations must be between 1 and 100 (got {iterations})")
        if not 1 <= retries <= 10:
            raise ValueError(f"max_retries must be between 1 and 10 (got {retries})")

        await self.recover_stale_sessions()
        active = await self.store.find_active_session()
        if active is not None:
            raise SessionStateError(f"Session {active.id} is already {active.status.value}")

        session = await self.store.create_session(
            analysis_level=level,
            auto_apply=self.config.auto_apply if auto_apply is None else bool(auto_apply),
            max_iterations=iterations,
            max_retries=retries,
            scan_paths=list(scan_paths or []),
        )
        await self.ledger.record_log(
            session.id,
            LogType.INFO,
            "Agent session created",
            {
                "analysis_level": session.analysis_level,
                "auto_apply": session.auto_apply,
                "max_iterations": session.max_iterations,
                "scan_paths": session.scan_paths,
            },
        )

        if background:
            self._launch(session.id)
        else:
            await self.run(session.id)
        return session.id

    async def status(self, session_id: str) -> AgentSession:
        return await self._require(session_id)

    async def current_session(self) -> Optional[AgentSession]:
        """The active session, else the most recent one. None before the first start."""
        await self.recover_stale_sessions()
        session = await self.store.find_active_session()
        if session is None:
            latest = await self.store.list_sessions(limit=1)
            session = latest[0] if latest else None
        return session

    async def recover_stale_sessions(self) -> List[AgentSession]:
        """
        Mark active sessions that nothing is driving as failed.

        - idle for longer than ``stale_idle_seconds`` (never picked up)
        - running / paused with no session update or log entry for
          ``stale_running_seconds`` (the driving process died)

        Sessions advanced by this agent are never touched.
        """
        recovered: List[AgentSession] = []
        active = [SessionStatus.IDLE, SessionStatus.RUNNING, SessionStatus.PAUSED]
        for session in await self.store.list_sessions(limit=None, statuses=active):
            if self._is_owned(session.id):
                continue

            if session.status == SessionStatus.IDLE:
                idle_for = _age_seconds(session.created_at)
                if idle_for < self.config.stale_idle_seconds:
                    continue
                reason = (
                    f"Session was stuck in idle status for {int(idle_for)}s and has been marked as failed. "
                    "Please start a new session."
                )
            else:
                quiet_for = await self._seconds_since_activity(session)
                if quiet_for < self.config.stale_running_seconds:
                    continue
                reason = (
                    f"Session was {session.status.value} with no activity for {int(quiet_for)}s "
                    "and has been marked as failed."
                )

            failed = await self.store.transition_session(
                session.id, SessionStatus.FAILED, [session.status], error_message=reason
            )
            if failed is None:
                continue
            logger.warning(f"Recovered stale session {session.id}: {reason}")
            await self.ledger.record_log(session.id, LogType.ERROR, reason, {"previous_status": session.status.value})
            recovered.append(failed)
        return recovered

    async def pause(self, session_id: str) -> AgentSession:
        session = await self._require(session_id)
        paused = await self.store.transition_session(session_id, SessionStatus.PAUSED, [SessionStatus.RUNNING])
        if paused is None:
            raise SessionStateError(f"Cannot pause a session that is {session.status.value}")
        await self.ledger.record_log(session_id, LogType.INFO, "Agent paused by user")
        self._notify(session_id)
        return paused

    async def resume(self, session_id: str, relaunch: bool = True) -> AgentSession:
        """
        paused -> running. With ``relaunch`` the loop is restarted in this
        process when no local task owns the session.
        """
        session = await self._require(session_id)

        if session.status == SessionStatus.IDLE:
            # Created but never picked up (e.g. the process restarted)
            if relaunch and not self._is_owned(session_id):
                self._launch(session_id)
            return session

        resumed = await self.store.transition_session(session_id, SessionStatus.RUNNING, [SessionStatus.PAUSED])
        if resumed is None:
            raise SessionStateError(f"Cannot resume a session that is {session.status.value}")
        await self.ledger.record_log(session_id, LogType.INFO, "Agent resumed by user")
        self._notify(session_id)

        if relaunch and not self._is_owned(session_id):
            self._launch(session_id)
        return resumed

    async def stop(self, session_id: str) -> AgentSession:
        session = await self._require(session_id)
        stopped = await self.store.transition_session(
            session_id,
            SessionStatus.STOPPED,
            [SessionStatus.IDLE, SessionStatus.RUNNING, SessionStatus.PAUSED],
        )
        if stopped is None:
            raise SessionStateError(f"Cannot stop a session that is {session.status.value}")
        await self.ledger.record_log(session_id, LogType.INFO, "Stop requested by user")
        self._notify(session_id)
        return stopped

    async def logs(
        self, session_id: str, limit: Optional[int] = 100, after_id: Optional[int] = None
    ) -> List[LogEntry]:
        """Oldest first; with ``after_id`` only entries newer than that log id."""
        await self._require(session_id)
        return await self.store.list_logs(session_id, limit=limit, after_id=after_id)

    def last_log(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.ledger.last_log(session_id)

    async def changes(self, session_id: str, status: Optional[FileChangeStatus] = None) -> List[FileChange]:
        await self._require(session_id)
        return await self.store.list_file_changes(session_id, status=status)

    async def pending_changes(self, session_id: str) -> List[FileChange]:
        return await self.changes(session_id, status=FileChangeStatus.PENDING)

    async def approve_change(self, change_id: str) -> FileChange:
        """
        Apply a staged change through the FileMutator (syntax check + backup).

        The change is claimed (pending -> applied) before the write, so a
        concurrent approve or reject of the same change is refused. A failed
        write puts it back to pending.

        Raises:
            ChangeNotFoundError: Unknown change.
            SessionStateError: Change is not pending.
            ChangeApplyError: The write was rejected or failed.
        """
        change = await self._claim_change(change_id, FileChangeStatus.APPLIED, "approved")

        current = await asyncio.to_thread(self.mutator.read, change.file_path)
        if current.success and current.content != change.original_content:
            await self.ledger.record_log(
                change.session_id,
                LogType.WARNING,
                f"{change.file_path} changed since the fix was staged",
                {"change_id": change_id, "file": change.file_path},
            )

        write = await asyncio.to_thread(self.mutator.write, change.file_path, change.new_content, True)
        if not write.success:
            await self.store.transition_file_change(change_id, FileChangeStatus.PENDING, [FileChangeStatus.APPLIED])
            await self.ledger.record_log(
                change.session_id,
                LogType.ERROR,
                f"Failed to apply approved change to {change.file_path}: {write.error}",
                {"change_id": change_id, "file": change.file_path, "line": write.line},
            )
            raise ChangeApplyError(write.error or "write failed")

        updated = await self.store.update_file_change(change_id, backup_path=write.backup_path)
        await self.ledger.record_log(
            change.session_id,
            LogType.FIX_APPLIED,
            f"Approved fix applied to {change.file_path}",
            {"change_id": change_id, "file": change.file_path, "backup_path": write.backup_path},
        )
        return updated

    async def reject_change(self, change_id: str, reason: Optional[str] = None) -> FileChange:
        updated = await self._claim_change(change_id, FileChangeStatus.REJECTED, "rejected", rejection_reason=reason)
        await self.ledger.record_log(
            updated.session_id,
            LogType.WARNING,
            f"Fix rejected for {updated.file_path}" + (f": {reason}" if reason else ""),
            {"change_id": change_id, "file": updated.file_path, "reason": reason},
        )
        return updated

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[AgentSession]:
        """Wait for a background loop started by this agent, then return the session."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.store.get_session(session_id)

    # =========================================================================
    # LOOP
    # =========================================================================

    async def run(self, session_id: str) -> Optional[AgentSession]:
        """
        Advance a session until it converges, hits its iteration cap, or is
        stopped. Any unexpected exception marks the session failed.
        """
        if session_id in self._running:
            logger.warning(f"Session {session_id} is already being advanced by this agent")
            return await self.store.get_session(session_id)

        session = await self.store.get_session(session_id)
        if session is None:
            logger.error(f"Cannot run unknown session {session_id}")
            return None
        if session.is_terminal:
            logger.info(f"Session {session_id} is already {session.status.value}")
            return session

        self._running.add(session_id)
        try:
            return await self._run_loop(session)
        except Exception as e:
            logger.exception(f"Agent loop for session {session_id} failed")
            await self.ledger.record_log(
                session_id,
                LogType.ERROR,
                f"Agent execution failed: {e}",
                {"exception": type(e).__name__},
            )
            return await self._set_status(session_id, SessionStatus.FAILED, error_message=str(e) or type(e).__name__)
        finally:
            self._running.discard(session_id)
            self._signals.pop(session_id, None)

    async def _run_loop(self, session: AgentSession) -> AgentSession:
        session_id = session.id

        if session.status == SessionStatus.IDLE:
            session = await self._set_status(session_id, SessionStatus.RUNNING)
            if session.status != SessionStatus.RUNNING:
                return session

        verb = "started" if session.current_iteration == 0 else f"restarted at iteration {session.current_iteration}"
        await self.ledger.record_log(
            session_id,
            LogType.INFO,
            f"Agent {verb} (level {session.analysis_level}, {session.mode} mode)",
            {"max_iterations": session.max_iterations, "max_retries": session.max_retries},
        )

        last_issue_count = 0

        while session.current_iteration < session.max_iterations:
            session = await self._reload(session_id)

            if session.status == SessionStatus.STOPPED:
                await self.ledger.record_log(session_id, LogType.INFO, "Agent stopped by user")
                return session

            if session.status == SessionStatus.PAUSED:
                session = await self._wait_while_paused(session)
                if session.status != SessionStatus.RUNNING:
                    return session

            if session.status != SessionStatus.RUNNING:
                logger.warning(f"Session {session_id} is {session.status.value}, leaving loop")
                return session

            session = await self.store.increment_session(session_id, current_iteration=1)
            iteration = session.current_iteration
            await self.ledger.record_log(
                session_id,
                LogType.INFO,
                f"Starting iteration {iteration}/{session.max_iterations}",
                {"iteration": iteration},
            )

            try:
                scan = await asyncio.to_thread(self.runner.scan, self._analysis_request(session))
            except AnalysisError as e:
                await self.ledger.record_log(
                    session_id,
                    LogType.ERROR,
                    f"Static analysis failed: {e}",
                    {"iteration": iteration, "error": str(e)},
                )
                return await self._set_status(session_id, SessionStatus.FAILED, error_message=str(e))

            issues = scan.issues
            last_issue_count = len(issues)
            session = await self.store.increment_session(session_id, total_scans=1, total_issues_found=len(issues))
            await self.ledger.record_log(
                session_id,
                LogType.SCAN_COMPLETE,
                f"Found {len(issues)} issues",
                {
                    "iteration": iteration,
                    "issues_count": len(issues),
                    "files_scanned": scan.summary.total_files,
                    "files_with_errors": scan.summary.files_with_errors,
                },
            )

            if not issues:
                session = await self._complete(session_id)
                if session.status == SessionStatus.COMPLETED:
                    await self.ledger.record_log(
                        session_id,
                        LogType.SUCCESS,
                        "All issues resolved - static analysis is clean",
                        {"iteration": iteration, "files_scanned": scan.summary.total_files},
                    )
                return session

            stats = {"applied": 0, "staged": 0, "skipped": 0, "failed": 0}
            for index, issue in enumerate(issues, 1):
                outcome = await self.process_issue(session, issue)
                stats[await self._log_outcome(session, issue, outcome, index, len(issues))] += 1

            session = await self.store.increment_session(
                session_id,
                total_issues_fixed=stats["applied"],
                failed_issues_count=stats["failed"],
            )
            await self.ledger.record_log(
                session_id,
                LogType.ITERATION_COMPLETE,
                f"Iteration {iteration} complete: {stats['applied']} applied, {stats['staged']} staged, "
                f"{stats['skipped']} skipped, {stats['failed']} failed",
                {"iteration": iteration, "issues": len(issues), **stats},
            )

            if stats["applied"] + stats["staged"] == 0:
                await self.ledger.record_log(
                    session_id,
                    LogType.WARNING,
                    f"No fixes applied in iteration {iteration} - agent may be stuck on the remaining issues",
                    {"iteration": iteration, "issues": len(issues), "failed": stats["failed"]},
                )

            await asyncio.sleep(self.config.iteration_delay_seconds)

        session = await self._complete(session_id)
        if session.status == SessionStatus.COMPLETED:
            await self.ledger.record_log(
                session_id,
                LogType.WARNING,
                f"Reached iteration limit ({session.max_iterations}). "
                f"{session.total_issues_fixed} fixed, {last_issue_count} remaining.",
                {
                    "max_iterations": session.max_iterations,
                    "total_fixed": session.total_issues_fixed,
                    "remaining": last_issue_count,
                },
            )
        return session

    async def _complete(self, session_id: str) -> AgentSession:
        """
        running -> completed. A pause that landed while the last step ran is
        honoured first; the session may end up stopped instead.
        """
        while True:
            completed = await self.store.transition_session(
                session_id, SessionStatus.COMPLETED, [SessionStatus.RUNNING]
            )
            if completed is not None:
                return completed
            session = await self._reload(session_id)
            if session.status != SessionStatus.PAUSED:
                if session.status == SessionStatus.STOPPED:
                    await self.ledger.record_log(session_id, LogType.INFO, "Agent stopped by user")
                return session
            session = await self._wait_while_paused(session)
            if session.status != SessionStatus.RUNNING:
                return session

    async def _wait_while_paused(self, session: AgentSession) -> AgentSession:
        """
        Block while paused, re-checking on every poll tick or local signal.
        Still paused after ``pause_timeout_seconds`` -> stopped.
        """
        session_id = session.id
        await self.ledger.record_log(session_id, LogType.INFO, "Agent paused - waiting for resume")

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.config.pause_timeout_seconds
        signal = self._signals.setdefault(session_id, asyncio.Event())

        while True:
            signal.clear()
            session = await self._reload(session_id)
            if session.status != SessionStatus.PAUSED:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(signal.wait(), timeout=min(self.config.pause_poll_interval_seconds, remaining))
            except asyncio.TimeoutError:
                continue

        if session.status == SessionStatus.PAUSED:
            await self.ledger.record_log(
                session_id,
                LogType.WARNING,
                "Agent paused for too long, stopping",
                {"paused_seconds": round(loop.time() - started, 1)},
            )
            return await self._set_status(session_id, SessionStatus.STOPPED)

        if session.status == SessionStatus.STOPPED:
            await self.ledger.record_log(session_id, LogType.INFO, "Agent stopped by user")
        return session

    # =========================================================================
    # PER-ISSUE PIPELINE
    # =========================================================================

    async def process_issue(self, session: AgentSession, issue: Issue) -> IssueOutcome:
        """
        Read -> context window -> generate -> apply / stage.

        Failures stay local to the issue; nothing here changes session status.
        """
        if not issue.file:
            return IssueOutcome(success=False, error="Issue has no file path", failure_stage=FailureStage.MISSING_PATH)

        try:
            current = await asyncio.to_thread(self.mutator.read, issue.file)
            if not current.success:
                return IssueOutcome(
                    success=False,
                    error=f"Cannot read file: {current.error}",
                    failure_stage=FailureStage.FILE_READ,
                )
            if not current.content.strip():
                return IssueOutcome(success=False, error="File is empty", failure_stage=FailureStage.FILE_READ)

            context = build_context_window(current.content, issue.line, self.config.context_margin)
            fix = await self.generator.generate(
                issue.file,
                current.content,
                issue,
                context,
                session_id=session.id,
                max_retries=session.max_retries,
            )
            if not fix.success:
                return IssueOutcome(
                    success=False,
                    error=fix.error,
                    failure_stage=fix.failure_stage,
                    attempts=fix.attempts,
                )

            return await self._apply_fix(session, issue, current.content, fix)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {issue.file}:{issue.line}")
            return IssueOutcome(
                success=False,
                error=f"Exception during issue processing: {e}",
                failure_stage=FailureStage.EXCEPTION,
            )

    async def _apply_fix(self, session: AgentSession, issue: Issue, original: str, fix: FixResult) -> IssueOutcome:
        new_content = fix.new_content or ""
        if normalize_content(original) == normalize_content(new_content):
            return IssueOutcome(success=True, no_change=True, attempts=fix.attempts)

        stats = diff_stats(original, new_content)
        summary = {
            "issue_message": issue.message,
            "issue_line": issue.line,
            "identifier": issue.identifier,
            "diff_stats": stats,
        }

        latest = await asyncio.to_thread(self.mutator.read, issue.file)
        if latest.success and latest.content != original:
            await self.ledger.record_log(
                session.id,
                LogType.WARNING,
                f"{issue.file} changed while its fix was being generated",
                {"file": issue.file, "line": issue.line},
            )

        if session.auto_apply:
            write = await asyncio.to_thread(self.mutator.write, issue.file, new_content, True)
            if not write.success:
                return IssueOutcome(
                    success=False,
                    error=f"File write failed: {write.error}",
                    failure_stage=FailureStage.FILE_WRITE,
                    error_line=write.line,
                    attempts=fix.attempts,
                )
            change = await self.ledger.record_change(
                session.id,
                issue.file,
                original,
                new_content,
                FileChangeStatus.APPLIED,
                backup_path=write.backup_path,
                change_summary=summary,
            )
            return IssueOutcome(
                success=True,
                change_id=change.id if change else None,
                backup_path=write.backup_path,
                diff_stats=stats,
                attempts=fix.attempts,
            )

        check = await asyncio.to_thread(self.mutator.check_syntax, issue.file, new_content)
        if not check.valid:
            return IssueOutcome(
                success=False,
                error=f"Final validation failed: {check.error}",
                failure_stage=FailureStage.FINAL_VALIDATION,
                error_line=check.line,
                attempts=fix.attempts,
            )
        change = await self.ledger.record_change(
            session.id,
            issue.file,
            original,
            new_content,
            FileChangeStatus.PENDING,
            change_summary=summary,
        )
        return IssueOutcome(
            success=True,
            staged=True,
            change_id=change.id if change else None,
            diff_stats=stats,
            attempts=fix.attempts,
        )

    async def _log_outcome(
        self,
        session: AgentSession,
        issue: Issue,
        outcome: IssueOutcome,
        index: int,
        total: int,
    ) -> str:
        where = f"{issue.file}:{issue.line}" if issue.line else (issue.file or "<no file>")
        data: Dict[str, Any] = {
            "file": issue.file,
            "line": issue.line,
            "message": issue.message,
            "identifier": issue.identifier,
            "issue": f"{index}/{total}",
        }

        if not outcome.success:
            data.update({
                "stage": outcome.failure_stage.value if outcome.failure_stage else None,
                "error": outcome.error,
                "error_line": outcome.error_line,
                "attempts": outcome.attempts,
            })
            await self.ledger.record_log(session.id, LogType.FIX_FAILED, f"Failed to fix {where}: {outcome.error}", data)
            return "failed"

        if outcome.no_change:
            await self.ledger.record_log(session.id, LogType.FIX_SKIPPED, f"No change needed for {where}", data)
            return "skipped"

        data.update({"change_id": outcome.change_id, "diff_stats": outcome.diff_stats})
        if outcome.staged:
            await self.ledger.record_log(session.id, LogType.FIX_GENERATED, f"Fix staged for review: {where}", data)
            return "staged"

        data["backup_path"] = outcome.backup_path
        await self.ledger.record_log(session.id, LogType.FIX_APPLIED, f"Fix applied to {where}", data)
        return "applied"

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _analysis_request(self, session: AgentSession) -> AnalysisRequest:
        return AnalysisRequest(
            level=session.analysis_level,
            paths=list(session.scan_paths or self.config.analysis.paths),
        )

    def _analyzer_validator(self, file_path: str, content: str) -> List[str]:
        if not file_path.lower().endswith(".php"):
            return []
        try:
            return self.runner.validate_content(content, level=self.config.analysis.level, suffix=".php")
        except AnalysisError as e:
            logger.warning(f"Analyzer validation of {file_path} unavailable: {e}")
            return []

    async def _set_status(self, session_id: str, status: SessionStatus, **fields: Any) -> AgentSession:
        sources = [s for s in SessionStatus if s.can_transition(status)]
        updated = await self.store.transition_session(session_id, status, sources, **fields)
        if updated is not None:
            return updated
        current = await self._reload(session_id)
        logger.debug(f"Session {session_id} stays {current.status.value} (wanted {status.value})")
        return current

    async def _reload(self, session_id: str) -> AgentSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} disappeared")
        return session

    async def _require(self, session_id: str) -> AgentSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    async def _require_change(self, change_id: str) -> FileChange:
        change = await self.store.get_file_change(change_id)
        if change is None:
            raise ChangeNotFoundError(f"File change not found: {change_id}")
        return change

    async def _claim_change(
        self, change_id: str, to_status: FileChangeStatus, verb: str, **fields: Any
    ) -> FileChange:
        change = await self._require_change(change_id)
        if change.status == FileChangeStatus.PENDING:
            claimed = await self.store.transition_file_change(
                change_id, to_status, [FileChangeStatus.PENDING], **fields
            )
            if claimed is not None:
                return claimed
            change = await self._require_change(change_id)
        raise SessionStateError(f"Change {change_id} is {change.status.value} and cannot be {verb}")

    async def _seconds_since_activity(self, session: AgentSession) -> float:
        latest = await self.store.list_logs(session.id, limit=1)
        quiet_for = _age_seconds(session.updated_at)
        if latest:
            quiet_for = min(quiet_for, _age_seconds(latest[0].created_at))
        return quiet_for

    def _is_owned(self, session_id: str) -> bool:
        return session_id in self._running or session_id in self._tasks

    def _notify(self, session_id: str) -> None:
        signal = self._signals.get(session_id)
        if signal is not None:
            signal.set()

    def _launch(self, session_id: str) -> None:
        task = asyncio.create_task(self._run_guarded(session_id), name=f"overlord-agent-{session_id[:8]}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))

    async def _run_guarded(self, session_id: str) -> None:
        try:
            await self.run(session_id)
        except Exception:
            logger.exception(f"Agent task for session {session_id} crashed")


def create_agent(config_path: Optional[str] = "config.yaml", **overrides: Any) -> RemediationAgent:
    """Build an agent from ``config.yaml`` + environment, with keyword overrides for collaborators."""
    config = AgentConfig.load(config_path)
    return RemediationAgent(config=config, **overrides)
