"""
API Endpoints for the Remediation Agent

Provides REST endpoints for:
- Starting a session
- Monitoring progress (status, logs, last log)
- Pause / resume / stop
- Reviewing staged changes (approve / reject)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .engine import (
    ChangeApplyError,
    RemediationAgent,
    SessionNotFoundError,
    SessionStateError,
    create_agent,
)
from .models import AgentSession, FileChange, FileChangeStatus, LogEntry


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================


class StartSessionRequest(BaseModel):
    """Request to start an agent session. Omitted fields fall back to config."""
    analysis_level: Optional[int] = Field(None, ge=0, le=9, description="Analyzer strictness level")
    auto_apply: Optional[bool] = Field(None, description="Write fixes directly instead of staging them")
    max_iterations: Optional[int] = Field(None, ge=1, le=100)
    max_retries: Optional[int] = Field(None, ge=1, le=10)
    scan_paths: Optional[List[str]] = Field(None, description="Paths to analyse, relative to the project root")


class StartSessionResponse(BaseModel):
    session_id: str
    status: str
    message: str


class SessionResponse(BaseModel):
    """Session status and counters."""
    id: str
    status: str
    mode: str
    analysis_level: int
    max_iterations: int
    max_retries: int
    scan_paths: List[str]
    current_iteration: int
    total_scans: int
    total_issues_found: int
    total_issues_fixed: int
    failed_issues_count: int
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_session(cls, session: AgentSession) -> "SessionResponse":
        return cls(
            id=session.id,
            status=session.status.value,
            mode=session.mode,
            analysis_level=session.analysis_level,
            max_iterations=session.max_iterations,
            max_retries=session.max_retries,
            scan_paths=session.scan_paths,
            current_iteration=session.current_iteration,
            total_scans=session.total_scans,
            total_issues_found=session.total_issues_found,
            total_issues_fixed=session.total_issues_fixed,
            failed_issues_count=session.failed_issues_count,
            error_message=session.error_message,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class LogResponse(BaseModel):
    id: Optional[int]
    type: str
    message: str
    data: Optional[Dict[str, Any]]
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: LogEntry) -> "LogResponse":
        return cls(
            id=entry.id,
            type=entry.type.value,
            message=entry.message,
            data=entry.data,
            created_at=entry.created_at,
        )


class FileChangeResponse(BaseModel):
    """A staged or applied change. Content is included only on request."""
    id: str
    session_id: str
    file_path: str
    status: str
    backup_path: Optional[str]
    rejection_reason: Optional[str]
    change_summary: Dict[str, Any]
    original_content: Optional[str] = None
    new_content: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_change(cls, change: FileChange, include_content: bool = False) -> "FileChangeResponse":
        return cls(
            id=change.id or "",
            session_id=change.session_id,
            file_path=change.file_path,
            status=change.status.value,
            backup_path=change.backup_path,
            rejection_reason=change.rejection_reason,
            change_summary=change.change_summary,
            original_content=change.original_content if include_content else None,
            new_content=change.new_content if include_content else None,
            created_at=change.created_at,
            updated_at=change.updated_at,
        )


class RejectChangeRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


# =============================================================================
# ROUTER SETUP
# =============================================================================


router = APIRouter(prefix="/api/agent", tags=["agent"])

_agent: Optional[RemediationAgent] = None


def get_agent() -> RemediationAgent:
    """Get or create the process-wide agent (overridden in tests)."""
    global _agent
    if _agent is None:
        _agent = create_agent()
    return _agent


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=409, detail=str(e))


# =============================================================================
# SESSION ENDPOINTS
# =============================================================================


@router.post("/start", response_model=StartSessionResponse)
async def start_session(
    request: StartSessionRequest,
    agent: RemediationAgent = Depends(get_agent),
) -> StartSessionResponse:
    """
    Start a session in the background.

    Returns immediately with the session id; poll the status or logs endpoints for progress.
    """
    try:
        session_id = await agent.start(
            analysis_level=request.analysis_level,
            auto_apply=request.auto_apply,
            max_iterations=request.max_iterations,
            max_retries=request.max_retries,
            scan_paths=request.scan_paths,
        )
    except SessionStateError as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return StartSessionResponse(
        session_id=session_id,
        status="started",
        message=f"Agent session started. Use GET /api/agent/sessions/{session_id} to monitor.",
    )


@router.get("/sessions/active", response_model=SessionResponse)
async def get_active_session(agent: RemediationAgent = Depends(get_agent)) -> SessionResponse:
    """The running / paused / idle session, else the most recent one."""
    session = await agent.current_session()
    if session is None:
        raise HTTPException(status_code=404, detail="No agent sessions yet")
    return SessionResponse.from_session(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, agent: RemediationAgent = Depends(get_agent)) -> SessionResponse:
    try:
        return SessionResponse.from_session(await agent.status(session_id))
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.post("/sessions/{session_id}/pause", response_model=SessionResponse)
async def pause_session(session_id: str, agent: RemediationAgent = Depends(get_agent)) -> SessionResponse:
    try:
        return SessionResponse.from_session(await agent.pause(session_id))
    except SessionNotFoundError as e:
        raise _not_found(e)
    except SessionStateError as e:
        raise _conflict(e)


@router.post("/sessions/{session_id}/resume", response_model=SessionResponse)
async def resume_session(session_id: str, agent: RemediationAgent = Depends(get_agent)) -> SessionResponse:
    try:
        return SessionResponse.from_session(await agent.resume(session_id))
    except SessionNotFoundError as e:
        raise _not_found(e)
    except SessionStateError as e:
        raise _conflict(e)


@router.post("/sessions/{session_id}/stop", response_model=SessionResponse)
async def stop_session(session_id: str, agent: RemediationAgent = Depends(get_agent)) -> SessionResponse:
    try:
        return SessionResponse.from_session(await agent.stop(session_id))
    except SessionNotFoundError as e:
        raise _not_found(e)
    except SessionStateError as e:
        raise _conflict(e)


@router.get("/sessions/{session_id}/logs", response_model=List[LogResponse])
async def get_logs(
    session_id: str,
    limit: int = Query(100, ge=1, le=1000),
    after_id: Optional[int] = Query(None, ge=0),
    agent: RemediationAgent = Depends(get_agent),
) -> List[LogResponse]:
    """Most recent log entries, oldest first. ``after_id`` returns only newer entries (incremental polling)."""
    try:
        entries = await agent.logs(session_id, limit=limit, after_id=after_id)
    except SessionNotFoundError as e:
        raise _not_found(e)
    return [LogResponse.from_entry(e) for e in entries]


@router.get("/sessions/{session_id}/last-log")
async def get_last_log(session_id: str, agent: RemediationAgent = Depends(get_agent)) -> Dict[str, Any]:
    """Latest log entry from the cache slot (empty when expired)."""
    try:
        await agent.status(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)
    return {"session_id": session_id, "last_log": agent.last_log(session_id)}


# =============================================================================
# CHANGE REVIEW ENDPOINTS
# =============================================================================


@router.get("/sessions/{session_id}/changes", response_model=List[FileChangeResponse])
async def list_changes(
    session_id: str,
    status: Optional[FileChangeStatus] = None,
    include_content: bool = False,
    agent: RemediationAgent = Depends(get_agent),
) -> List[FileChangeResponse]:
    try:
        changes = await agent.changes(session_id, status=status)
    except SessionNotFoundError as e:
        raise _not_found(e)
    return [FileChangeResponse.from_change(c, include_content) for c in changes]


@router.post("/changes/{change_id}/approve", response_model=FileChangeResponse)
async def approve_change(change_id: str, agent: RemediationAgent = Depends(get_agent)) -> FileChangeResponse:
    """Apply a staged change (syntax-checked, with backup)."""
    try:
        return FileChangeResponse.from_change(await agent.approve_change(change_id))
    except SessionNotFoundError as e:
        raise _not_found(e)
    except SessionStateError as e:
        raise _conflict(e)
    except ChangeApplyError as e:
        raise HTTPException(status_code=422, detail=f"Change could not be applied: {e}")


@router.post("/changes/{change_id}/reject", response_model=FileChangeResponse)
async def reject_change(
    change_id: str,
    request: Optional[RejectChangeRequest] = None,
    agent: RemediationAgent = Depends(get_agent),
) -> FileChangeResponse:
    reason = request.reason if request else None
    try:
        return FileChangeResponse.from_change(await agent.reject_change(change_id, reason))
    except SessionNotFoundError as e:
        raise _not_found(e)
    except SessionStateError as e:
        raise _conflict(e)
