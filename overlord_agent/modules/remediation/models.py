"""
Data Models for the Remediation Agent

Defines Pydantic models and enums for:
- Agent sessions and their state machine
- Static-analysis issues and scan summaries
- Audit log entries
- Proposed / applied file changes
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class SessionStatus(str, Enum):
    """Lifecycle status of an agent session."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.IDLE, SessionStatus.RUNNING, SessionStatus.PAUSED)

    def can_transition(self, target: "SessionStatus") -> bool:
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())


TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.STOPPED,
})

ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.STOPPED,
    }),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED}),
}


class LogType(str, Enum):
    """Type of an agent log entry."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"
    SCAN_COMPLETE = "scan_complete"
    FIX_APPLIED = "fix_applied"
    FIX_GENERATED = "fix_generated"
    FIX_FAILED = "fix_failed"
    FIX_SKIPPED = "fix_skipped"
    ITERATION_COMPLETE = "iteration_complete"


class FileChangeStatus(str, Enum):
    """Status of a proposed file mutation."""
    PENDING = "pending"      # Staged for review, live file untouched
    APPLIED = "applied"
    REJECTED = "rejected"


class IssueSeverity(str, Enum):
    """Severity level of a static-analysis finding."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FailureStage(str, Enum):
    """Where in the per-issue pipeline a fix attempt failed."""
    MISSING_PATH = "missing_path"
    FILE_READ = "file_read"
    AI_SERVICE = "ai_service"
    CODE_EXTRACTION = "code_extraction"
    VALIDATION = "validation"
    FINAL_VALIDATION = "final_validation"
    FILE_WRITE = "file_write"
    EXCEPTION = "exception"


# =============================================================================
# SESSION
# =============================================================================


class AgentSession(BaseModel):
    """
    One run of the remediation loop, with its own iteration budget and status.
    """
    id: str
    status: SessionStatus = SessionStatus.IDLE

    # Settings
    analysis_level: int = Field(default=1, ge=0, le=9)
    auto_apply: bool = True
    max_iterations: int = Field(default=50, ge=1, le=100)
    max_retries: int = Field(default=3, ge=1, le=10)
    scan_paths: List[str] = Field(default_factory=list)

    # Progress
    current_iteration: int = 0
    total_scans: int = 0
    total_issues_found: int = 0
    total_issues_fixed: int = 0
    failed_issues_count: int = 0

    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def mode(self) -> str:
        return "auto-apply" if self.auto_apply else "review"


# =============================================================================
# ANALYSIS
# =============================================================================


class Issue(BaseModel):
    """A single static-analysis finding for one file/line."""
    file: str = ""
    line: Optional[int] = None
    message: str
    identifier: Optional[str] = None
    tip: Optional[str] = None
    severity: IssueSeverity = IssueSeverity.MEDIUM

    @property
    def id(self) -> str:
        """Fingerprint that is stable across scans of an unchanged tree."""
        raw = f"{self.file}:{self.line}:{self.message}"
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


class ScanSummary(BaseModel):
    total_errors: int = 0
    total_files: int = 0
    files_with_errors: int = 0


class ScanResult(BaseModel):
    """Normalized output of one analyzer invocation."""
    issues: List[Issue] = Field(default_factory=list)
    summary: ScanSummary = Field(default_factory=ScanSummary)
    exit_code: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.issues


# =============================================================================
# LEDGER
# =============================================================================


class LogEntry(BaseModel):
    """Append-only record of agent activity."""
    id: Optional[int] = None
    session_id: str
    type: LogType = LogType.INFO
    message: str
    data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_cache_dict(self) -> Dict[str, Any]:
        """Shape stored in the last-log cache slot."""
        return {
            "type": self.type.value,
            "message": self.message,
            "data": self.data,
            "timestamp": self.created_at.isoformat(),
        }


class FileChange(BaseModel):
    """A proposed or applied mutation of one file."""
    id: Optional[str] = None
    session_id: str
    file_path: str
    original_content: str = ""
    new_content: str = ""
    status: FileChangeStatus = FileChangeStatus.PENDING
    backup_path: Optional[str] = None
    rejection_reason: Optional[str] = None
    change_summary: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LineEdit(BaseModel):
    """Single-line replacement used by the line-oriented patch path."""
    line: int = Field(ge=1)
    new_content: str
    old_content: Optional[str] = None


class IssueOutcome(BaseModel):
    """Result of running one issue through the fix pipeline."""
    success: bool
    error: Optional[str] = None
    failure_stage: Optional[FailureStage] = None
    no_change: bool = False
    staged: bool = False
    change_id: Optional[str] = None
    backup_path: Optional[str] = None
    error_line: Optional[int] = None
    attempts: int = 0
    diff_stats: Dict[str, int] = Field(default_factory=dict)
