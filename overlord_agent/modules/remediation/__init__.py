"""
Autonomous Remediation Agent

Runs a static analyzer over a project, asks a language model to fix each
reported issue, and applies (or stages) the fixes with backups and syntax
checks until the analyzer is clean.

Components:
- models: Sessions, issues, log entries and file changes
- config: AgentConfig (config.yaml + OVERLORD_AGENT_* env)
- analysis: Static-analysis runner and report parsing
- generator: LLM-based fix generation and validation
- mutator: Safe file reads, writes, backups and syntax checks
- ledger: Audit trail of logs and changes
- engine: Session state machine and control surface
"""

from .models import (
    AgentSession,
    FailureStage,
    FileChange,
    FileChangeStatus,
    Issue,
    IssueOutcome,
    IssueSeverity,
    LogEntry,
    LogType,
    ScanResult,
    SessionStatus,
)

from .config import AgentConfig, AnalysisSettings, LLMSettings

from .analysis import (
    AnalysisError,
    AnalysisRequest,
    AnalysisRunner,
    AnalyzerNotFoundError,
    NoScanTargetsError,
)

from .generator import FixGenerator, FixResult, build_context_window

from .llm import ChatResult, LiteLLMCollaborator, LLMCollaborator

from .mutator import FileMutator, PathValidationError

from .ledger import ChangeLedger, InMemoryTTLCache

from .engine import (
    ChangeApplyError,
    ChangeNotFoundError,
    RemediationAgent,
    SessionNotFoundError,
    SessionStateError,
    create_agent,
)

__all__ = [
    # Models
    "AgentSession",
    "FailureStage",
    "FileChange",
    "FileChangeStatus",
    "Issue",
    "IssueOutcome",
    "IssueSeverity",
    "LogEntry",
    "LogType",
    "ScanResult",
    "SessionStatus",
    # Config
    "AgentConfig",
    "AnalysisSettings",
    "LLMSettings",
    # Analysis
    "AnalysisError",
    "AnalysisRequest",
    "AnalysisRunner",
    "AnalyzerNotFoundError",
    "NoScanTargetsError",
    # Generation
    "FixGenerator",
    "FixResult",
    "build_context_window",
    "ChatResult",
    "LiteLLMCollaborator",
    "LLMCollaborator",
    # Files and audit trail
    "FileMutator",
    "PathValidationError",
    "ChangeLedger",
    "InMemoryTTLCache",
    # Engine
    "ChangeApplyError",
    "ChangeNotFoundError",
    "RemediationAgent",
    "SessionNotFoundError",
    "SessionStateError",
    "create_agent",
]
