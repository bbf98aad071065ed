from __future__ import annotations

from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.persistence.db import get_sessionmaker
from modules.persistence.models import AgentFileChangeRecord, AgentLogRecord, AgentSessionRecord
from modules.remediation.models import (
    AgentSession,
    FileChange,
    FileChangeStatus,
    LogEntry,
    LogType,
    SessionStatus,
)

_COUNTER_FIELDS = frozenset({
    "current_iteration",
    "total_scans",
    "total_issues_found",
    "total_issues_fixed",
    "failed_issues_count",
})

_ACTIVE_STATUSES = (SessionStatus.IDLE.value, SessionStatus.RUNNING.value, SessionStatus.PAUSED.value)


def _plain(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: (value.value if isinstance(value, Enum) else value) for key, value in values.items()}


def _to_session(record: AgentSessionRecord) -> AgentSession:
    return AgentSession(
        id=record.id,
        status=SessionStatus(record.status),
        analysis_level=record.analysis_level,
        auto_apply=record.auto_apply,
        max_iterations=record.max_iterations,
        max_retries=record.max_retries,
        scan_paths=list(record.scan_paths or []),
        current_iteration=record.current_iteration,
        total_scans=record.total_scans,
        total_issues_found=record.total_issues_found,
        total_issues_fixed=record.total_issues_fixed,
        failed_issues_count=record.failed_issues_count,
        error_message=record.error_message,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_log(record: AgentLogRecord) -> LogEntry:
    return LogEntry(
        id=record.id,
        session_id=record.session_id,
        type=LogType(record.type),
        message=record.message,
        data=record.data,
        created_at=record.created_at,
    )


def _to_change(record: AgentFileChangeRecord) -> FileChange:
    return FileChange(
        id=record.id,
        session_id=record.session_id,
        file_path=record.file_path,
        original_content=record.original_content,
        new_content=record.new_content,
        status=FileChangeStatus(record.status),
        backup_path=record.backup_path,
        rejection_reason=record.rejection_reason,
        change_summary=dict(record.change_summary or {}),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class SessionStore:
    """Async repository for agent sessions, their logs and file changes.

    Uses the global sessionmaker unless one is injected (tests, CLI).
    """

    def __init__(self, sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        maker = self._sessionmaker or get_sessionmaker()
        async with maker() as session:
            yield session

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        *,
        analysis_level: int = 1,
        auto_apply: bool = True,
        max_iterations: int = 50,
        max_retries: int = 3,
        scan_paths: Optional[Sequence[str]] = None,
    ) -> AgentSession:
        async with self._session() as session:
            record = AgentSessionRecord(
                status=SessionStatus.IDLE.value,
                analysis_level=analysis_level,
                auto_apply=auto_apply,
                max_iterations=max_iterations,
                max_retries=max_retries,
                scan_paths=list(scan_paths or []),
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _to_session(record)

    async def get_session(self, session_id: str) -> Optional[AgentSession]:
        async with self._session() as session:
            record = await session.get(AgentSessionRecord, session_id)
            return _to_session(record) if record is not None else None

    async def transition_session(
        self,
        session_id: str,
        to_status: SessionStatus,
        from_statuses: Sequence[SessionStatus],
        **fields: Any,
    ) -> Optional[AgentSession]:
        """Compare-and-set the status. Returns None when the current status is not in ``from_statuses``."""
        values = _plain({"status": to_status, **fields})
        allowed = [SessionStatus(s).value for s in from_statuses]
        async with self._session() as session:
            result = await session.execute(
                update(AgentSessionRecord)
                .where(AgentSessionRecord.id == session_id, AgentSessionRecord.status.in_(allowed))
                .values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                return None
            record = await session.get(AgentSessionRecord, session_id, populate_existing=True)
            return _to_session(record) if record is not None else None

    async def increment_session(self, session_id: str, **deltas: int) -> Optional[AgentSession]:
        """Atomically add ``deltas`` to the named counters."""
        unknown = set(deltas) - _COUNTER_FIELDS
        if unknown:
            raise ValueError(f"Not a session counter: {', '.join(sorted(unknown))}")

        values = {name: getattr(AgentSessionRecord, name) + int(delta) for name, delta in deltas.items()}
        async with self._session() as session:
            await session.execute(
                update(AgentSessionRecord).where(AgentSessionRecord.id == session_id).values(**values)
            )
            await session.commit()
            record = await session.get(AgentSessionRecord, session_id, populate_existing=True)
            return _to_session(record) if record is not None else None

    async def find_active_session(self) -> Optional[AgentSession]:
        async with self._session() as session:
            result = await session.execute(
                select(AgentSessionRecord)
                .where(AgentSessionRecord.status.in_(_ACTIVE_STATUSES))
                .order_by(AgentSessionRecord.created_at.desc())
                .limit(1)
            )
            record = result.scalars().first()
            return _to_session(record) if record is not None else None

    async def list_sessions(
        self,
        limit: Optional[int] = 20,
        statuses: Optional[Sequence[SessionStatus]] = None,
    ) -> List[AgentSession]:
        """Newest first, optionally restricted to ``statuses``."""
        async with self._session() as session:
            query = select(AgentSessionRecord)
            if statuses is not None:
                query = query.where(AgentSessionRecord.status.in_([SessionStatus(s).value for s in statuses]))
            query = query.order_by(AgentSessionRecord.created_at.desc())
            if limit:
                query = query.limit(int(limit))
            result = await session.execute(query)
            return [_to_session(r) for r in result.scalars().all()]

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def append_log(
        self,
        session_id: str,
        log_type: LogType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        async with self._session() as session:
            record = AgentLogRecord(
                session_id=session_id,
                type=LogType(log_type).value,
                message=message,
                data=data,
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _to_log(record)

    async def list_logs(
        self,
        session_id: str,
        limit: Optional[int] = None,
        after_id: Optional[int] = None,
    ) -> List[LogEntry]:
        """Logs in creation order. ``limit`` keeps the most recent entries."""
        async with self._session() as session:
            query = select(AgentLogRecord).where(AgentLogRecord.session_id == session_id)
            if after_id is not None:
                query = query.where(AgentLogRecord.id > after_id)
            if limit:
                query = query.order_by(AgentLogRecord.id.desc()).limit(int(limit))
                records = list(reversed((await session.execute(query)).scalars().all()))
            else:
                records = list((await session.execute(query.order_by(AgentLogRecord.id))).scalars().all())
            return [_to_log(r) for r in records]

    # ------------------------------------------------------------------
    # File changes
    # ------------------------------------------------------------------

    async def create_file_change(self, change: FileChange) -> FileChange:
        async with self._session() as session:
            record = AgentFileChangeRecord(
                session_id=change.session_id,
                file_path=change.file_path,
                original_content=change.original_content,
                new_content=change.new_content,
                status=change.status.value,
                backup_path=change.backup_path,
                rejection_reason=change.rejection_reason,
                change_summary=change.change_summary or None,
            )
            if change.id:
                record.id = change.id
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _to_change(record)

    async def get_file_change(self, change_id: str) -> Optional[FileChange]:
        async with self._session() as session:
            record = await session.get(AgentFileChangeRecord, change_id)
            return _to_change(record) if record is not None else None

    async def update_file_change(self, change_id: str, **fields: Any) -> Optional[FileChange]:
        async with self._session() as session:
            await session.execute(
                update(AgentFileChangeRecord)
                .where(AgentFileChangeRecord.id == change_id)
                .values(**_plain(fields))
            )
            await session.commit()
            record = await session.get(AgentFileChangeRecord, change_id, populate_existing=True)
            return _to_change(record) if record is not None else None

    async def transition_file_change(
        self,
        change_id: str,
        to_status: FileChangeStatus,
        from_statuses: Sequence[FileChangeStatus],
        **fields: Any,
    ) -> Optional[FileChange]:
        """Compare-and-set the change status. Returns None when the current status is not in ``from_statuses``."""
        values = _plain({"status": to_status, **fields})
        allowed = [FileChangeStatus(s).value for s in from_statuses]
        async with self._session() as session:
            result = await session.execute(
                update(AgentFileChangeRecord)
                .where(AgentFileChangeRecord.id == change_id, AgentFileChangeRecord.status.in_(allowed))
                .values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                return None
            record = await session.get(AgentFileChangeRecord, change_id, populate_existing=True)
            return _to_change(record) if record is not None else None

    async def list_file_changes(
        self,
        session_id: str,
        status: Optional[FileChangeStatus] = None,
    ) -> List[FileChange]:
        async with self._session() as session:
            query = select(AgentFileChangeRecord).where(AgentFileChangeRecord.session_id == session_id)
            if status is not None:
                query = query.where(AgentFileChangeRecord.status == FileChangeStatus(status).value)
            result = await session.execute(query.order_by(AgentFileChangeRecord.created_at, AgentFileChangeRecord.id))
            return [_to_change(r) for r in result.scalars().all()]
