"""
Change Ledger - Audit Trail for Agent Sessions

Records:
- One FileChange row per proposed / applied mutation
- An append-only LogEntry stream per session
- The latest log entry per session in a short-lived cache slot for pollers

Writes are best-effort: failures are logged and swallowed so that the ledger
can never turn a healthy session into a failed one.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from loguru import logger

from .models import FileChange, FileChangeStatus, LogEntry, LogType

LAST_LOG_TTL_SECONDS = 300


# =============================================================================
# CACHE SLOT
# =============================================================================


class TTLCache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryTTLCache:
    """Process-local TTL cache. Expired keys are dropped lazily on access."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._items[key] = (self._clock() + ttl_seconds, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


def last_log_key(session_id: str) -> str:
    return f"agent_session_{session_id}_last_log"


# =============================================================================
# LEDGER
# =============================================================================


class ChangeLedger:
    """Best-effort writer for logs and file changes of agent sessions."""

    def __init__(
        self,
        store: Any,
        cache: Optional[TTLCache] = None,
        last_log_ttl_seconds: float = LAST_LOG_TTL_SECONDS,
    ):
        self.store = store
        self.cache: TTLCache = cache if cache is not None else InMemoryTTLCache()
        self.last_log_ttl_seconds = last_log_ttl_seconds

    async def record_log(
        self,
        session_id: str,
        log_type: LogType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        level = {
            LogType.ERROR: "ERROR",
            LogType.FIX_FAILED: "WARNING",
            LogType.WARNING: "WARNING",
            LogType.SUCCESS: "SUCCESS",
        }.get(log_type, "INFO")
        logger.log(level, f"[session {session_id[:8]}] {message}")

        try:
            entry = await self.store.append_log(session_id, log_type, message, data)
        except Exception as e:
            logger.error(f"Failed to persist agent log for session {session_id}: {e}")
            return None

        try:
            self.cache.set(last_log_key(session_id), entry.to_cache_dict(), self.last_log_ttl_seconds)
        except Exception as e:
            logger.error(f"Failed to cache last log for session {session_id}: {e}")
        return entry

    async def record_change(
        self,
        session_id: str,
        file_path: str,
        original_content: str,
        new_content: str,
        status: FileChangeStatus,
        backup_path: Optional[str] = None,
        change_summary: Optional[Dict[str, Any]] = None,
    ) -> Optional[FileChange]:
        change = FileChange(
            session_id=session_id,
            file_path=file_path,
            original_content=original_content,
            new_content=new_content,
            status=status,
            backup_path=backup_path,
            change_summary=change_summary or {},
        )
        try:
            return await self.store.create_file_change(change)
        except Exception as e:
            logger.error(f"Failed to record file change for {file_path} (session {session_id}): {e}")
            return None

    def last_log(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.cache.get(last_log_key(session_id))
