"""
Tests for ChangeLedger and the last-log cache slot.
"""

from unittest.mock import AsyncMock

import pytest

from modules.remediation.ledger import ChangeLedger, InMemoryTTLCache, last_log_key
from modules.remediation.models import FileChange, FileChangeStatus, LogEntry, LogType


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class MemoryStore:
    """Just enough of SessionStore for the ledger."""

    def __init__(self):
        self.logs = []
        self.changes = []

    async def append_log(self, session_id, log_type, message, data=None):
        entry = LogEntry(id=len(self.logs) + 1, session_id=session_id, type=log_type, message=message, data=data)
        self.logs.append(entry)
        return entry

    async def create_file_change(self, change: FileChange):
        stored = change.model_copy(update={"id": f"chg-{len(self.changes) + 1}"})
        self.changes.append(stored)
        return stored


class TestInMemoryTTLCache:
    """TTL semantics of the process-local cache."""

    def test_value_expires(self):
        """Entries disappear once their TTL has elapsed."""
        clock = FakeClock()
        cache = InMemoryTTLCache(clock=clock)
        cache.set("k", {"v": 1}, ttl_seconds=300)

        clock.now += 299
        assert cache.get("k") == {"v": 1}
        clock.now += 1
        assert cache.get("k") is None

    def test_delete(self):
        """delete removes a key and tolerates missing ones."""
        cache = InMemoryTTLCache()
        cache.set("k", 1, ttl_seconds=10)
        cache.delete("k")
        cache.delete("missing")
        assert cache.get("k") is None


class TestChangeLedger:
    """Best-effort persistence of logs and changes."""

    @pytest.mark.asyncio
    async def test_record_log_persists_and_caches(self):
        """Every log is stored and becomes the cached last log."""
        store = MemoryStore()
        clock = FakeClock()
        ledger = ChangeLedger(store, cache=InMemoryTTLCache(clock=clock))

        await ledger.record_log("sess-1", LogType.INFO, "first")
        entry = await ledger.record_log("sess-1", LogType.SCAN_COMPLETE, "Found 3 issues", {"issues_count": 3})

        assert [log.message for log in store.logs] == ["first", "Found 3 issues"]
        assert entry.id == 2
        last = ledger.last_log("sess-1")
        assert last["type"] == "scan_complete"
        assert last["message"] == "Found 3 issues"
        assert last["data"] == {"issues_count": 3}
        assert "timestamp" in last

        clock.now += 301
        assert ledger.last_log("sess-1") is None

    @pytest.mark.asyncio
    async def test_cache_key_format(self):
        """The cache slot uses the agent_session_{id}_last_log key."""
        cache = InMemoryTTLCache()
        ledger = ChangeLedger(MemoryStore(), cache=cache)
        await ledger.record_log("abc", LogType.WARNING, "careful")
        assert last_log_key("abc") == "agent_session_abc_last_log"
        assert cache.get("agent_session_abc_last_log")["message"] == "careful"

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        """A broken store never raises out of the ledger."""
        store = AsyncMock()
        store.append_log.side_effect = RuntimeError("database is locked")
        store.create_file_change.side_effect = RuntimeError("database is locked")
        ledger = ChangeLedger(store)

        assert await ledger.record_log("s", LogType.ERROR, "boom") is None
        assert ledger.last_log("s") is None
        change = await ledger.record_change("s", "app/a.php", "old", "new", FileChangeStatus.APPLIED)
        assert change is None

    @pytest.mark.asyncio
    async def test_cache_failure_keeps_entry(self):
        """A failing cache does not lose the persisted entry."""
        class BrokenCache:
            def get(self, key):
                return None

            def set(self, key, value, ttl_seconds):
                raise ConnectionError("cache down")

            def delete(self, key):
                pass

        store = MemoryStore()
        ledger = ChangeLedger(store, cache=BrokenCache())
        entry = await ledger.record_log("s", LogType.INFO, "still stored")
        assert entry is not None
        assert len(store.logs) == 1

    @pytest.mark.asyncio
    async def test_record_change(self):
        """Changes carry content, status, backup path and summary."""
        store = MemoryStore()
        ledger = ChangeLedger(store)

        change = await ledger.record_change(
            "s",
            "app/Models/User.php",
            "<?php\n$a = $b;\n",
            "<?php\n$a = 1;\n",
            FileChangeStatus.PENDING,
            change_summary={"issue_line": 2},
        )

        assert change.id == "chg-1"
        assert change.status == FileChangeStatus.PENDING
        assert change.backup_path is None
        assert change.change_summary == {"issue_line": 2}
        assert store.changes[0].original_content == "<?php\n$a = $b;\n"
