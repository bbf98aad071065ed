# Pytest configuration for the Overlord Agent test suite
#
# Timeout strategy:
# - FAST tests: 5-10s (pure unit tests, temp files only)
# - MEDIUM tests: 20-30s (TestClient, mocked subprocess, scripted collaborators)
# - SLOW tests: 60s (agent loop against a real SQLite database)

from __future__ import annotations

import pytest

# ---------------------------------------------------------------------------
# Timeout configuration by test file
# ---------------------------------------------------------------------------
# Maps test file patterns to timeout values (seconds)
# More specific patterns should come first

TIMEOUT_MAP = {
    # SLOW tests (60s) - agent loop, real DB, pause/resume waits
    "test_agent_engine": 60,

    # MEDIUM tests (30s) - TestClient, scripted collaborators
    "test_remediation_api": 30,
    "test_fix_generator": 20,

    # FAST tests (10s) - temp files, mocked subprocess
    "test_analysis_runner": 10,
    "test_file_mutator": 10,
    "test_cli": 10,
    "test_ledger": 5,
    "test_config": 5,
}


def pytest_collection_modifyitems(config, items):
    """Apply timeout markers based on test file names."""
    for item in items:
        test_file = item.fspath.basename if hasattr(item.fspath, 'basename') else str(item.fspath).split('/')[-1]
        test_name = test_file.replace('.py', '')

        timeout = 30  # default
        for pattern, t in TIMEOUT_MAP.items():
            if pattern in test_name:
                timeout = t
                break

        existing_timeout = item.get_closest_marker('timeout')
        if existing_timeout is None:
            item.add_marker(pytest.mark.timeout(timeout))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_database(monkeypatch, tmp_path):
    """Point DATABASE_URL at a per-test SQLite file so nothing touches a real database."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'overlord_test.db'}")
    monkeypatch.delenv("OVERLORD_PRODUCTION", raising=False)
    yield
