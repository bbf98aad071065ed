"""
Tests for AgentConfig loading (YAML + OVERLORD_AGENT_* environment).
"""

from pathlib import Path

import pytest

from modules.remediation.config import AgentConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("OVERLORD_AGENT_"):
            monkeypatch.delenv(key, raising=False)


class TestAgentConfig:
    """Defaults, file values and env overrides."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = AgentConfig()
        assert config.max_iterations == 50
        assert config.max_retries == 3
        assert config.auto_apply is True
        assert config.pause_timeout_seconds == 300.0
        assert config.pause_poll_interval_seconds == 1.0
        assert config.stale_idle_seconds == 300.0
        assert config.stale_running_seconds == 1800.0
        assert config.context_margin == 10
        assert config.analysis.level == 1
        assert config.analysis.default_paths == ["app"]
        assert config.analysis.timeout_seconds == 600
        assert config.llm.timeout_seconds == 120

    def test_from_dict_agent_section(self):
        """Values under ``agent:`` are applied, nested sections included."""
        config = AgentConfig.from_dict({
            "agent": {
                "auto_apply": False,
                "max_iterations": 5,
                "stale_running_seconds": 900,
                "analysis": {"level": 6, "paths": "app, routes", "memory_limit": "2G"},
                "llm": {"model": "anthropic/claude-3-5-sonnet", "fallback_models": ["gpt-4o-mini"]},
            }
        })
        assert config.auto_apply is False
        assert config.max_iterations == 5
        assert config.stale_running_seconds == 900.0
        assert config.analysis.level == 6
        assert config.analysis.paths == ["app", "routes"]
        assert config.analysis.memory_limit == "2G"
        assert config.llm.fallback_models == ["gpt-4o-mini"]

    def test_load_yaml_then_env(self, tmp_path: Path, monkeypatch):
        """Environment variables override the file."""
        path = tmp_path / "config.yaml"
        path.write_text("agent:\n  max_iterations: 10\n  analysis:\n    level: 3\n", encoding="utf-8")
        monkeypatch.setenv("OVERLORD_AGENT_MAX_ITERATIONS", "7")
        monkeypatch.setenv("OVERLORD_AGENT_AUTO_APPLY", "false")
        monkeypatch.setenv("OVERLORD_AGENT_MODEL", "groq/llama-3.1-70b")
        monkeypatch.setenv("OVERLORD_AGENT_PATHS", "app,database")

        config = AgentConfig.load(path)

        assert config.max_iterations == 7
        assert config.auto_apply is False
        assert config.analysis.level == 3
        assert config.analysis.paths == ["app", "database"]
        assert config.llm.model == "groq/llama-3.1-70b"

    def test_missing_file_uses_defaults(self, tmp_path: Path):
        """A missing config file is not an error."""
        config = AgentConfig.load(tmp_path / "nope.yaml")
        assert config.max_iterations == 50

    def test_invalid_yaml(self, tmp_path: Path):
        """Broken YAML raises ValueError with the path."""
        path = tmp_path / "config.yaml"
        path.write_text("agent: [unclosed\n", encoding="utf-8")
        with pytest.raises(ValueError) as exc:
            AgentConfig.load(path)
        assert "config.yaml" in str(exc.value)

    @pytest.mark.parametrize("data", [
        {"max_iterations": 0},
        {"max_iterations": 101},
        {"max_retries": 11},
        {"analysis": {"level": 10}},
        {"stale_idle_seconds": 0},
    ])
    def test_out_of_range_rejected(self, data):
        """Settings outside their bounds fail validation."""
        with pytest.raises(ValueError):
            AgentConfig.from_dict(data)

    def test_shipped_config_is_valid(self):
        """The config.yaml shipped with the project loads cleanly."""
        shipped = Path(__file__).resolve().parent.parent / "config.yaml"
        config = AgentConfig.load(shipped)
        assert config.analysis.default_paths == ["app"]
        assert config.llm.model
