"""
Agent configuration.

Sources, lowest to highest precedence:
1. Dataclass defaults
2. ``config.yaml`` (``agent:`` section)
3. ``OVERLORD_AGENT_*`` environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from loguru import logger

ENV_PREFIX = "OVERLORD_AGENT_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _split_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


@dataclass
class AnalysisSettings:
    """Static-analysis tool settings."""
    executable: Optional[str] = None
    level: int = 1
    paths: List[str] = field(default_factory=list)
    default_paths: List[str] = field(default_factory=lambda: ["app"])
    memory_limit: Optional[str] = None
    config_file: Optional[str] = None
    baseline_file: Optional[str] = None
    timeout_seconds: int = 600
    validate_fixes: bool = False   # re-run the analyzer on each candidate fix

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisSettings":
        settings = cls()
        if "executable" in data:
            settings.executable = data["executable"] or None
        if "level" in data:
            settings.level = int(data["level"])
        if "paths" in data:
            settings.paths = _split_list(data["paths"])
        if "default_paths" in data:
            settings.default_paths = _split_list(data["default_paths"]) or settings.default_paths
        if "memory_limit" in data:
            settings.memory_limit = data["memory_limit"] or None
        if "config_file" in data:
            settings.config_file = data["config_file"] or None
        if "baseline_file" in data:
            settings.baseline_file = data["baseline_file"] or None
        if "timeout_seconds" in data:
            settings.timeout_seconds = int(data["timeout_seconds"])
        if "validate_fixes" in data:
            settings.validate_fixes = bool(data["validate_fixes"])
        return settings


@dataclass
class LLMSettings:
    """Language-model collaborator settings."""
    model: str = "gpt-4o-mini"
    fallback_models: List[str] = field(default_factory=list)
    timeout_seconds: int = 120
    temperature: float = 0.2
    max_tokens: int = 4096

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMSettings":
        settings = cls()
        if "model" in data:
            settings.model = str(data["model"])
        if "fallback_models" in data:
            settings.fallback_models = _split_list(data["fallback_models"])
        if "timeout_seconds" in data:
            settings.timeout_seconds = int(data["timeout_seconds"])
        if "temperature" in data:
            settings.temperature = float(data["temperature"])
        if "max_tokens" in data:
            settings.max_tokens = int(data["max_tokens"])
        return settings


@dataclass
class AgentConfig:
    """Configuration for the remediation agent."""
    project_root: str = "."
    auto_apply: bool = True
    max_iterations: int = 50
    max_retries: int = 3
    context_margin: int = 10

    # Loop timing
    pause_poll_interval_seconds: float = 1.0
    pause_timeout_seconds: float = 300.0
    iteration_delay_seconds: float = 1.0

    # Unowned active sessions older than these are marked failed
    stale_idle_seconds: float = 300.0
    stale_running_seconds: float = 1800.0

    # File mutation
    backup_dir: Optional[str] = None
    php_binary: str = "php"
    max_file_bytes: int = 1024 * 1024

    last_log_ttl_seconds: int = 300

    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        """Create from dictionary (either the ``agent:`` section or a whole config file)."""
        data = dict(data.get("agent", data) or {})
        config = cls()

        for name in ("project_root", "php_binary"):
            if name in data:
                setattr(config, name, str(data[name]))
        if "backup_dir" in data:
            config.backup_dir = data["backup_dir"] or None
        if "auto_apply" in data:
            config.auto_apply = bool(data["auto_apply"])
        for name in ("max_iterations", "max_retries", "context_margin", "max_file_bytes", "last_log_ttl_seconds"):
            if name in data:
                setattr(config, name, int(data[name]))
        for name in (
            "pause_poll_interval_seconds",
            "pause_timeout_seconds",
            "iteration_delay_seconds",
            "stale_idle_seconds",
            "stale_running_seconds",
        ):
            if name in data:
                setattr(config, name, float(data[name]))

        if "analysis" in data:
            config.analysis = AnalysisSettings.from_dict(data["analysis"] or {})
        if "llm" in data:
            config.llm = LLMSettings.from_dict(data["llm"] or {})

        config.validate()
        return config

    @classmethod
    def from_env(cls, base: Optional["AgentConfig"] = None) -> "AgentConfig":
        """Apply ``OVERLORD_AGENT_*`` overrides on top of ``base`` (or defaults)."""
        config = base or cls()

        if val := os.getenv(f"{ENV_PREFIX}PROJECT_ROOT"):
            config.project_root = val
        if val := os.getenv(f"{ENV_PREFIX}AUTO_APPLY"):
            config.auto_apply = _env_bool(val)
        if val := os.getenv(f"{ENV_PREFIX}MAX_ITERATIONS"):
            config.max_iterations = int(val)
        if val := os.getenv(f"{ENV_PREFIX}MAX_RETRIES"):
            config.max_retries = int(val)
        if val := os.getenv(f"{ENV_PREFIX}PAUSE_TIMEOUT"):
            config.pause_timeout_seconds = float(val)
        if val := os.getenv(f"{ENV_PREFIX}BACKUP_DIR"):
            config.backup_dir = val
        if val := os.getenv(f"{ENV_PREFIX}PHP_BINARY"):
            config.php_binary = val

        # Analysis
        if val := os.getenv(f"{ENV_PREFIX}LEVEL"):
            config.analysis.level = int(val)
        if val := os.getenv(f"{ENV_PREFIX}PATHS"):
            config.analysis.paths = _split_list(val)
        if val := os.getenv(f"{ENV_PREFIX}PHPSTAN"):
            config.analysis.executable = val
        if val := os.getenv(f"{ENV_PREFIX}ANALYSIS_TIMEOUT"):
            config.analysis.timeout_seconds = int(val)

        # LLM
        if val := os.getenv(f"{ENV_PREFIX}MODEL"):
            config.llm.model = val
        if val := os.getenv(f"{ENV_PREFIX}FALLBACK_MODELS"):
            config.llm.fallback_models = _split_list(val)

        config.validate()
        return config

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = "config.yaml") -> "AgentConfig":
        """Load ``config.yaml`` (if present) and apply environment overrides."""
        config = cls()
        if config_path:
            path = Path(config_path)
            if path.exists():
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ValueError(f"Invalid YAML in {path}: {e}") from e
                config = cls.from_dict(data)
                logger.debug(f"Loaded agent config from {path}")
            else:
                logger.debug(f"Config file {path} not found, using defaults")
        return cls.from_env(config)

    def validate(self) -> None:
        if not 1 <= self.max_iterations <= 100:
            raise ValueError(f"max_iterations must be between 1 and 100 (got {self.max_iterations})")
        if not 1 <= self.max_retries <= 10:
            raise ValueError(f"max_retries must be between 1 and 10 (got {self.max_retries})")
        if not 0 <= self.analysis.level <= 9:
            raise ValueError(f"analysis level must be between 0 and 9 (got {self.analysis.level})")
        if self.pause_timeout_seconds <= 0 or self.pause_poll_interval_seconds <= 0:
            raise ValueError("pause timing values must be positive")
        if self.stale_idle_seconds <= 0 or self.stale_running_seconds <= 0:
            raise ValueError("stale session thresholds must be positive")
