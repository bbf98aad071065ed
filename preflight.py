"""
Overlord Agent Health Check
---------------------------
Pre-flight verification before letting the agent loose on a project.

Usage:
    python preflight.py                 # Run all checks
    python preflight.py /path/to/app    # Check against a specific project root
"""

import sys
import os
import shutil
import subprocess
from pathlib import Path
from typing import NamedTuple, List, Callable, Optional
from enum import Enum

class Status(Enum):
    PASS = "✅"
    FAIL = "❌"
    WARN = "⚠️"
    SKIP = "⏭️"

class CheckResult(NamedTuple):
    name: str
    status: Status
    message: str
    fix_hint: Optional[str] = None

# ============================================================
# CONFIGURATION
# ============================================================
BACKEND_DIR = Path(__file__).parent / "overlord_agent"
PROJECT_ROOT = Path(os.environ.get("OVERLORD_AGENT_PROJECT_ROOT", "."))

REQUIRED_PYTHON_VERSION = (3, 10)

PROVIDER_ENV_VARS = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "DEEPSEEK_API_KEY",
    "GROQ_API_KEY",
]

# import name -> distribution name
REQUIRED_PYTHON_PACKAGES = {
    "fastapi": "fastapi",
    "uvicorn": "uvicorn",
    "pydantic": "pydantic",
    "litellm": "litellm",
    "loguru": "loguru",
    "yaml": "pyyaml",
    "sqlalchemy": "sqlalchemy",
    "aiosqlite": "aiosqlite",
    "dotenv": "python-dotenv",
}

REQUIRED_BACKEND_FILES = [
    "overlord.py",
    "modules/api.py",
    "modules/remediation/engine.py",
    "modules/remediation/analysis.py",
    "modules/remediation/mutator.py",
    "modules/persistence/session_store.py",
    "config.yaml",
]

# ============================================================
# CHECK FUNCTIONS
# ============================================================

def check_python_version() -> CheckResult:
    """Verify Python version meets minimum requirements."""
    current = sys.version_info[:2]
    if current >= REQUIRED_PYTHON_VERSION:
        return CheckResult(
            "Python Version",
            Status.PASS,
            f"Python {current[0]}.{current[1]} >= {REQUIRED_PYTHON_VERSION[0]}.{REQUIRED_PYTHON_VERSION[1]}"
        )
    return CheckResult(
        "Python Version",
        Status.FAIL,
        f"Python {current[0]}.{current[1]} < {REQUIRED_PYTHON_VERSION[0]}.{REQUIRED_PYTHON_VERSION[1]}",
        f"Install Python {REQUIRED_PYTHON_VERSION[0]}.{REQUIRED_PYTHON_VERSION[1]}+"
    )

def check_python_packages() -> CheckResult:
    """Verify required Python packages are installed."""
    missing = []
    for module_name, dist_name in REQUIRED_PYTHON_PACKAGES.items():
        try:
            __import__(module_name)
        except ImportError:
            missing.append(dist_name)

    if missing:
        return CheckResult(
            "Python Packages",
            Status.FAIL,
            f"Missing: {', '.join(missing)}",
            "Run: pip install -e ."
        )
    return CheckResult("Python Packages", Status.PASS, f"All {len(REQUIRED_PYTHON_PACKAGES)} packages installed")

def check_backend_files() -> CheckResult:
    """Verify all required backend files exist."""
    missing = [f for f in REQUIRED_BACKEND_FILES if not (BACKEND_DIR / f).exists()]
    if missing:
        return CheckResult(
            "Backend Files",
            Status.FAIL,
            f"Missing: {', '.join(missing[:3])}{'...' if len(missing) > 3 else ''}",
            "Check overlord_agent directory structure"
        )
    return CheckResult("Backend Files", Status.PASS, f"All {len(REQUIRED_BACKEND_FILES)} files present")

def check_config_yaml() -> CheckResult:
    """Verify config.yaml parses into a valid agent configuration."""
    config_path = BACKEND_DIR / "config.yaml"
    if not config_path.exists():
        return CheckResult("Config YAML", Status.WARN, "config.yaml not found, defaults will be used")

    try:
        sys.path.insert(0, str(BACKEND_DIR))
        from modules.remediation.config import AgentConfig

        config = AgentConfig.load(config_path)
    except ImportError as e:
        return CheckResult("Config YAML", Status.SKIP, f"Could not import config loader: {e}")
    except ValueError as e:
        return CheckResult("Config YAML", Status.FAIL, f"Invalid configuration: {e}")
    finally:
        sys.path.pop(0)

    return CheckResult(
        "Config YAML",
        Status.PASS,
        f"Level {config.analysis.level}, {config.max_iterations} iterations, model {config.llm.model}"
    )

def check_php_binary() -> CheckResult:
    """PHP is used for `php -l` syntax checks before every write."""
    php = os.environ.get("OVERLORD_AGENT_PHP_BINARY", "php")
    try:
        result = subprocess.run([php, "--version"], capture_output=True, text=True, timeout=10)
    except FileNotFoundError:
        return CheckResult(
            "PHP Binary",
            Status.WARN,
            f"'{php}' not found - PHP syntax checks will be skipped",
            "Install PHP CLI or set OVERLORD_AGENT_PHP_BINARY"
        )
    except Exception as e:
        return CheckResult("PHP Binary", Status.WARN, f"Could not check: {e}")
    first_line = (result.stdout or "").splitlines()[0] if result.stdout else php
    return CheckResult("PHP Binary", Status.PASS, first_line)

def check_analyzer() -> CheckResult:
    """Verify the static analyzer can be located for the project."""
    explicit = os.environ.get("OVERLORD_AGENT_PHPSTAN")
    if explicit:
        if Path(explicit).exists() or shutil.which(explicit):
            return CheckResult("Static Analyzer", Status.PASS, f"Using {explicit}")
        return CheckResult("Static Analyzer", Status.FAIL, f"{explicit} not found", "Fix OVERLORD_AGENT_PHPSTAN")

    local = PROJECT_ROOT / "vendor" / "bin" / "phpstan"
    if local.exists():
        return CheckResult("Static Analyzer", Status.PASS, f"Using {local}")
    if shutil.which("phpstan"):
        return CheckResult("Static Analyzer", Status.PASS, "Using phpstan from PATH")
    return CheckResult(
        "Static Analyzer",
        Status.FAIL,
        "phpstan not found",
        "Run: composer require --dev larastan/larastan"
    )

def check_api_keys() -> CheckResult:
    """At least one provider key must be present for fix generation."""
    present = [k for k in PROVIDER_ENV_VARS if os.environ.get(k)]
    if present:
        return CheckResult("API Keys", Status.PASS, f"{len(present)} provider key(s) configured")
    return CheckResult(
        "API Keys",
        Status.FAIL,
        "No provider API keys configured",
        "Set OPENAI_API_KEY (or another provider key) in overlord_agent/.env"
    )

def check_database_url() -> CheckResult:
    """Production mode requires an explicit DATABASE_URL."""
    production = os.environ.get("OVERLORD_PRODUCTION", "false").lower() == "true"
    if os.environ.get("DATABASE_URL"):
        return CheckResult("Database", Status.PASS, "DATABASE_URL configured")
    if production:
        return CheckResult("Database", Status.FAIL, "DATABASE_URL missing in production mode", "Set DATABASE_URL")
    return CheckResult("Database", Status.WARN, "DATABASE_URL not set - using local SQLite file")

def check_llm_models_accessible() -> CheckResult:
    """Best-effort validation that the configured model names are reachable.

    This is OPT-IN to avoid accidental API calls/costs.

    Enable by setting env var: OVERLORD_PREFLIGHT_VALIDATE_MODELS=1
    """

    if os.environ.get("OVERLORD_PREFLIGHT_VALIDATE_MODELS", "").strip().lower() not in {"1", "true", "yes"}:
        return CheckResult(
            "LLM Model Validation",
            Status.SKIP,
            "Skipped (set OVERLORD_PREFLIGHT_VALIDATE_MODELS=1 to enable)",
        )

    if not any(os.environ.get(k) for k in PROVIDER_ENV_VARS):
        return CheckResult("LLM Model Validation", Status.SKIP, "Skipped (no API keys found in environment)")

    sys.path.insert(0, str(BACKEND_DIR))
    try:
        import litellm
        from modules.remediation.config import AgentConfig

        config = AgentConfig.load(BACKEND_DIR / "config.yaml")
    except Exception as e:
        return CheckResult("LLM Model Validation", Status.SKIP, f"Skipped ({type(e).__name__}: {e})")
    finally:
        sys.path.pop(0)

    models = [config.llm.model, *config.llm.fallback_models]
    failures: List[str] = []
    warnings: List[str] = []

    messages = [{"role": "user", "content": "ping"}]
    for model in models:
        try:
            litellm.completion(model=model, messages=messages, max_tokens=1, temperature=0.0, timeout=12)
        except Exception as e:
            et = type(e).__name__
            msg = str(e).lower()
            if "NotFound" in et or "not_found" in msg or "model not" in msg:
                failures.append(model)
            else:
                warnings.append(f"{model} ({et})")

    if failures:
        return CheckResult(
            "LLM Model Validation",
            Status.FAIL,
            f"Model(s) not found: {', '.join(failures[:3])}{'...' if len(failures) > 3 else ''}",
            "Update llm.model / llm.fallback_models in overlord_agent/config.yaml",
        )
    if warnings:
        return CheckResult(
            "LLM Model Validation",
            Status.WARN,
            f"Some models could not be validated: {', '.join(warnings[:2])}{'...' if len(warnings) > 2 else ''}",
            "Check API keys, provider status, and model names",
        )
    return CheckResult("LLM Model Validation", Status.PASS, f"Validated {len(models)} model(s)")

def check_git_status() -> CheckResult:
    """The agent rewrites files in place; uncommitted work is easy to lose track of."""
    try:
        result = subprocess.run(
            ["git", "status", "--porcelain"],
            capture_output=True,
            text=True,
            cwd=PROJECT_ROOT,
            timeout=10
        )
        if result.returncode != 0:
            return CheckResult("Git Status", Status.WARN, "Project is not a git repository", "Backups are the only undo")
        if result.stdout.strip():
            lines = result.stdout.strip().split('\n')
            return CheckResult(
                "Git Status",
                Status.WARN,
                f"{len(lines)} uncommitted changes",
                "Commit before running so agent changes are easy to review"
            )
        return CheckResult("Git Status", Status.PASS, "Working directory clean")
    except Exception as e:
        return CheckResult("Git Status", Status.SKIP, f"Could not check: {e}")

# ============================================================
# MAIN RUNNER
# ============================================================

ALL_CHECKS: List[Callable[[], CheckResult]] = [
    check_python_version,
    check_python_packages,
    check_backend_files,
    check_config_yaml,
    check_php_binary,
    check_analyzer,
    check_api_keys,
    check_database_url,
    check_llm_models_accessible,
    check_git_status,
]

def run_preflight(verbose: bool = True) -> bool:
    """Run all preflight checks. Returns True if none fail."""
    print("\n" + "=" * 60)
    print("🚀 OVERLORD AGENT PREFLIGHT CHECK")
    print("=" * 60 + "\n")

    results: List[CheckResult] = []

    for check_fn in ALL_CHECKS:
        try:
            result = check_fn()
        except Exception as e:
            result = CheckResult(check_fn.__name__, Status.FAIL, f"Check crashed: {e}")
        results.append(result)

        icon = result.status.value
        print(f"  {icon} {result.name}: {result.message}")
        if verbose and result.fix_hint and result.status in (Status.FAIL, Status.WARN):
            print(f"      💡 {result.fix_hint}")

    passed = sum(1 for r in results if r.status == Status.PASS)
    failed = sum(1 for r in results if r.status == Status.FAIL)
    warned = sum(1 for r in results if r.status == Status.WARN)

    print("\n" + "-" * 60)
    print(f"  SUMMARY: {passed} passed, {warned} warnings, {failed} failed")
    print("-" * 60)

    if failed > 0:
        print("\n❌ PREFLIGHT FAILED - Fix issues before starting\n")
        return False
    elif warned > 0:
        print("\n⚠️  PREFLIGHT PASSED WITH WARNINGS\n")
        return True
    else:
        print("\n✅ ALL SYSTEMS GO!\n")
        return True

if __name__ == "__main__":
    if len(sys.argv) > 1:
        PROJECT_ROOT = Path(sys.argv[1])
    success = run_preflight()
    sys.exit(0 if success else 1)
