"""
Analysis Runner - Static Analysis Invocation

Locates and runs the static-analysis executable (PHPStan / Larastan by default),
discovers its configuration, and normalizes the output into Issue objects.

Output handling:
- JSON report, possibly preceded by unrelated diagnostic text
- Plain-text fallback (indented file path line, then indented "<line> <message>" lines)
- Empty / zero-total output is checked against the tree so that "nothing was
  scanned" is never reported as "clean"
"""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from .models import Issue, IssueSeverity, ScanResult, ScanSummary


# =============================================================================
# ERRORS
# =============================================================================


class AnalysisError(RuntimeError):
    """The analyzer could not produce a usable result."""


class AnalyzerNotFoundError(AnalysisError):
    """No analyzer executable could be located."""


class NoScanTargetsError(AnalysisError):
    """No valid paths or no source files to analyse."""


# =============================================================================
# CONFIGURATION
# =============================================================================

CONFIG_CANDIDATES: Tuple[str, ...] = ("phpstan.neon", "phpstan.dist.neon", "phpstan.neon.dist")
SKIP_DIRECTORIES: Tuple[str, ...] = ("vendor", "cache", "node_modules")

DEFAULT_PATHS: Tuple[str, ...] = ("app",)
DEFAULT_LEVEL = 1
DEFAULT_TIMEOUT_SECONDS = 600

_LEVEL_RE = re.compile(r"^\s*level:\s*(\d+)", re.MULTILINE)
_INLINE_PATHS_RE = re.compile(r"^\s*paths:\s*\[(.*?)\]", re.MULTILINE | re.DOTALL)
_BLOCK_PATHS_RE = re.compile(r"^(\s*)paths:\s*\n((?:\1\s+-\s*.+\n?)+)", re.MULTILINE)
_MEMORY_RE = re.compile(r"^\s*memoryLimit:\s*['\"]?([^'\"\s]+)", re.MULTILINE)

_TEXT_FILE_RE = re.compile(r"^\s+([/\\].+\.\w+)\s*$")
_TEXT_ISSUE_RE = re.compile(r"^\s+(\d+)\s+(.+)$")


@dataclass
class AnalysisRequest:
    """Caller-supplied overrides for one scan. Unset fields fall back to config."""
    level: Optional[int] = None
    paths: List[str] = field(default_factory=list)
    memory_limit: Optional[str] = None
    config_file: Optional[str] = None
    baseline_file: Optional[str] = None


@dataclass
class ToolConfig:
    """Values read from the analyzer's own config file."""
    path: Optional[Path] = None
    level: Optional[int] = None
    paths: List[str] = field(default_factory=list)
    memory_limit: Optional[str] = None


def parse_neon_config(text: str) -> ToolConfig:
    """Best-effort extraction of level / paths / memoryLimit from a .neon file."""
    config = ToolConfig()

    if match := _LEVEL_RE.search(text):
        config.level = int(match.group(1))

    if match := _INLINE_PATHS_RE.search(text):
        items = [item.strip().strip("'\"") for item in match.group(1).split(",")]
        config.paths = [item for item in items if item]
    elif match := _BLOCK_PATHS_RE.search(text):
        for line in match.group(2).splitlines():
            item = line.strip().lstrip("-").strip().strip("'\"")
            if item:
                config.paths.append(item)

    if match := _MEMORY_RE.search(text):
        config.memory_limit = match.group(1)

    return config


def map_severity(message: str) -> IssueSeverity:
    lowered = message.lower()
    if "critical" in lowered:
        return IssueSeverity.CRITICAL
    if "security" in lowered or "vulnerability" in lowered:
        return IssueSeverity.HIGH
    return IssueSeverity.MEDIUM


def extract_json_object(output: str) -> Optional[Dict[str, Any]]:
    """
    Pull the analyzer's JSON report out of mixed output.

    Starts from the last plausible report opener ('{"totals"' / '{"files"'),
    falling back to the first '{', and scans forward for the matching brace
    while respecting string literals.
    """
    if not output or "{" not in output:
        return None

    starts: List[int] = []
    for token in ('{"totals"', '{"files"'):
        index = output.rfind(token)
        if index != -1:
            starts.append(index)
    candidates = sorted(set(starts), reverse=True)
    first_brace = output.find("{")
    if first_brace not in candidates:
        candidates.append(first_brace)

    for start in candidates:
        end = _matching_brace(output, start)
        if end is None:
            continue
        try:
            parsed = json.loads(output[start:end + 1])
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _matching_brace(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


# =============================================================================
# RUNNER
# =============================================================================


class AnalysisRunner:
    """
    Runs the analyzer over a project and returns a normalized ScanResult.
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        executable: Optional[str] = None,
        default_paths: Optional[Sequence[str]] = None,
        default_level: int = DEFAULT_LEVEL,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        config_file: Optional[str] = None,
        baseline_file: Optional[str] = None,
        memory_limit: Optional[str] = None,
        source_extensions: Sequence[str] = (".php",),
    ):
        self.project_root = Path(project_root).resolve()
        self.executable = executable
        self.default_paths = list(default_paths or DEFAULT_PATHS)
        self.default_level = default_level
        self.timeout_seconds = timeout_seconds
        self.config_file = config_file
        self.baseline_file = baseline_file
        self.memory_limit = memory_limit
        self.source_extensions = tuple(source_extensions)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def find_executable(self) -> Optional[str]:
        if self.executable:
            explicit = Path(self.executable)
            if not explicit.is_absolute():
                local = self.project_root / explicit
                if local.is_file() and os.access(local, os.X_OK):
                    return str(local)
            elif explicit.is_file() and os.access(explicit, os.X_OK):
                return str(explicit)
            return shutil.which(self.executable)

        vendor_bin = self.project_root / "vendor" / "bin" / "phpstan"
        if vendor_bin.is_file() and os.access(vendor_bin, os.X_OK):
            return str(vendor_bin)
        return shutil.which("phpstan")

    def detect_config_file(self) -> Optional[Path]:
        for name in CONFIG_CANDIDATES:
            candidate = self.project_root / name
            if candidate.is_file():
                return candidate
        return None

    def read_tool_config(self, config_file: Optional[Union[str, Path]] = None) -> ToolConfig:
        path = self._resolve(config_file) if config_file else self.detect_config_file()
        if path is None or not path.is_file():
            return ToolConfig()
        try:
            config = parse_neon_config(path.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            logger.warning(f"Could not read analyzer config {path}: {e}")
            return ToolConfig(path=path)
        config.path = path
        return config

    # -------------------------------------------------------------------------
    # Command
    # -------------------------------------------------------------------------

    def build_command(self, request: Optional[AnalysisRequest] = None) -> Tuple[List[str], List[Path], int]:
        """
        Resolve precedence and build the argv.

        Returns:
            (command, valid_paths, level)

        Raises:
            AnalyzerNotFoundError: No executable.
            NoScanTargetsError: None of the resolved paths exist.
        """
        request = request or AnalysisRequest()

        executable = self.find_executable()
        if executable is None:
            raise AnalyzerNotFoundError(
                "PHPStan executable not found. Install it with "
                "`composer require --dev phpstan/phpstan` (or larastan/larastan) "
                "or configure the analyzer executable path."
            )

        tool_config = self.read_tool_config(request.config_file or self.config_file)

        if request.level is not None:
            level = request.level
        elif tool_config.level is not None:
            level = tool_config.level
        else:
            level = self.default_level

        raw_paths = request.paths or tool_config.paths or self.default_paths
        valid_paths: List[Path] = []
        for raw in raw_paths:
            resolved = self._resolve(raw)
            if resolved.exists():
                valid_paths.append(resolved)
            else:
                logger.warning(f"Scan path does not exist, skipping: {raw}")

        if not valid_paths:
            raise NoScanTargetsError(
                f"No valid paths to analyse (tried: {', '.join(raw_paths)})"
            )

        command = [executable, "analyse", "--error-format=json", "--no-progress", f"--level={level}"]

        if tool_config.path is not None:
            command.append(f"--configuration={tool_config.path}")

        memory_limit = request.memory_limit or self.memory_limit or tool_config.memory_limit
        if memory_limit:
            command.append(f"--memory-limit={memory_limit}")

        baseline = request.baseline_file or self.baseline_file
        if baseline:
            baseline_path = self._resolve(baseline)
            if baseline_path.is_file():
                command.append(f"--baseline={baseline_path}")
            else:
                logger.warning(f"Baseline file not found, ignoring: {baseline}")

        command.extend(str(path) for path in valid_paths)
        return command, valid_paths, level

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------

    def scan(self, request: Optional[AnalysisRequest] = None) -> ScanResult:
        """
        Run the analyzer once.

        Exit codes: 0 clean, 1 issues found, anything else is a tool failure.

        Raises:
            AnalysisError: Tool failure, timeout, config error or nothing to scan.
        """
        command, valid_paths, level = self.build_command(request)
        logger.info(f"Running static analysis (level {level}) on {len(valid_paths)} path(s)")
        logger.debug(f"Analyzer command: {' '.join(command)}")

        try:
            proc = subprocess.run(
                command,
                cwd=str(self.project_root),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise AnalysisError(f"Static analysis timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise AnalysisError(f"Failed to run static analysis: {e}") from e

        stdout = proc.stdout or ""
        stderr = proc.stderr or ""

        if "Invalid configuration" in stderr or "Unexpected item" in stderr:
            raise AnalysisError(f"Analyzer configuration error: {stderr.strip()}")

        if proc.returncode > 1 or proc.returncode < 0:
            detail = stderr.strip() or stdout.strip() or "no output"
            raise AnalysisError(f"Static analysis failed (exit code {proc.returncode}): {detail}")

        result = self.parse_output(stdout)
        result.exit_code = proc.returncode

        if proc.returncode == 1 and not result.issues:
            raise AnalysisError(
                "Analyzer reported issues (exit code 1) but its output could not be parsed: "
                + (stdout.strip()[:500] or stderr.strip()[:500] or "no output")
            )

        if not result.issues and result.summary.total_files == 0:
            file_count = self.count_source_files(valid_paths)
            if file_count == 0:
                raise NoScanTargetsError(
                    "No source files found in the scan paths: "
                    + ", ".join(self._relative(p) for p in valid_paths)
                )
            result.summary.total_files = file_count

        logger.info(
            f"Static analysis finished: {result.summary.total_errors} error(s) "
            f"in {result.summary.files_with_errors} of {result.summary.total_files} file(s)"
        )
        return result

    def validate_content(self, content: str, level: Optional[int] = None, suffix: str = ".php") -> List[str]:
        """
        Analyse ``content`` in isolation and return the messages found.

        An empty list means the analyzer accepted the content.
        """
        temp_dir = tempfile.mkdtemp(prefix="overlord-analyse-")
        try:
            temp_file = Path(temp_dir) / f"candidate{suffix}"
            temp_file.write_text(content, encoding="utf-8")
            result = self.scan(AnalysisRequest(level=level, paths=[str(temp_file)]))
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
        return [f"Line {issue.line}: {issue.message}" for issue in result.issues]

    def count_source_files(self, paths: Sequence[Path]) -> int:
        total = 0
        for path in paths:
            if path.is_file():
                total += 1 if path.name.lower().endswith(self.source_extensions) else 0
                continue
            for root, dirs, files in os.walk(path):
                dirs[:] = [d for d in dirs if d not in SKIP_DIRECTORIES]
                total += sum(1 for name in files if name.lower().endswith(self.source_extensions))
        return total

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def parse_output(self, stdout: str) -> ScanResult:
        if not stdout.strip():
            return ScanResult()

        report = extract_json_object(stdout)
        if report is not None and ("files" in report or "totals" in report):
            return self.parse_json_report(report)

        logger.debug("Analyzer output is not JSON, falling back to text parser")
        return self.parse_text_report(stdout)

    def parse_json_report(self, report: Dict[str, Any]) -> ScanResult:
        issues: List[Issue] = []
        files = report.get("files") or {}
        if isinstance(files, dict):
            for file_path, file_data in files.items():
                messages = (file_data or {}).get("messages") or []
                relative = self._relative(Path(file_path))
                for entry in messages:
                    message = str(entry.get("message", "")).strip()
                    issues.append(
                        Issue(
                            file=relative,
                            line=entry.get("line"),
                            message=message,
                            identifier=entry.get("identifier"),
                            tip=entry.get("tip"),
                            severity=map_severity(message),
                        )
                    )

        for general_error in report.get("errors") or []:
            logger.warning(f"Analyzer reported a general error: {general_error}")

        totals = report.get("totals") or {}
        summary = ScanSummary(
            total_errors=len(issues),
            total_files=int(totals.get("files") or 0),
            files_with_errors=len({issue.file for issue in issues}),
        )
        return ScanResult(issues=issues, summary=summary)

    def parse_text_report(self, output: str) -> ScanResult:
        issues: List[Issue] = []
        current_file: Optional[str] = None

        for line in output.splitlines():
            if match := _TEXT_FILE_RE.match(line):
                current_file = self._relative(Path(match.group(1).strip()))
                continue
            if current_file and (match := _TEXT_ISSUE_RE.match(line)):
                message = match.group(2).strip()
                issues.append(
                    Issue(
                        file=current_file,
                        line=int(match.group(1)),
                        message=message,
                        severity=map_severity(message),
                    )
                )

        summary = ScanSummary(
            total_errors=len(issues),
            total_files=0,
            files_with_errors=len({issue.file for issue in issues}),
        )
        return ScanResult(issues=issues, summary=summary)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolve(self, path: Union[str, Path]) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.project_root / candidate

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.project_root).as_posix()
        except (ValueError, OSError):
            return path.as_posix()
