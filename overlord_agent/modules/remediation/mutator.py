"""
File Mutator - Safe File Writes

The only component allowed to touch the source tree. Every write goes through:
1. Path validation (allow-list / deny-list, traversal, containment) before any I/O
2. Backup of the existing file (additive, never overwritten)
3. Syntax check of the proposed content in an isolated temp directory
4. Atomic replace of the target
5. Restore from backup if the write itself fails

Based on OWASP Path Traversal prevention guidelines for the path checks.
"""

from __future__ import annotations

import contextlib
import fnmatch
import json
import os
import re
import shutil
import subprocess
import tempfile
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import yaml
from loguru import logger

from .models import LineEdit


# =============================================================================
# CONFIGURATION
# =============================================================================

PROTECTED_DIRECTORIES: Tuple[str, ...] = (
    "vendor",
    "node_modules",
    ".git",
    "storage/framework",
    "storage/logs",
    "bootstrap/cache",
    "public",
    "__pycache__",
    ".venv",
    "venv",
)

# Longest suffix first so "blade.php" wins over "php"
ALLOWED_EXTENSIONS: Tuple[str, ...] = (
    "blade.php",
    "php",
    "js",
    "ts",
    "tsx",
    "vue",
    "css",
    "scss",
    "json",
    "xml",
    "yaml",
    "yml",
    "py",
)

FORBIDDEN_PATTERNS: Tuple[str, ...] = (
    "*.env",
    "*.env.*",
    "*.secret*",
    "*.pem",
    "*.key",
)

BACKUP_DIR_NAME = ".overlord"
DEFAULT_MAX_FILE_BYTES = 1024 * 1024

TRAVERSAL_PATTERNS = [
    r"(^|[\\/])\.\.([\\/]|$)",  # ../ or ..\ or a bare ..
    r"\.\.%",                   # URL-encoded following ..
    r"%2e%2e",                  # URL encoded ..
    r"%252e%252e",              # Double URL encoded ..
    r"%c0%ae",                  # Overlong UTF-8 encoding of .
    r"%c0%af",                  # Overlong UTF-8 encoding of /
    r"%00",                     # Null byte injection
    r"\x00",
]

_COMPILED_TRAVERSAL = [re.compile(p, re.IGNORECASE) for p in TRAVERSAL_PATTERNS]


class PathValidationError(Exception):
    """Raised when a path may not be read or written by the agent."""

    def __init__(self, message: str, path: str = "", reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(message)


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class ReadResult:
    success: bool
    content: str = ""
    path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SyntaxCheckResult:
    valid: bool
    error: Optional[str] = None
    line: Optional[int] = None
    context: Optional[str] = None
    skipped: bool = False


@dataclass
class WriteResult:
    success: bool
    path: Optional[str] = None
    backup_path: Optional[str] = None
    error: Optional[str] = None
    line: Optional[int] = None
    context: Optional[str] = None


SyntaxChecker = Callable[[Path, str], SyntaxCheckResult]


def context_excerpt(content: str, line: int, radius: int = 2) -> str:
    """Numbered lines around ``line`` with a ``>>>`` marker on the target."""
    lines = content.split("\n")
    start = max(0, line - 1 - radius)
    end = min(len(lines), line + radius)
    excerpt = []
    for i in range(start, end):
        marker = ">>>" if i + 1 == line else "   "
        excerpt.append(f"{marker} {i + 1:4d} | {lines[i]}")
    return "\n".join(excerpt)


def _decode_path(path: str, max_rounds: int = 3) -> str:
    decoded = path
    for _ in range(max_rounds):
        next_value = urllib.parse.unquote(decoded)
        if next_value == decoded:
            break
        decoded = next_value
    return decoded


def _has_traversal_pattern(path: str) -> bool:
    return any(p.search(path) for p in _COMPILED_TRAVERSAL)


# =============================================================================
# SYNTAX CHECKERS
# =============================================================================


def check_python_syntax(temp_path: Path, display_name: str) -> SyntaxCheckResult:
    source = temp_path.read_text(encoding="utf-8")
    try:
        compile(source, display_name, "exec")
    except SyntaxError as e:
        return SyntaxCheckResult(valid=False, error=f"Syntax error: {e.msg}", line=e.lineno)
    except ValueError as e:
        return SyntaxCheckResult(valid=False, error=f"Syntax error: {e}")
    return SyntaxCheckResult(valid=True)


def check_json_syntax(temp_path: Path, display_name: str) -> SyntaxCheckResult:
    try:
        json.loads(temp_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        return SyntaxCheckResult(valid=False, error=f"Invalid JSON: {e.msg}", line=e.lineno)
    return SyntaxCheckResult(valid=True)


def check_yaml_syntax(temp_path: Path, display_name: str) -> SyntaxCheckResult:
    try:
        list(yaml.safe_load_all(temp_path.read_text(encoding="utf-8")))
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        problem = getattr(e, "problem", None) or str(e)
        return SyntaxCheckResult(
            valid=False,
            error=f"Invalid YAML: {problem}",
            line=mark.line + 1 if mark is not None else None,
        )
    return SyntaxCheckResult(valid=True)


# =============================================================================
# FILE MUTATOR
# =============================================================================


class FileMutator:
    """
    Validated, backed-up, syntax-checked file access under one project root.
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        backup_dir: Optional[Union[str, Path]] = None,
        protected_directories: Optional[Sequence[str]] = None,
        allowed_extensions: Optional[Sequence[str]] = None,
        forbidden_patterns: Optional[Sequence[str]] = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        php_binary: str = "php",
        syntax_check_timeout: int = 30,
    ):
        self.project_root = Path(project_root).resolve()

        if backup_dir is None:
            self.backup_dir = self.project_root / BACKUP_DIR_NAME / "backups"
        else:
            backup = Path(backup_dir)
            self.backup_dir = backup if backup.is_absolute() else self.project_root / backup

        self.protected_directories = list(protected_directories or PROTECTED_DIRECTORIES)
        self.allowed_extensions = sorted(
            (ext.lower().lstrip(".") for ext in (allowed_extensions or ALLOWED_EXTENSIONS)),
            key=len,
            reverse=True,
        )
        self.forbidden_patterns = list(forbidden_patterns or FORBIDDEN_PATTERNS)
        self.max_file_bytes = max_file_bytes
        self.php_binary = php_binary
        self.syntax_check_timeout = syntax_check_timeout

        self._checkers: Dict[str, SyntaxChecker] = {
            "php": self._check_php_syntax,
            "py": check_python_syntax,
            "json": check_json_syntax,
            "yaml": check_yaml_syntax,
            "yml": check_yaml_syntax,
        }

    # -------------------------------------------------------------------------
    # Path validation
    # -------------------------------------------------------------------------

    def resolve(self, path: Union[str, Path]) -> Path:
        """
        Validate ``path`` and resolve it to an absolute path inside the root.

        Raises:
            PathValidationError: If the path escapes the root, points into a
                protected directory, matches a forbidden pattern, or has an
                extension outside the allow-list.
        """
        path_str = str(path) if isinstance(path, Path) else (path or "")
        if not path_str.strip():
            raise PathValidationError("Empty file path", path=path_str, reason="empty")

        decoded = _decode_path(path_str)
        if _has_traversal_pattern(path_str) or _has_traversal_pattern(decoded):
            raise PathValidationError(
                f"Path contains traversal pattern: {path_str}",
                path=path_str,
                reason="traversal_pattern",
            )

        try:
            candidate = Path(decoded)
            if candidate.is_absolute():
                resolved = candidate.resolve()
            else:
                resolved = (self.project_root / candidate).resolve()
        except (OSError, ValueError) as e:
            raise PathValidationError(
                f"Cannot resolve path: {path_str}",
                path=path_str,
                reason="resolution_failed",
            ) from e

        # resolve() follows symlinks, so this also catches links out of the tree
        try:
            relative = resolved.relative_to(self.project_root).as_posix()
        except ValueError:
            raise PathValidationError(
                f"Path is outside the project root: {path_str}",
                path=path_str,
                reason="escapes_root",
            ) from None

        if self._is_protected(resolved, relative):
            raise PathValidationError(
                f"Path is inside a protected directory: {relative}",
                path=path_str,
                reason="protected_directory",
            )

        if self._is_forbidden(relative):
            raise PathValidationError(
                f"Path matches a forbidden pattern: {relative}",
                path=path_str,
                reason="forbidden_pattern",
            )

        if self._extension_of(resolved.name) is None:
            raise PathValidationError(
                f"File extension is not allowed: {resolved.name}",
                path=path_str,
                reason="extension_not_allowed",
            )

        return resolved

    def validate_path(self, path: Union[str, Path]) -> Tuple[bool, Optional[str]]:
        """Returns (allowed, reason_if_not)."""
        try:
            self.resolve(path)
        except PathValidationError as e:
            return False, str(e)
        return True, None

    def relative_path(self, resolved: Path) -> str:
        try:
            return resolved.relative_to(self.project_root).as_posix()
        except ValueError:
            return resolved.as_posix()

    def _is_protected(self, resolved: Path, relative: str) -> bool:
        parts = relative.split("/")[:-1]
        for protected in self.protected_directories:
            protected = protected.strip("/")
            if "/" in protected:
                if relative == protected or relative.startswith(protected + "/"):
                    return True
            elif protected in parts:
                return True

        try:
            resolved.relative_to(self.backup_dir.resolve())
            return True
        except ValueError:
            pass
        return BACKUP_DIR_NAME in parts

    def _is_forbidden(self, relative: str) -> bool:
        name = relative.rsplit("/", 1)[-1]
        for pattern in self.forbidden_patterns:
            if fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        return False

    def _extension_of(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for ext in self.allowed_extensions:
            if lowered.endswith("." + ext):
                return ext
        return None

    # -------------------------------------------------------------------------
    # Read / write
    # -------------------------------------------------------------------------

    def read(self, path: Union[str, Path]) -> ReadResult:
        """Read a file's exact content (UTF-8, no newline translation)."""
        try:
            resolved = self.resolve(path)
        except PathValidationError as e:
            logger.warning(f"Read rejected: {e}")
            return ReadResult(success=False, path=str(path), error=str(e))

        relative = self.relative_path(resolved)
        if not resolved.exists():
            return ReadResult(success=False, path=relative, error=f"File does not exist: {relative}")
        if not resolved.is_file():
            return ReadResult(success=False, path=relative, error=f"Not a regular file: {relative}")

        try:
            size = resolved.stat().st_size
            if size > self.max_file_bytes:
                return ReadResult(
                    success=False,
                    path=relative,
                    error=f"File too large ({size} bytes > {self.max_file_bytes})",
                )
            content = resolved.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read {relative}: {e}")
            return ReadResult(success=False, path=relative, error=f"Failed to read file: {e}")

        return ReadResult(success=True, content=content, path=relative)

    def write(self, path: Union[str, Path], content: str, backup: bool = True) -> WriteResult:
        """
        Validate, back up, syntax-check and atomically write ``content``.

        A syntax error aborts before the target is touched; the backup, if one
        was taken, stays on disk. A failed write restores the backup.
        """
        try:
            resolved = self.resolve(path)
        except PathValidationError as e:
            logger.warning(f"Write rejected: {e}")
            return WriteResult(success=False, path=str(path), error=str(e))

        relative = self.relative_path(resolved)
        data = content.encode("utf-8")
        if len(data) > self.max_file_bytes:
            return WriteResult(
                success=False,
                path=relative,
                error=f"Content too large ({len(data)} bytes > {self.max_file_bytes})",
            )

        backup_path: Optional[Path] = None
        if backup and resolved.exists():
            try:
                backup_path = self.create_backup(resolved)
            except OSError as e:
                logger.error(f"Failed to back up {relative}: {e}")
                return WriteResult(success=False, path=relative, error=f"Failed to create backup: {e}")

        check = self.check_syntax(resolved, content)
        if not check.valid:
            logger.warning(f"Syntax check failed for {relative}: {check.error} (line {check.line})")
            return WriteResult(
                success=False,
                path=relative,
                backup_path=str(backup_path) if backup_path else None,
                error=check.error,
                line=check.line,
                context=check.context,
            )

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(resolved, data)
        except OSError as e:
            logger.error(f"Failed to write {relative}: {e}")
            if backup_path is not None:
                restored, restore_error = self.restore_backup(backup_path, resolved)
                if not restored:
                    logger.error(f"Restore of {relative} from {backup_path} failed: {restore_error}")
            return WriteResult(
                success=False,
                path=relative,
                backup_path=str(backup_path) if backup_path else None,
                error=f"Failed to write file: {e}",
            )

        logger.info(f"Wrote {relative}" + (f" (backup: {backup_path.name})" if backup_path else ""))
        return WriteResult(
            success=True,
            path=relative,
            backup_path=str(backup_path) if backup_path else None,
        )

    def apply_patch(
        self,
        path: Union[str, Path],
        edits: Sequence[Union[LineEdit, Dict]],
        backup: bool = True,
    ) -> WriteResult:
        """
        Apply 1-indexed line replacements, then persist through ``write``.

        Edits are applied bottom-up so multi-line replacements don't shift
        the target lines of edits above them.
        """
        current = self.read(path)
        if not current.success:
            return WriteResult(success=False, path=current.path, error=current.error)

        lines = current.content.split("\n")
        normalized: List[LineEdit] = [
            edit if isinstance(edit, LineEdit) else LineEdit(**edit) for edit in edits
        ]

        for edit in sorted(normalized, key=lambda e: e.line, reverse=True):
            index = edit.line - 1
            if index >= len(lines):
                logger.warning(f"Patch line {edit.line} is out of range for {current.path}, skipping")
                continue
            if edit.old_content is not None and lines[index].strip() != edit.old_content.strip():
                logger.warning(
                    f"Content mismatch at {current.path}:{edit.line} "
                    f"(expected {edit.old_content.strip()!r}, found {lines[index].strip()!r})"
                )
            lines[index] = edit.new_content

        return self.write(path, "\n".join(lines), backup=backup)

    def _atomic_write(self, target: Path, data: bytes) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            if target.exists():
                shutil.copymode(target, temp_name)
            os.replace(temp_name, target)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(temp_name)
            raise

    # -------------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------------

    def create_backup(self, resolved: Path) -> Path:
        """Copy ``resolved`` to a new timestamped file in the backup directory."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stem = self.relative_path(resolved).replace("/", "_")
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")

        counter = 0
        while True:
            suffix = f"_{counter}" if counter else ""
            candidate = self.backup_dir / f"{stem}_{stamp}{suffix}.bak"
            try:
                with open(resolved, "rb") as src, open(candidate, "xb") as dst:
                    shutil.copyfileobj(src, dst)
            except FileExistsError:
                counter += 1
                continue
            shutil.copystat(resolved, candidate)
            logger.debug(f"Backed up {resolved.name} to {candidate}")
            return candidate

    def restore_backup(
        self,
        backup_path: Union[str, Path],
        target: Union[str, Path],
    ) -> Tuple[bool, Optional[str]]:
        """Copy a backup over ``target``. Returns (success, error)."""
        backup = Path(backup_path)
        if not backup.is_file():
            return False, f"Backup not found: {backup_path}"

        try:
            resolved = self.resolve(target)
        except PathValidationError as e:
            return False, str(e)

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(backup, resolved)
        except OSError as e:
            return False, f"Failed to restore backup: {e}"

        logger.info(f"Restored {self.relative_path(resolved)} from {backup.name}")
        return True, None

    # -------------------------------------------------------------------------
    # Syntax checks
    # -------------------------------------------------------------------------

    def check_syntax(self, path: Union[str, Path], content: str) -> SyntaxCheckResult:
        """
        Syntax-check ``content`` as if it were the file at ``path``.

        The content is written to a private temp directory so the real tree
        and its caches are never touched. Unknown file types pass unchecked.
        """
        name = Path(path).name
        extension = self._extension_of(name)
        checker = self._checkers.get(extension) if extension else None
        if checker is None:
            return SyntaxCheckResult(valid=True, skipped=True)

        display_name = str(path)
        with tempfile.TemporaryDirectory(prefix="overlord-syntax-") as temp_dir:
            temp_path = Path(temp_dir) / name
            temp_path.write_bytes(content.encode("utf-8"))
            result = checker(temp_path, display_name)

        if not result.valid and result.line:
            result.context = context_excerpt(content, result.line)
        return result

    def _check_php_syntax(self, temp_path: Path, display_name: str) -> SyntaxCheckResult:
        try:
            proc = subprocess.run(
                [self.php_binary, "-l", str(temp_path)],
                capture_output=True,
                text=True,
                timeout=self.syntax_check_timeout,
            )
        except FileNotFoundError:
            logger.warning(f"PHP binary '{self.php_binary}' not found, skipping syntax check for {display_name}")
            return SyntaxCheckResult(valid=True, skipped=True)
        except subprocess.TimeoutExpired:
            return SyntaxCheckResult(
                valid=False,
                error=f"Syntax check timed out after {self.syntax_check_timeout}s",
            )

        if proc.returncode == 0:
            return SyntaxCheckResult(valid=True)

        output = f"{proc.stdout}\n{proc.stderr}".replace(str(temp_path), display_name).strip()
        message = next(
            (line.strip() for line in output.splitlines() if "error" in line.lower()),
            output.splitlines()[0] if output else "php -l reported an error",
        )
        match = re.search(r"on line (\d+)", output)
        return SyntaxCheckResult(
            valid=False,
            error=f"Syntax error: {message}",
            line=int(match.group(1)) if match else None,
        )
