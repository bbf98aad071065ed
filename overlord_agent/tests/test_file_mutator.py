"""
Tests for FileMutator: path policy, backups, syntax checks and atomic writes.
"""

import os
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from modules.remediation.models import LineEdit
from modules.remediation.mutator import (
    FileMutator,
    PathValidationError,
    context_excerpt,
)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "service.py").write_text("def run():\n    return 1\n", encoding="utf-8")
    (tmp_path / "app" / "data.json").write_text('{"a": 1}\n', encoding="utf-8")
    (tmp_path / "vendor" / "pkg").mkdir(parents=True)
    (tmp_path / "vendor" / "pkg" / "lib.php").write_text("<?php\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def mutator(project: Path) -> FileMutator:
    return FileMutator(project)


class TestPathValidation:
    """Allow-list / deny-list checks run before any I/O."""

    def test_accepts_relative_source_file(self, mutator, project):
        """A plain source file inside the root resolves to an absolute path."""
        resolved = mutator.resolve("app/service.py")
        assert resolved == (project / "app" / "service.py").resolve()

    @pytest.mark.parametrize("path", ["../etc/passwd.py", "app/../../x.py", "%2e%2e/x.py", "app/%00x.py"])
    def test_rejects_traversal(self, mutator, path):
        """Traversal sequences are rejected, encoded or not."""
        with pytest.raises(PathValidationError) as exc:
            mutator.resolve(path)
        assert exc.value.reason == "traversal_pattern"

    def test_rejects_absolute_path_outside_root(self, mutator, tmp_path_factory):
        """Absolute paths must still land inside the project root."""
        outside = tmp_path_factory.mktemp("outside") / "x.py"
        outside.write_text("x = 1\n")
        with pytest.raises(PathValidationError) as exc:
            mutator.resolve(str(outside))
        assert exc.value.reason == "escapes_root"

    @pytest.mark.parametrize("path", ["vendor/pkg/lib.php", "node_modules/a/b.js", "storage/framework/views/x.php", "public/index.php"])
    def test_rejects_protected_directories(self, mutator, path):
        """Dependency, cache and public directories are off limits."""
        with pytest.raises(PathValidationError) as exc:
            mutator.resolve(path)
        assert exc.value.reason == "protected_directory"

    def test_rejects_backup_directory(self, mutator):
        """The agent never edits its own backups."""
        with pytest.raises(PathValidationError) as exc:
            mutator.resolve(".overlord/backups/app_service.py")
        assert exc.value.reason == "protected_directory"

    @pytest.mark.parametrize("path", ["config/app.env", "certs/server.pem", "keys/private.key"])
    def test_rejects_forbidden_patterns(self, mutator, path):
        """Secrets never get through, whatever their extension."""
        with pytest.raises(PathValidationError):
            mutator.resolve(path)

    @pytest.mark.parametrize("path", ["app/run.sh", "app/binary.exe", "app/README"])
    def test_rejects_unknown_extensions(self, mutator, path):
        """Only source extensions on the allow-list are writable."""
        with pytest.raises(PathValidationError) as exc:
            mutator.resolve(path)
        assert exc.value.reason == "extension_not_allowed"

    def test_blade_templates_allowed(self, mutator):
        """Compound extensions like blade.php are recognised."""
        ok, reason = mutator.validate_path("resources/views/home.blade.php")
        assert ok is True
        assert reason is None

    def test_symlink_out_of_tree_rejected(self, mutator, project, tmp_path_factory):
        """A symlink pointing outside the root fails the containment check."""
        outside = tmp_path_factory.mktemp("elsewhere") / "target.py"
        outside.write_text("x = 1\n")
        link = project / "app" / "link.py"
        try:
            os.symlink(outside, link)
        except (OSError, NotImplementedError):
            pytest.skip("symlinks not supported")
        ok, reason = mutator.validate_path("app/link.py")
        assert ok is False
        assert "outside" in reason

    def test_empty_path_rejected(self, mutator):
        """Empty paths carry the 'empty' reason."""
        with pytest.raises(PathValidationError) as exc:
            mutator.resolve("  ")
        assert exc.value.reason == "empty"


class TestReadWrite:
    """Reads and writes preserve content exactly."""

    def test_read_returns_exact_bytes(self, mutator, project):
        """CRLF and trailing whitespace survive a read."""
        (project / "app" / "crlf.py").write_bytes(b"x = 1\r\ny = 2  \r\n")
        result = mutator.read("app/crlf.py")
        assert result.success
        assert result.content == "x = 1\r\ny = 2  \r\n"
        assert result.path == "app/crlf.py"

    def test_read_missing_file(self, mutator):
        """Missing files are a failed result, not an exception."""
        result = mutator.read("app/missing.py")
        assert result.success is False
        assert "does not exist" in result.error

    def test_read_rejected_path(self, mutator):
        """Policy violations surface as failed reads."""
        result = mutator.read("vendor/pkg/lib.php")
        assert result.success is False
        assert "protected" in result.error

    def test_read_too_large(self, project):
        """Files above the size cap are not read."""
        small = FileMutator(project, max_file_bytes=4)
        result = small.read("app/service.py")
        assert result.success is False
        assert "too large" in result.error

    def test_write_creates_backup_and_replaces(self, mutator, project):
        """A valid write leaves a backup with the old content."""
        result = mutator.write("app/service.py", "def run():\n    return 2\n")
        assert result.success, result.error
        assert (project / "app" / "service.py").read_text() == "def run():\n    return 2\n"

        backup = Path(result.backup_path)
        assert backup.exists()
        assert backup.parent == project.resolve() / ".overlord" / "backups"
        assert backup.name.startswith("app_service.py_")
        assert backup.name.endswith(".bak")
        assert backup.read_text() == "def run():\n    return 1\n"

    def test_write_new_file_without_backup(self, mutator, project):
        """New files are created with their parents and no backup."""
        result = mutator.write("app/sub/new.py", "x = 1\n")
        assert result.success
        assert result.backup_path is None
        assert (project / "app" / "sub" / "new.py").read_text() == "x = 1\n"

    def test_write_preserves_exact_content(self, mutator, project):
        """No newline translation on write."""
        mutator.write("app/service.py", "a = 1\r\nb = 2")
        assert (project / "app" / "service.py").read_bytes() == b"a = 1\r\nb = 2"

    def test_syntax_error_leaves_file_untouched(self, mutator, project):
        """Invalid content never reaches the target."""
        result = mutator.write("app/service.py", "def run(:\n    return 2\n")
        assert result.success is False
        assert result.error.startswith("Syntax error")
        assert result.line == 1
        assert ">>>" in result.context
        assert (project / "app" / "service.py").read_text() == "def run():\n    return 1\n"
        # The backup taken beforehand is kept
        assert Path(result.backup_path).exists()

    def test_invalid_json_rejected(self, mutator, project):
        """JSON files are parsed before writing."""
        result = mutator.write("app/data.json", '{"a": }')
        assert result.success is False
        assert "Invalid JSON" in result.error
        assert (project / "app" / "data.json").read_text() == '{"a": 1}\n'

    def test_invalid_yaml_rejected(self, mutator):
        """YAML files are parsed before writing."""
        result = mutator.write("app/conf.yaml", "a: [1, 2\n")
        assert result.success is False
        assert "Invalid YAML" in result.error

    def test_write_rejected_path(self, mutator, project):
        """Protected paths are refused without touching disk."""
        result = mutator.write("vendor/pkg/lib.php", "<?php echo 1;\n")
        assert result.success is False
        assert (project / "vendor" / "pkg" / "lib.php").read_text() == "<?php\n"

    def test_failed_replace_restores_backup(self, mutator, project):
        """An OSError during the write restores the original from backup."""
        with patch.object(FileMutator, "_atomic_write", side_effect=OSError("disk full")):
            result = mutator.write("app/service.py", "def run():\n    return 3\n")
        assert result.success is False
        assert "disk full" in result.error
        assert (project / "app" / "service.py").read_text() == "def run():\n    return 1\n"


class TestBackups:
    """Backups are additive and restorable."""

    def test_backups_never_overwrite(self, mutator, project):
        """Two backups of the same file in the same instant get distinct names."""
        target = project / "app" / "service.py"
        with patch("modules.remediation.mutator.datetime") as fake_datetime:
            fake_datetime.now.return_value.strftime.return_value = "20250101_000000_000000"
            first = mutator.create_backup(target)
            second = mutator.create_backup(target)
        assert first != second
        assert second.name.endswith("_1.bak")
        assert first.read_text() == second.read_text()

    def test_restore_backup(self, mutator, project):
        """restore_backup copies the backup over the target."""
        result = mutator.write("app/service.py", "def run():\n    return 9\n")
        ok, error = mutator.restore_backup(result.backup_path, "app/service.py")
        assert ok is True
        assert error is None
        assert (project / "app" / "service.py").read_text() == "def run():\n    return 1\n"

    def test_restore_missing_backup(self, mutator):
        """Missing backups are reported, not raised."""
        ok, error = mutator.restore_backup("/nonexistent/backup.bak", "app/service.py")
        assert ok is False
        assert "not found" in error


class TestApplyPatch:
    """Line-oriented patching."""

    def test_edits_applied_bottom_up(self, mutator, project):
        """Each edit replaces its own 1-indexed line."""
        (project / "app" / "lines.py").write_text("a = 1\nb = 2\nc = 3\n")
        result = mutator.apply_patch(
            "app/lines.py",
            [LineEdit(line=1, new_content="a = 10"), {"line": 3, "new_content": "c = 30"}],
        )
        assert result.success
        assert (project / "app" / "lines.py").read_text() == "a = 10\nb = 2\nc = 30\n"

    def test_out_of_range_edit_skipped(self, mutator, project):
        """Edits past the end of the file are ignored."""
        (project / "app" / "lines.py").write_text("a = 1\n")
        result = mutator.apply_patch("app/lines.py", [LineEdit(line=40, new_content="zzz")])
        assert result.success
        assert (project / "app" / "lines.py").read_text() == "a = 1\n"

    def test_patch_goes_through_syntax_check(self, mutator, project):
        """A patch producing invalid code is rejected."""
        result = mutator.apply_patch("app/service.py", [LineEdit(line=1, new_content="def run(:")])
        assert result.success is False
        assert (project / "app" / "service.py").read_text() == "def run():\n    return 1\n"


class TestPhpSyntax:
    """php -l integration (subprocess mocked)."""

    def test_php_lint_error_parsed(self, mutator):
        """Line numbers are parsed from php -l output."""
        proc = subprocess.CompletedProcess(
            args=[], returncode=255,
            stdout="PHP Parse error:  syntax error, unexpected '}' in /tmp/x/User.php on line 7\nErrors parsing /tmp/x/User.php\n",
            stderr="",
        )
        with patch("modules.remediation.mutator.subprocess.run", return_value=proc):
            result = mutator.check_syntax("app/User.php", "<?php\n" * 8)
        assert result.valid is False
        assert result.line == 7
        assert "syntax error" in result.error
        assert result.context is not None

    def test_php_lint_ok(self, mutator):
        """Exit code 0 means valid."""
        proc = subprocess.CompletedProcess(args=[], returncode=0, stdout="No syntax errors detected", stderr="")
        with patch("modules.remediation.mutator.subprocess.run", return_value=proc) as run:
            result = mutator.check_syntax("app/User.php", "<?php echo 1;\n")
        assert result.valid is True
        cmd = run.call_args[0][0]
        assert cmd[0] == "php" and cmd[1] == "-l"

    def test_missing_php_binary_skips(self, mutator):
        """Without a PHP binary the check is skipped, not failed."""
        with patch("modules.remediation.mutator.subprocess.run", side_effect=FileNotFoundError()):
            result = mutator.check_syntax("app/User.php", "<?php echo 1;\n")
        assert result.valid is True
        assert result.skipped is True

    def test_unknown_type_skipped(self, mutator):
        """File types without a checker pass through."""
        result = mutator.check_syntax("app/site.css", "body { color: red")
        assert result.valid is True
        assert result.skipped is True


def test_context_excerpt_marks_target_line():
    """The excerpt shows two lines either side with a marker."""
    content = "\n".join(f"line{i}" for i in range(1, 11))
    excerpt = context_excerpt(content, 5).splitlines()
    assert len(excerpt) == 5
    assert excerpt[2].startswith(">>>")
    assert "line5" in excerpt[2]
