"""
Fix Generator for the Remediation Agent

Turns one static-analysis issue into a candidate full-file replacement:
- Builds a bounded context window around the issue line
- Constructs a deterministic prompt for the language-model collaborator
- Extracts the corrected file from the reply (fenced block first)
- Repairs "... rest of code" placeholders from the original file
- Validates structure / syntax and retries with the errors fed back
"""

from __future__ import annotations

import asyncio
import difflib
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .llm import LLMCollaborator
from .models import FailureStage, Issue


# =============================================================================
# PROMPT TEMPLATES
# =============================================================================


SYSTEM_PROMPT = """You are an expert code repair agent. You fix static-analysis findings with the smallest possible change.

Rules:
1. Return the COMPLETE corrected file in ONE fenced code block
2. Change only what is needed to resolve the reported issue
3. Preserve existing code style, formatting and comments
4. Never abbreviate with placeholders such as "... rest of code"
5. Do not put explanations inside the code block"""


ISSUE_PROMPT_TEMPLATE = """## Issue to Fix

**File**: {file_path}
**Line**: {line}
**Message**: {message}
{details}
## Code Around the Issue (lines {start_line}-{end_line})

```{language}
{context_code}
```

## Full File Content

```{language}
{file_content}
```

## Task

Fix ONLY the issue above. Return the complete corrected file in a single ```{language} code block and change nothing else."""


RETRY_PROMPT_TEMPLATE = """{original_prompt}

## Previous Attempt Rejected (attempt {attempt})

Your previous answer failed validation:
{errors}

Return the complete corrected file again in one ```{language} code block and make sure it passes these checks."""


# =============================================================================
# LANGUAGE HELPERS
# =============================================================================

LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    ".php": "php",
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".vue": "vue",
    ".css": "css",
    ".scss": "scss",
    ".json": "json",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
}

# Markers that make an unfenced reply unambiguously a whole source file
SOURCE_MARKERS: Dict[str, Tuple[str, ...]] = {
    "php": ("<?php",),
    "vue": ("<template",),
}

BRACE_LANGUAGES = frozenset({"php", "javascript", "typescript", "css", "scss", "json"})

RAW_FALLBACK_MIN_CHARS = 100

_THINKING_RE = re.compile(r"<(think|thinking)>.*?</\1>", re.IGNORECASE | re.DOTALL)
_FENCED_RE = re.compile(r"```[^\n`]*\n(.*?)```", re.DOTALL)
_UNTERMINATED_FENCE_RE = re.compile(r"```[^\n`]*\n(.*)$", re.DOTALL)
_LANGUAGE_TAG_LINE_RE = re.compile(r"^(php|python|javascript|typescript|js|ts|vue|json|yaml|css|scss|xml)\s*$", re.I)

PLACEHOLDER_PATTERNS = [
    re.compile(r"^\s*(//|#|/\*|\*)\s*\.{3}.*\b(rest|remaining|existing|other|previous|unchanged|same)\b", re.I),
    re.compile(r"^\s*(//|#)\s*\.{3}\s*$"),
    re.compile(r"^\s*/\*\s*\.{3}\s*\*/\s*$"),
    re.compile(r"^\s*\.{3}\s*(rest|remaining|existing)\b", re.I),
    re.compile(r"^\s*(//|#)\s*(rest of (the )?(code|file|class|method)|code unchanged|unchanged code)\b", re.I),
]


def detect_language(file_path: str) -> str:
    lowered = file_path.lower()
    if lowered.endswith(".blade.php"):
        return "blade"
    for ext, language in LANGUAGE_BY_EXTENSION.items():
        if lowered.endswith(ext):
            return language
    return "text"


def strip_thinking_blocks(text: str) -> str:
    return _THINKING_RE.sub("", text or "")


def is_placeholder_line(line: str) -> bool:
    return any(p.search(line) for p in PLACEHOLDER_PATTERNS)


def has_placeholder(code: str) -> bool:
    return any(is_placeholder_line(line) for line in code.split("\n"))


def normalize_content(content: str) -> str:
    """Comparison form: LF line endings, trailing newlines ignored."""
    return content.replace("\r\n", "\n").rstrip("\n")


# =============================================================================
# CONTEXT WINDOW
# =============================================================================


@dataclass
class ContextWindow:
    start_line: int
    end_line: int
    text: str


def build_context_window(content: str, line: Optional[int], margin: int = 10) -> ContextWindow:
    """Numbered lines ``line`` +/- ``margin``, clamped to the file, issue line marked."""
    lines = content.split("\n")
    total = len(lines)

    if line and line >= 1:
        target = min(line, total)
        start = max(1, target - margin)
        end = min(total, target + margin)
    else:
        target = None
        start = 1
        end = min(total, 2 * margin + 1)

    numbered = []
    for number in range(start, end + 1):
        marker = ">>>" if number == target else "   "
        numbered.append(f"{marker} {number:4d} | {lines[number - 1]}")
    return ContextWindow(start_line=start, end_line=end, text="\n".join(numbered))


# =============================================================================
# FIX GENERATOR
# =============================================================================


@dataclass
class FixResult:
    success: bool
    new_content: Optional[str] = None
    error: Optional[str] = None
    failure_stage: Optional[FailureStage] = None
    attempts: int = 0
    tokens_used: int = 0
    validation_errors: List[str] = field(default_factory=list)


SyntaxValidator = Callable[[str, str], Any]           # (file_path, content) -> SyntaxCheckResult
ContentValidator = Callable[[str, str], List[str]]    # (file_path, content) -> error messages


class FixGenerator:
    """
    Produces a validated full-file replacement for one issue.

    The syntax validator is usually ``FileMutator.check_syntax``; the content
    validator (optional) re-runs the analyzer on the candidate.
    """

    def __init__(
        self,
        collaborator: LLMCollaborator,
        max_retries: int = 3,
        syntax_validator: Optional[SyntaxValidator] = None,
        content_validator: Optional[ContentValidator] = None,
        chat_options: Optional[Dict[str, Any]] = None,
    ):
        self.collaborator = collaborator
        self.max_retries = max_retries
        self.syntax_validator = syntax_validator
        self.content_validator = content_validator
        self.chat_options = chat_options or {}

    async def generate(
        self,
        file_path: str,
        file_content: str,
        issue: Issue,
        context: ContextWindow,
        session_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> FixResult:
        attempts_allowed = self.max_retries if max_retries is None else max_retries
        language = detect_language(file_path)
        base_prompt = self.build_prompt(file_path, file_content, issue, context)
        prompt = base_prompt

        tokens_used = 0
        last: Optional[FixResult] = None

        for attempt in range(1, attempts_allowed + 1):
            reply = await self.collaborator.chat(
                prompt,
                history=None,
                system_prompt=SYSTEM_PROMPT,
                context={"session_id": session_id, "file_path": file_path, "line": issue.line},
                options=self.chat_options,
            )
            tokens_used += reply.tokens_used or 0

            if not reply.success:
                last = FixResult(
                    success=False,
                    error=reply.error or "AI service returned no error detail",
                    failure_stage=FailureStage.AI_SERVICE,
                    attempts=attempt,
                )
                logger.warning(f"Fix attempt {attempt}/{attempts_allowed} for {file_path}: AI error: {last.error}")
                continue

            code = self.extract_code(reply.message, file_path)
            if code is None:
                last = FixResult(
                    success=False,
                    error="Could not extract fixed code from AI response",
                    failure_stage=FailureStage.CODE_EXTRACTION,
                    attempts=attempt,
                )
                logger.warning(f"Fix attempt {attempt}/{attempts_allowed} for {file_path}: no code block in reply")
                prompt = self.build_retry_prompt(
                    base_prompt,
                    attempt,
                    ["No fenced code block containing the full file was found"],
                    language,
                )
                continue

            code = self.clean_code(code, file_content)
            if has_placeholder(code):
                repaired = repair_with_original(code, file_content)
                if repaired is not None:
                    logger.info(f"Repaired placeholder comments in fix for {file_path}")
                    code = repaired

            errors = await self.validate(file_path, code, file_content)
            if errors:
                last = FixResult(
                    success=False,
                    error="Validation failed: " + "; ".join(errors),
                    failure_stage=FailureStage.VALIDATION,
                    attempts=attempt,
                    validation_errors=errors,
                )
                logger.warning(f"Fix attempt {attempt}/{attempts_allowed} for {file_path}: {last.error}")
                prompt = self.build_retry_prompt(base_prompt, attempt, errors, language)
                continue

            return FixResult(success=True, new_content=code, attempts=attempt, tokens_used=tokens_used)

        if last is None:
            last = FixResult(
                success=False,
                error=f"No fix attempts were made (max_retries={attempts_allowed})",
                failure_stage=FailureStage.AI_SERVICE,
                attempts=0,
            )
        last.tokens_used = tokens_used
        return last

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    def build_prompt(self, file_path: str, file_content: str, issue: Issue, context: ContextWindow) -> str:
        details = ""
        if issue.identifier:
            details += f"**Rule**: {issue.identifier}\n"
        if issue.tip:
            details += f"**Tip**: {issue.tip}\n"

        return ISSUE_PROMPT_TEMPLATE.format(
            file_path=file_path,
            line=issue.line if issue.line is not None else "unknown",
            message=issue.message,
            details=details,
            start_line=context.start_line,
            end_line=context.end_line,
            language=detect_language(file_path),
            context_code=context.text,
            file_content=file_content,
        )

    def build_retry_prompt(self, original_prompt: str, attempt: int, errors: List[str], language: str) -> str:
        return RETRY_PROMPT_TEMPLATE.format(
            original_prompt=original_prompt,
            attempt=attempt,
            errors="\n".join(f"- {e}" for e in errors),
            language=language,
        )

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    @staticmethod
    def extract_code(reply: str, file_path: str) -> Optional[str]:
        """
        First fenced block, then an unterminated fence, then the raw reply if
        it is long enough and carries a source marker. Otherwise None.
        """
        text = strip_thinking_blocks(reply).strip()
        if not text:
            return None

        for pattern in (_FENCED_RE, _UNTERMINATED_FENCE_RE):
            match = pattern.search(text)
            if match and match.group(1).strip():
                return match.group(1)

        markers = SOURCE_MARKERS.get(detect_language(file_path), ())
        if len(text) > RAW_FALLBACK_MIN_CHARS and any(marker in text for marker in markers):
            return text
        return None

    @staticmethod
    def clean_code(code: str, original: str = "") -> str:
        lines = code.strip("\n").split("\n")
        if lines and _LANGUAGE_TAG_LINE_RE.match(lines[0].strip()) and len(lines) > 1:
            lines = lines[1:]
        cleaned = "\n".join(lines).strip("\n")
        if not original or original.endswith("\n"):
            cleaned += "\n"
        return cleaned

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate(self, file_path: str, code: str, original: str = "") -> List[str]:
        errors = validate_structure(code, file_path, original)
        if errors:
            return errors

        if self.syntax_validator is not None:
            check = await asyncio.to_thread(self.syntax_validator, file_path, code)
            if not check.valid:
                where = f" (line {check.line})" if check.line else ""
                return [f"{check.error}{where}"]

        if self.content_validator is not None:
            return await asyncio.to_thread(self.content_validator, file_path, code)
        return []


def validate_structure(code: str, file_path: str, original: str = "") -> List[str]:
    errors: List[str] = []
    if not code.strip():
        return ["Generated code is empty"]

    language = detect_language(file_path)

    if has_placeholder(code):
        errors.append("Code contains placeholder comments instead of the full file")

    if language == "php" and "<?php" not in code and "<?php" in original:
        errors.append("Missing <?php opening tag")

    if language in BRACE_LANGUAGES:
        for opening, closing in (("{", "}"), ("(", ")")):
            imbalance = code.count(opening) - code.count(closing)
            # Only flag imbalance the original file did not already have
            baseline = original.count(opening) - original.count(closing) if original else 0
            if imbalance != baseline:
                kind = "opening" if imbalance > baseline else "closing"
                errors.append(f"Unbalanced '{opening}{closing}': {abs(imbalance - baseline)} extra {kind}")

    return errors


def repair_with_original(candidate: str, original: str) -> Optional[str]:
    """
    Replace placeholder lines with the original lines they stand for.

    Returns None when a placeholder cannot be mapped back unambiguously.
    """
    cand_lines = candidate.split("\n")
    orig_lines = original.split("\n")
    matcher = difflib.SequenceMatcher(a=orig_lines, b=cand_lines, autojunk=False)

    repaired: List[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        block = cand_lines[j1:j2]
        if tag == "equal":
            repaired.extend(block)
            continue

        marks = [index for index, line in enumerate(block) if is_placeholder_line(line)]
        if not marks:
            repaired.extend(block)
            continue
        if len(marks) > 1:
            return None

        before = block[:marks[0]]
        after = block[marks[0] + 1:]
        start = i1 + len(before)
        end = i2 - len(after)
        repaired.extend(before)
        if start < end:
            repaired.extend(orig_lines[start:end])
        repaired.extend(after)

    result = "\n".join(repaired)
    if has_placeholder(result):
        return None
    return result
