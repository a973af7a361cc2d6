"""
Scope reflection: what a goal must change, must avoid, and whether it
needs tests. Edits are checked against it before they are applied.
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from loguru import logger
from pydantic import Field, ValidationError, field_validator

from lucidcoder.automation.edits import Edit, find_json_value, strip_code_fences
from lucidcoder.errors import ScopeViolationError
from lucidcoder.formatting import normalize_repo_path
from lucidcoder.state import CamelModel

MAX_REFLECTION_ITEMS = 12

TESTS_UNNECESSARY_WARNING = "Scope reasoning determined new or updated tests are unnecessary for this goal."

_TEST_FAILURE_RE = re.compile(r"fix failing test|failing test|test failure", re.IGNORECASE)
_BRANCH_ONLY_RE = re.compile(
    r"\b(create (a |new |a new )?branch|switch (to )?(the )?branch)\b", re.IGNORECASE
)
_STAGE_ONLY_RE = re.compile(r"^\s*stage\s|\bstage the updated\b", re.IGNORECASE)

_TEST_PATH_PATTERNS = (
    re.compile(r"(^|/)__tests__/"),
    re.compile(r"\.(test|spec)\.[jt]sx?$"),
    re.compile(r"(^|/)tests?/"),
    re.compile(r"(^|/)test_[^/]*\.py$"),
    re.compile(r"_test\.py$"),
)

_KEYWORD_PREFIXES = {
    "backend": ["backend/"],
    "frontend": ["frontend/"],
    "test": ["frontend/src/__tests__/", "backend/tests/", "tests/"],
    "tests": ["frontend/src/__tests__/", "backend/tests/", "tests/"],
}


def normalize_reflection_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    items = [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    return items[:MAX_REFLECTION_ITEMS]


class ScopeReflection(CamelModel):
    reasoning: str = ""
    must_change: list[str] = Field(default_factory=list)
    must_avoid: list[str] = Field(default_factory=list)
    must_have: list[str] = Field(default_factory=list)
    tests_needed: bool = True

    @field_validator("must_change", "must_avoid", "must_have", mode="before")
    @classmethod
    def _cap(cls, value: Any) -> list[str]:
        return normalize_reflection_list(value)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("tests_needed", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else True


def parse_scope_reflection(text: str) -> ScopeReflection:
    """Parse a reflection response; anything unusable yields the default."""
    content = strip_code_fences(text)
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        data = find_json_value(content)
    if not isinstance(data, dict):
        logger.warning("[SCOPE] Reflection response was not a JSON object, using defaults")
        return ScopeReflection()
    try:
        return ScopeReflection.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[SCOPE] Invalid reflection payload, using defaults: {e}")
        return ScopeReflection()


def tests_forced(prompt: str, metadata: dict[str, Any] | None = None) -> bool:
    if metadata and metadata.get("test_failure_context"):
        return True
    return bool(_TEST_FAILURE_RE.search(prompt or ""))


def classify_instruction_only(prompt: str) -> Literal["branch-only", "stage-only"] | None:
    """Detect prompts that ask for branch setup or staging and nothing else."""
    text = (prompt or "").strip()
    if not text:
        return None
    if _BRANCH_ONLY_RE.search(text):
        return "branch-only"
    if _STAGE_ONLY_RE.search(text):
        return "stage-only"
    return None


def is_test_file_path(path: str) -> bool:
    normalized = normalize_repo_path(path).lower()
    return any(p.search(normalized) for p in _TEST_PATH_PATTERNS)


def derive_path_prefixes(entries: list[str]) -> list[str]:
    """
    Turn must-avoid entries into path prefixes. Path-like entries are used
    as-is; a few plain keywords map to conventional directories.
    """
    prefixes: list[str] = []
    for entry in entries:
        text = entry.strip()
        if not text:
            continue
        if not re.search(r"\s", text) and ("/" in text or "." in text):
            candidates = [normalize_repo_path(text)]
        else:
            candidates = []
            for word in re.findall(r"[a-z]+", text.lower()):
                candidates.extend(_KEYWORD_PREFIXES.get(word, []))
        for prefix in candidates:
            if prefix and prefix not in prefixes:
                prefixes.append(prefix)
    return prefixes


def validate_edits_against_reflection(
    edits: list[Edit],
    reflection: ScopeReflection,
    stage: str | None = None,
) -> None:
    """Raise ScopeViolationError for the first edit outside the reflected scope."""
    avoid = derive_path_prefixes(reflection.must_avoid)
    for edit in edits:
        path = normalize_repo_path(edit.path)
        if not reflection.tests_needed and is_test_file_path(path):
            raise ScopeViolationError(path, TESTS_UNNECESSARY_WARNING, stage=stage)
        for prefix in avoid:
            if path == prefix.rstrip("/") or path.startswith(prefix):
                message = f"Edit to {path} conflicts with scope guidance to avoid {prefix}."
                raise ScopeViolationError(path, message, stage=stage)


def format_scope_reflection(reflection: ScopeReflection | None) -> str:
    if reflection is None:
        return ""
    lines = ["Scope guidance:"]
    if reflection.reasoning:
        lines.append(f"Reasoning: {reflection.reasoning}")
    for label, items in (
        ("Must change", reflection.must_change),
        ("Must avoid", reflection.must_avoid),
        ("Must have", reflection.must_have),
    ):
        if items:
            lines.append(f"{label}:")
            lines.extend(f"- {item}" for item in items)
    lines.append(f"Tests needed: {'yes' if reflection.tests_needed else 'no'}")
    return "\n".join(lines)
