"""
Text helpers shared by the branch workflow and goal automation:
path normalization, branch-name slugs, commit messages, diff trimming
and git log parsing.
"""

from __future__ import annotations

import re
from typing import Any

from lucidcoder.errors import InputValidationError

MAX_FILE_DIFF_CHARS = 2000
MAX_AGGREGATE_DIFF_CHARS = 12000
DEFAULT_COMMIT_LIMIT = 25
MAX_COMMIT_LIMIT = 200
DIFF_TRUNCATED_SUFFIX = "\n…diff truncated…"

STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "could",
    "do", "does", "for", "from", "have", "has", "had", "how", "i", "if",
    "in", "into", "is", "it", "it's", "its", "let", "let's", "make",
    "of", "on", "or", "our", "please", "should", "so", "some", "that",
    "the", "their", "then", "there", "this", "to", "up", "we",
    "with", "would", "you", "your",
})

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def normalize_repo_path(value: Any) -> str:
    """Forward slashes, no leading './' or '/'. Empty string for non-strings."""
    if not isinstance(value, str):
        return ""
    path = value.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def normalize_staged_path(value: Any) -> str:
    """Normalize a project-relative path and reject anything that escapes the project."""
    if not isinstance(value, str) or not value.strip():
        raise InputValidationError("filePath is required")

    raw = value.strip().replace("\\", "/")
    if _DRIVE_RE.match(raw) or "\x00" in raw:
        raise InputValidationError(f"Invalid file path: {value}")

    path = normalize_repo_path(raw)
    segments = [s for s in path.split("/") if s not in ("", ".")]
    if not segments or ".." in segments:
        raise InputValidationError(f"Invalid file path: {value}")
    return "/".join(segments)


# ---------------------------------------------------------------------------
# Branch names
# ---------------------------------------------------------------------------

def slugify_branch_name(value: str, max_length: int = 60) -> str:
    slug = re.sub(r"[^a-z0-9/._-]+", "-", value.strip().lower())
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-./")[:max_length].strip("-./")


def prompt_slug(prompt: str | None, max_words: int = 4) -> str:
    """
    Reduce a free-text prompt to a short kebab-case label.

    "let's have a navigation bar at the top" -> "navigation-bar-top"
    """
    raw = (prompt or "").lower()
    words = [
        w for w in re.split(r"[\s-]+", re.sub(r"[^a-z0-9'\s-]+", " ", raw))
        if w and w not in STOPWORDS and not w.isdigit()
    ]
    words = [w.replace("'", "") for w in words if len(w.replace("'", "")) > 1]
    return "-".join(words[:max_words])


# ---------------------------------------------------------------------------
# Commits
# ---------------------------------------------------------------------------

def summarize_staged_changes(paths: list[str]) -> str:
    if not paths:
        return "staged changes"
    if len(paths) == 1:
        return paths[0]
    return f"{len(paths)} files"


def trim_diff(text: str, limit: int = MAX_FILE_DIFF_CHARS) -> str:
    if not text or len(text) <= limit:
        return text or ""
    return text[:limit] + DIFF_TRUNCATED_SUFFIX


def interpolate_commit_template(template: str, summary: str, branch: str, file_count: int) -> str:
    tokens = {
        "{summary}": summary,
        "{branch}": branch,
        "{branchname}": branch,
        "{filecount}": str(file_count),
    }
    message = template
    for token, value in tokens.items():
        message = re.sub(re.escape(token), lambda _m, v=value: v, message, flags=re.IGNORECASE)
    return message.strip()


def build_commit_message(
    branch: str,
    paths: list[str],
    message: str | None = None,
    template: str | None = None,
) -> str:
    """Explicit message, else the template (when given), else a conventional chore line."""
    if message and message.strip():
        return message.strip()
    summary = summarize_staged_changes(paths)
    if template:
        rendered = interpolate_commit_template(template, summary, branch, len(paths))
        if rendered:
            return rendered
    return f"chore({branch}): update {summary}"


def normalize_commit_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_COMMIT_LIMIT
    if limit <= 0:
        return DEFAULT_COMMIT_LIMIT
    return min(limit, MAX_COMMIT_LIMIT)


def parse_git_log(raw: str) -> list[dict[str, str]]:
    """Parse `git log` output written with \\x1f field and \\x1e record separators."""
    commits = []
    for record in raw.split("\x1e"):
        record = record.strip("\n")
        if not record.strip():
            continue
        fields = record.split("\x1f")
        if len(fields) < 5:
            continue
        sha, short_sha, message, author, created_at = (f.strip() for f in fields[:5])
        commits.append({
            "sha": sha,
            "short_sha": short_sha,
            "message": message,
            "author": author,
            "created_at": created_at,
        })
    return commits
