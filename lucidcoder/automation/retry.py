"""
Bounded attempts and retry context.

A stage runs once per entry of its attempt sequence. Each failed attempt
leaves a RetryContext that is handed to the next prompt.
"""

from __future__ import annotations

from typing import Iterator, Literal

from pydantic import BaseModel

from lucidcoder.errors import AutomationFailure, ReplacementUnresolvedError, ScopeViolationError

RetryKind = Literal["scope-violation", "empty-edits", "replacement", "parse-error", "generic"]

EMPTY_EDITS_MESSAGES = {
    "tests": (
        "Previous attempt returned zero edits. "
        "Provide at least one edit that adds or updates the required test files."
    ),
    "implementation": (
        "Previous attempt returned zero edits. "
        "Provide the exact modifications needed to complete the feature request."
    ),
}


class RetryContext(BaseModel):
    kind: RetryKind
    stage: str
    attempt: int
    message: str
    path: str | None = None
    scope_warning: str | None = None
    search_snippet: str | None = None


def iter_attempts(sequence: list[int]) -> Iterator[tuple[int, bool]]:
    """Yield (attempt, is_last) for each entry of an attempt sequence."""
    for index, attempt in enumerate(sequence):
        yield attempt, index == len(sequence) - 1


def build_replacement_retry_context(failure: ReplacementUnresolvedError, stage: str, attempt: int) -> RetryContext:
    message = (
        f"The replacement for {failure.path} could not be applied ({failure.message}). "
        "Copy the search text exactly from the current file contents, or upsert the whole file."
    )
    return RetryContext(
        kind="replacement",
        stage=stage,
        attempt=attempt,
        message=message,
        path=failure.path,
        search_snippet=failure.search_snippet[:400] or None,
    )


def retry_context_from_failure(failure: AutomationFailure, stage: str, attempt: int) -> RetryContext:
    if isinstance(failure, ScopeViolationError):
        return RetryContext(
            kind="scope-violation",
            stage=stage,
            attempt=attempt,
            message=failure.message,
            path=failure.path,
            scope_warning=failure.scope_warning,
        )
    if isinstance(failure, ReplacementUnresolvedError):
        return build_replacement_retry_context(failure, stage, attempt)
    if failure.kind == "empty-edits":
        message = EMPTY_EDITS_MESSAGES.get(stage, failure.message)
    else:
        message = failure.message
    return RetryContext(kind=failure.kind, stage=stage, attempt=attempt, message=message)


def merge_retry_context(previous: RetryContext | None, current: RetryContext) -> RetryContext:
    """
    Combine the last retry context with a new failure.

    An empty-edits or parse failure says nothing about where to edit, so it
    keeps the path and scope warning of the failure before it. Any other
    failure replaces the context outright.
    """
    if previous is None or current.kind not in ("empty-edits", "parse-error"):
        return current
    if not previous.path and not previous.scope_warning:
        return current
    return current.model_copy(
        update={
            "path": previous.path,
            "scope_warning": previous.scope_warning,
            "search_snippet": previous.search_snippet,
        }
    )


def format_retry_context(context: RetryContext | None) -> str:
    if context is None:
        return ""
    lines = [f"Previous attempt {context.attempt} of the {context.stage} stage failed:", context.message]
    if context.path:
        lines.append(f"Path: {context.path}")
    if context.scope_warning and context.scope_warning != context.message:
        lines.append(f"Scope warning: {context.scope_warning}")
    if context.search_snippet:
        lines.append(f"Search text that failed:\n{context.search_snippet}")
    return "\n".join(lines)
