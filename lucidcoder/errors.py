"""
Lucid Coder error taxonomy.

Core operations raise these instead of returning ad hoc error payloads.
Each class carries a `status_code` hint so a caller boundary can map it
to a response without inspecting messages.
"""

from __future__ import annotations


class LucidCoderError(Exception):
    """Base exception for all Lucid Coder failures."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InputValidationError(LucidCoderError):
    """Bad input: empty path, unknown phase/state, missing required field."""

    status_code = 400


class NotFoundError(LucidCoderError):
    """A branch, goal or job does not exist."""

    status_code = 404


class InvalidTransitionError(LucidCoderError):
    """The requested state change is not legal from the current state."""

    status_code = 409


class ExternalDependencyError(LucidCoderError):
    """Git, a child process or the model provider failed."""

    status_code = 502


class WorkspaceError(ExternalDependencyError):
    """A git command failed."""


class JobError(ExternalDependencyError):
    """A job could not be spawned or waited on."""


class LLMError(ExternalDependencyError):
    """The model adapter could not produce a completion."""


class ConfirmationRequired(Exception):
    """
    Raised by destructive operations invoked without confirmation.

    Not a failure: the caller should ask the user and retry with
    confirm=True.
    """

    def __init__(self, action: str, target: str):
        self.action = action
        self.target = target
        super().__init__(f"Confirmation required to {action} {target}")


# ---------------------------------------------------------------------------
# Recoverable automation failures
# ---------------------------------------------------------------------------

class AutomationFailure(LucidCoderError):
    """A goal-automation attempt failed in a way the next attempt may fix."""

    status_code = 422
    kind = "generic"

    def __init__(self, message: str, stage: str | None = None):
        self.stage = stage
        super().__init__(message)


class ScopeViolationError(AutomationFailure):
    kind = "scope-violation"

    def __init__(
        self,
        path: str,
        message: str,
        scope_warning: str | None = None,
        stage: str | None = None,
    ):
        self.path = path
        self.scope_warning = scope_warning or message
        super().__init__(message, stage=stage)


class EmptyEditsError(AutomationFailure):
    kind = "empty-edits"

    def __init__(self, stage: str):
        super().__init__(f"LLM returned no edits for the {stage} stage.", stage=stage)


class ReplacementUnresolvedError(AutomationFailure):
    """A search/replace edit could not be located in its target file."""

    kind = "replacement"

    def __init__(
        self,
        path: str,
        message: str,
        stage: str | None = None,
        search_snippet: str = "",
    ):
        self.path = path
        self.search_snippet = search_snippet
        super().__init__(message, stage=stage)


class EditsParseError(AutomationFailure):
    kind = "parse-error"
