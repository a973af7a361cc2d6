"""
Edit applier.

Writes proposed edits into the project and stages every changed file on
the working branch. Every edit is resolved in memory first (paths
checked, replacements located or repaired); the disk is only touched
once the whole batch is known to apply.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from lucidcoder.agents import AgentContext
from lucidcoder.agents.repair import ReplacementRepairAgent
from lucidcoder.automation.edits import Edit, ReplacementError, apply_replacements
from lucidcoder.errors import (
    AutomationFailure,
    ExternalDependencyError,
    InputValidationError,
    ReplacementUnresolvedError,
    ScopeViolationError,
)
from lucidcoder.formatting import normalize_repo_path, normalize_staged_path

# Marks a path the batch deletes.
_DELETED = object()


class ApplyResult(BaseModel):
    applied: int = 0
    skipped: int = 0
    paths: list[str] = Field(default_factory=list)


class EditApplier:
    def __init__(
        self,
        project_path: Path,
        workflow=None,
        repair_agent: ReplacementRepairAgent | None = None,
        protected_paths: list[str] | None = None,
    ):
        self.project_path = Path(project_path).resolve()
        self.workflow = workflow
        self.repair_agent = repair_agent
        self.protected_paths = [normalize_repo_path(p).rstrip("/") for p in protected_paths or [] if p]

    def apply_edits(
        self,
        edits: list[Edit],
        stage: str,
        prompt: str = "",
        branch_name: str | None = None,
    ) -> ApplyResult:
        for edit in edits:
            edit.path = self._checked_path(edit.path, stage)

        # path -> new content (or _DELETED), in first-touched order
        pending: dict[str, object] = {}
        for edit in edits:
            current = self._current_content(edit.path, pending)
            pending[edit.path] = self._resolve(edit, current, stage, prompt)

        result = ApplyResult()
        for path, content in pending.items():
            if not self._write(path, content):
                result.skipped += 1
                continue
            result.applied += 1
            result.paths.append(path)

        for path in result.paths:
            if self.workflow is not None:
                self.workflow.stage_file(path, source="ai", branch_name=branch_name)

        logger.info(f"[APPLY] {stage}: {result.applied} applied, {result.skipped} skipped")
        return result

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _checked_path(self, raw: str, stage: str) -> str:
        try:
            path = normalize_staged_path(raw)
        except InputValidationError as e:
            raise ScopeViolationError(str(raw), f"Edit path {raw} is outside the project.", stage=stage) from e

        for protected in self.protected_paths:
            if path == protected or path.startswith(protected + "/"):
                raise ScopeViolationError(path, f"Edits to {protected} are not allowed.", stage=stage)
        return path

    def _current_content(self, path: str, pending: dict[str, object]) -> str | None:
        if path in pending:
            content = pending[path]
            return None if content is _DELETED else content
        target = self.project_path / path
        return target.read_text() if target.is_file() else None

    def _resolve(self, edit: Edit, current: str | None, stage: str, prompt: str) -> object:
        if edit.type == "delete":
            return _DELETED
        if edit.type == "upsert":
            return edit.content or ""

        if current is None:
            raise ReplacementUnresolvedError(edit.path, f"File not found: {edit.path}", stage=stage)
        try:
            return apply_replacements(current, edit.replacements)
        except ReplacementError as e:
            repaired = self._repair(edit, current, e, stage, prompt)
            if repaired is None:
                raise ReplacementUnresolvedError(edit.path, str(e), stage=stage, search_snippet=e.search) from e
            return repaired

    def _write(self, path: str, content: object) -> bool:
        """Write one resolved change. Returns False when it is a no-op."""
        target = self.project_path / path
        if content is _DELETED:
            if not target.exists():
                return False
            target.unlink()
            logger.debug(f"[APPLY] Deleted {path}")
            return True

        if target.is_file() and target.read_text() == content:
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        logger.debug(f"[APPLY] Wrote {path}")
        return True

    def _repair(self, edit: Edit, original: str, error: ReplacementError, stage: str, prompt: str) -> str | None:
        if self.repair_agent is None:
            return None

        context = AgentContext(prompt=prompt, project_path=str(self.project_path), stage=stage)
        try:
            fix = self.repair_agent.repair(context, edit.path, original, edit, str(error))
            if fix is not None:
                try:
                    patched = apply_replacements(original, fix.replacements)
                    logger.info(f"[APPLY] Repaired replacement for {edit.path}")
                    return patched
                except ReplacementError as e:
                    logger.warning(f"[APPLY] Repaired replacement for {edit.path} still failed: {e}")

            rewrite = self.repair_agent.rewrite(context, edit.path, original, edit, str(error))
            if rewrite is not None and rewrite.content is not None:
                logger.info(f"[APPLY] Rewrote {edit.path} after failed replacement")
                return rewrite.content
        except (ExternalDependencyError, AutomationFailure) as e:
            logger.warning(f"[APPLY] Replacement repair failed for {edit.path}: {e}")
        return None
