"""
Goal automation pipeline.

process_goal turns one goal prompt into applied, staged edits:

    instruction-only check  → short-circuit without calling the model
    scope reflection        → optional, failures default to "tests needed"
    tests stage             → only when tests are needed
    implementation stage

Each stage loops over its own attempt sequence. Recoverable failures
(empty edits, scope violation, unresolved replacement, unparseable
response) become a retry context for the next attempt; on the last
attempt they fail the goal.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel

from lucidcoder.agents import AgentContext
from lucidcoder.automation.retry import RetryContext, iter_attempts, merge_retry_context, retry_context_from_failure
from lucidcoder.automation.scope import (
    ScopeReflection,
    classify_instruction_only,
    tests_forced,
    validate_edits_against_reflection,
)
from lucidcoder.config_loader import LucidCoderConfig
from lucidcoder.errors import AutomationFailure, EmptyEditsError, ExternalDependencyError, LucidCoderError
from lucidcoder.event_bus import GOAL_MESSAGE, EventBus
from lucidcoder.formatting import normalize_repo_path
from lucidcoder.goals import Goal, GoalStore

INSTRUCTION_ONLY_PHASES = ("testing", "implementing", "verifying", "ready")
INSTRUCTION_ONLY_NOTES = {
    "branch-only": "Branch setup handled automatically",
    "stage-only": "Files are already staged after edits",
}
NO_EDITS_APPLIED = "No repo edits were applied for this goal."
ALREADY_READY = "Goal is already complete."


class GoalResult(BaseModel):
    success: bool
    error: str | None = None
    skipped_reason: str | None = None
    message: str | None = None
    applied: int = 0

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def collect_file_context(project_path: Path, paths: list[str], limit: int) -> dict[str, str]:
    """Read the named files that exist, stopping once the character budget is spent."""
    context: dict[str, str] = {}
    budget = limit
    for raw in paths:
        path = normalize_repo_path(raw)
        if not path or path in context or budget <= 0:
            continue
        target = project_path / path
        if not target.is_file():
            continue
        try:
            content = target.read_text()
        except (OSError, UnicodeDecodeError):
            continue
        context[path] = content[:budget]
        budget -= len(context[path])
    return context


class GoalProcessor:
    """
    Runs goals through the automation stages.

    Collaborators are injected: the edit agent proposes edits, the applier
    writes and stages them, the reflection agent (optional) bounds scope.
    """

    def __init__(
        self,
        config: LucidCoderConfig,
        goals: GoalStore,
        edits_agent,
        applier,
        reflection_agent=None,
        project_path: Path | None = None,
        project_info: str = "",
        bus: EventBus | None = None,
    ):
        self.config = config
        self.goals = goals
        self.edits_agent = edits_agent
        self.applier = applier
        self.reflection_agent = reflection_agent
        self.project_path = Path(project_path or Path.cwd()).resolve()
        self.project_info = project_info
        self.bus = bus

    def process_goal(self, goal_id: int, tests_needed_default: bool = True) -> GoalResult:
        goal = self.goals.get_goal(goal_id)
        if goal.phase == "ready":
            logger.warning(f"[GOAL] #{goal.id} is already ready, not processing again")
            return GoalResult(success=False, error=ALREADY_READY)
        if goal.phase == "failed":
            goal = self.goals.advance_phase(goal.id, "planning")

        kind = classify_instruction_only(goal.prompt)
        if kind is not None:
            try:
                for phase in INSTRUCTION_ONLY_PHASES:
                    self.goals.advance_phase(goal.id, phase)
            except LucidCoderError as e:
                logger.error(f"[GOAL] #{goal.id} could not be completed as {kind}: {e}")
                self._fail(goal, str(e))
                return GoalResult(success=False, error=str(e))
            message = f"Completed ({INSTRUCTION_ONLY_NOTES[kind]}): {goal.prompt}"
            self._announce(goal, message)
            logger.info(f"[GOAL] #{goal.id} skipped as {kind}")
            return GoalResult(success=True, skipped_reason=kind, message=message)

        try:
            reflection = self._reflect(goal, tests_needed_default)
            automation = self.config.automation
            applied = 0

            self.goals.advance_phase(goal.id, "testing")
            if reflection.tests_needed and automation.tests_attempts:
                applied += self._run_stage(goal, "tests", automation.tests_attempts, reflection)

            self.goals.advance_phase(goal.id, "implementing")
            if automation.implementation_attempts:
                applied += self._run_stage(goal, "implementation", automation.implementation_attempts, reflection)

            if applied == 0:
                raise AutomationFailure(NO_EDITS_APPLIED)

            self.goals.advance_phase(goal.id, "verifying")
            self.goals.advance_phase(goal.id, "ready")
        except AutomationFailure as e:
            logger.error(f"[GOAL] #{goal.id} failed: {e}")
            self._fail(goal, str(e))
            return GoalResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"[GOAL] #{goal.id} crashed: {e}")
            self._fail(goal, str(e))
            return GoalResult(success=False, error=str(e))

        message = f"Completed: {goal.prompt}"
        self._announce(goal, message)
        return GoalResult(success=True, message=message, applied=applied)

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    def _reflect(self, goal: Goal, tests_needed_default: bool) -> ScopeReflection:
        reflection = ScopeReflection(tests_needed=tests_needed_default)
        if self.config.automation.scope_reflection and self.reflection_agent is not None:
            try:
                reflection = self.reflection_agent.run(self._context(goal, "scope-reflection", 1))
            except ExternalDependencyError as e:
                logger.warning(f"[SCOPE] Reflection unavailable, continuing with defaults: {e}")

        if not reflection.tests_needed and tests_forced(goal.prompt, goal.metadata):
            reflection = reflection.model_copy(update={"tests_needed": True})
        return reflection

    def _run_stage(self, goal: Goal, stage: str, sequence: list[int], reflection: ScopeReflection) -> int:
        """Run one stage's attempts. Returns the number of applied edits."""
        retry: RetryContext | None = None

        for attempt, is_last in iter_attempts(sequence):
            context = self._context(goal, stage, attempt, reflection, retry)
            try:
                edits = self.edits_agent.run(context)
                if not edits:
                    raise EmptyEditsError(stage)
                validate_edits_against_reflection(edits, reflection, stage=stage)
                result = self.applier.apply_edits(edits, stage=stage, prompt=goal.prompt, branch_name=goal.branch_name)
            except AutomationFailure as failure:
                if is_last:
                    raise
                retry = merge_retry_context(retry, retry_context_from_failure(failure, stage, attempt))
                logger.warning(f"[GOAL] #{goal.id} {stage} attempt {attempt} failed ({failure.kind}): {failure}")
                continue

            logger.info(f"[GOAL] #{goal.id} {stage} attempt {attempt} applied {result.applied} edit(s)")
            return result.applied
        return 0

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _context(
        self,
        goal: Goal,
        stage: str,
        attempt: int,
        reflection: ScopeReflection | None = None,
        retry: RetryContext | None = None,
    ) -> AgentContext:
        paths = list(reflection.must_change) if reflection else []
        if retry is not None and retry.path:
            paths.insert(0, retry.path)
        return AgentContext(
            prompt=goal.prompt,
            project_path=str(self.project_path),
            goal_id=goal.id,
            stage=stage,
            attempt=attempt,
            project_info=self.project_info,
            file_context=collect_file_context(
                self.project_path, paths, self.config.automation.max_file_context_chars
            ),
            reflection=reflection,
            retry_context=retry,
        )

    def _fail(self, goal: Goal, error: str) -> None:
        try:
            self.goals.advance_phase(goal.id, "failed", metadata={"error": error})
        except LucidCoderError as e:
            logger.warning(f"[GOAL] Could not mark #{goal.id} failed: {e}")

    def _announce(self, goal: Goal, message: str) -> None:
        if self.bus is not None:
            self.bus.emit(GOAL_MESSAGE, "pipeline", {"goal_id": goal.id, "message": message})


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def plan_goal(
    goals: GoalStore,
    planner,
    project_id: str,
    prompt: str,
    project_path: Path | None = None,
    project_info: str = "",
) -> tuple[Goal, list[Goal]]:
    """
    Create a meta goal whose children come from the planner.

    A planner that fails (model unavailable, budget spent) or returns an
    unusable plan leaves a single child goal carrying the original prompt.
    """
    child_prompts = [prompt]
    if planner is not None:
        context = AgentContext(
            prompt=prompt,
            project_path=str(project_path or Path.cwd()),
            project_info=project_info,
        )
        try:
            plan = planner.run(context)
            child_prompts = [g.prompt for g in plan.goals] or [prompt]
        except LucidCoderError as e:
            logger.warning(f"[PLANNER] Planning unavailable, using a single step: {e}")

    parent, children = goals.create_meta_goal(project_id, prompt, child_prompts)
    logger.info(f"[PLANNER] Goal #{parent.id} split into {len(children)} step(s)")
    return parent, children
