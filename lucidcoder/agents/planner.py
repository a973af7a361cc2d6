"""
Goal planner.

Breaks a large goal into a short ordered list of child goals, each small
enough for a single automation run. Never writes code.
"""

from __future__ import annotations

import json

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from lucidcoder.agents import AgentContext, BaseAgent
from lucidcoder.automation.edits import strip_code_fences
from lucidcoder.router import RouterResponse

MAX_CHILD_GOALS = 8


# ---------------------------------------------------------------------------
# Strict Output Schemas
# ---------------------------------------------------------------------------

class PlannedGoal(BaseModel):
    title: str = Field(min_length=1)
    prompt: str = Field(min_length=1)


class GoalPlan(BaseModel):
    goals: list[PlannedGoal] = Field(min_length=1)
    parse_error: bool = False


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class GoalPlannerAgent(BaseAgent):
    role = "planner"

    system_prompt = f"""You are the planning engine inside Lucid Coder.

Break the user's goal into small, independently verifiable steps.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.

{{"goals": [{{"title": "Short title", "prompt": "Self-contained instruction for this step"}}]}}

Rules:
- At most {MAX_CHILD_GOALS} steps, in the order they should run.
- Each prompt must make sense on its own, without reading the others.
- Do not add steps that only run tests, create branches or stage files.
"""

    def run(self, context: AgentContext, **kwargs) -> GoalPlan:
        kwargs["response_format"] = {"type": "json_object"}
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"Goal: {context.prompt}"
        if context.project_info:
            user_content += f"\n\nProject:\n{context.project_info}"
        user_content += "\n\nProduce the plan as JSON."
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> GoalPlan:
        content = strip_code_fences(response.content)
        try:
            plan = GoalPlan(**json.loads(content))
            plan.goals = plan.goals[:MAX_CHILD_GOALS]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"[PLANNER] Failed to parse/validate plan JSON: {e}")
            logger.debug(f"[PLANNER] Raw response: {content[:500]}")
            plan = fallback_plan(context.prompt)

        logger.info(f"[PLANNER] Plan ready — {len(plan.goals)} step(s)")
        return plan


def fallback_plan(prompt: str) -> GoalPlan:
    return GoalPlan(goals=[PlannedGoal(title=prompt.strip()[:80] or "Goal", prompt=prompt.strip())], parse_error=True)
