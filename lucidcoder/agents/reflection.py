"""
Scope reflection agent.

Reads the goal before any edit is proposed and decides what must change,
what must be left alone, and whether tests are part of the job.
"""

from __future__ import annotations

from loguru import logger

from lucidcoder.agents import AgentContext, BaseAgent, render_file_context
from lucidcoder.automation.scope import ScopeReflection, parse_scope_reflection
from lucidcoder.router import RouterResponse


class ScopeReflectionAgent(BaseAgent):
    role = "reflection"

    system_prompt = """You review a coding goal before any code is written and decide its scope.

Respond with a single JSON object ONLY. No markdown, no commentary.

{
  "reasoning": "One or two sentences on what the goal actually asks for",
  "mustChange": ["paths or areas that must change"],
  "mustAvoid": ["paths or areas that must not be touched"],
  "mustHave": ["behaviors the result must have"],
  "testsNeeded": true
}

Rules:
- Keep each list short (at most 12 entries).
- Use repository paths in mustAvoid when you can name them.
- Set testsNeeded to false only for changes with no testable behavior (copy, styling, config tweaks).
"""

    def run(self, context: AgentContext, **kwargs) -> ScopeReflection:
        kwargs.setdefault("temperature", 0.0)
        kwargs.setdefault("max_tokens", 800)
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        sections = [f"Goal: {context.prompt}"]
        if context.project_info:
            sections.append(f"Project:\n{context.project_info}")
        files = render_file_context(context.file_context)
        if files:
            sections.append(files)
        sections.append("Produce the scope JSON.")
        return [self._system_msg(), self._user_msg("\n\n".join(sections))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> ScopeReflection:
        reflection = parse_scope_reflection(response.content)
        logger.info(
            f"[SCOPE] Reflection ready — tests_needed={reflection.tests_needed}, "
            f"avoid={len(reflection.must_avoid)}, change={len(reflection.must_change)}"
        )
        return reflection
