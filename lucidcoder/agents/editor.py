"""
Edit proposal agent.

Given the goal, the stage (tests or implementation), scope guidance and
the last failure, proposes concrete file edits as JSON.
"""

from __future__ import annotations

from loguru import logger

from lucidcoder.agents import AgentContext, BaseAgent, render_file_context
from lucidcoder.automation.edits import Edit, parse_edits
from lucidcoder.automation.retry import format_retry_context
from lucidcoder.automation.scope import format_scope_reflection
from lucidcoder.router import RouterResponse

STAGE_INSTRUCTIONS = {
    "tests": (
        "Stage: tests. Write or update the automated tests that prove the goal. "
        "Only touch test files in this stage."
    ),
    "implementation": (
        "Stage: implementation. Make the source changes that complete the goal "
        "and satisfy any tests written for it."
    ),
}


class EditProposalAgent(BaseAgent):
    role = "editor"

    system_prompt = """You are the edit engine inside Lucid Coder.

You receive a goal and the relevant files, and you answer with file edits.

Respond with a JSON object ONLY:
{
  "edits": [
    {"type": "modify", "path": "src/app.py",
     "replacements": [{"search": "exact existing text", "replace": "new text"}]},
    {"type": "upsert", "path": "src/new_module.py", "content": "full file contents"},
    {"type": "delete", "path": "src/obsolete.py"}
  ]
}

Rules:
- Paths are relative to the repository root.
- A search string must appear exactly once in the current file. Copy it verbatim.
- Prefer small modify edits; use upsert for new files or full rewrites.
- Never touch files outside the goal's scope.
"""

    def run(self, context: AgentContext, **kwargs) -> list[Edit]:
        kwargs.setdefault("max_tokens", 8192)
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        sections = [
            f"Goal: {context.prompt}",
            STAGE_INSTRUCTIONS.get(context.stage, f"Stage: {context.stage}."),
        ]
        if context.project_info:
            sections.append(f"Project:\n{context.project_info}")
        scope = format_scope_reflection(context.reflection)
        if scope:
            sections.append(scope)
        retry = format_retry_context(context.retry_context)
        if retry:
            sections.append(retry)
        files = render_file_context(context.file_context)
        if files:
            sections.append(files)
        if context.attempt > 1:
            sections.append("Return strictly valid JSON. Do not wrap it in markdown.")
        sections.append("Produce the edits JSON.")
        return [self._system_msg(), self._user_msg("\n\n".join(sections))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> list[Edit]:
        edits = parse_edits(response.content, stage=context.stage)
        logger.info(f"[EDITS] {context.stage} attempt {context.attempt}: {len(edits)} edit(s) proposed")
        return edits
