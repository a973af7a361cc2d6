"""
Replacement repair agent.

Called when a proposed search string cannot be found in its file. First
asks for corrected replacements against the real contents; failing that,
asks for the whole file rewritten.
"""

from __future__ import annotations

from typing import Literal

from loguru import logger

from lucidcoder.agents import AgentContext, BaseAgent
from lucidcoder.automation.edits import Edit, parse_edits
from lucidcoder.router import RouterResponse

RepairMode = Literal["repair", "rewrite"]


class ReplacementRepairAgent(BaseAgent):
    role = "repair"

    system_prompt = """You fix file edits that failed to apply.

You are given a file's current contents, the change that was intended, and
the search text that could not be found.

Respond with a JSON object ONLY:
{"edits": [ ...one edit for the given path... ]}

In repair mode return a "modify" edit whose search strings are copied exactly
from the current contents. In rewrite mode return an "upsert" edit with the
complete new file contents.
"""

    def repair(self, context: AgentContext, path: str, contents: str, intended: Edit, error: str) -> Edit | None:
        return self._ask(context, "repair", path, contents, intended, error)

    def rewrite(self, context: AgentContext, path: str, contents: str, intended: Edit, error: str) -> Edit | None:
        return self._ask(context, "rewrite", path, contents, intended, error)

    def _ask(
        self,
        context: AgentContext,
        mode: RepairMode,
        path: str,
        contents: str,
        intended: Edit,
        error: str,
    ) -> Edit | None:
        ctx = context.model_copy(
            update={
                "file_context": {path: contents},
                "extra": {**context.extra, "mode": mode, "path": path, "intended": intended, "error": error},
            }
        )
        return self.run(ctx, temperature=0.0, max_tokens=8192)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        extra = context.extra
        path = extra["path"]
        intended: Edit = extra["intended"]
        user_content = f"""Mode: {extra['mode']}
Goal: {context.prompt}
Path: {path}
Failure: {extra['error']}

Intended change:
{intended.model_dump_json(indent=2)}

--- {path} (current) ---
{context.file_context.get(path, '')}

Produce the edits JSON."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> Edit | None:
        path = context.extra["path"]
        wanted = "modify" if context.extra["mode"] == "repair" else "upsert"
        for edit in parse_edits(response.content, stage=context.stage):
            if edit.path == path and edit.type == wanted:
                return edit
        logger.debug(f"[APPLY] Repair agent returned no usable {wanted} edit for {path}")
        return None
