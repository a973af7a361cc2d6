"""
Lucid Coder Agents

Four model-backed roles drive goal automation:
  - reflection: bounds a goal's scope before any edit is proposed
  - editor:     proposes file edits for the tests and implementation stages
  - repair:     fixes replacements whose search text missed
  - planner:    splits a large goal into child goals

Agents hold no state between runs. Everything an agent needs arrives in
its AgentContext; everything it produces is returned from run().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from lucidcoder.automation.retry import RetryContext
from lucidcoder.automation.scope import ScopeReflection
from lucidcoder.router import Router, RouterResponse


class AgentContext(BaseModel):
    """What one agent call knows about the goal in progress."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str
    project_path: str
    goal_id: int | None = None
    stage: str = ""
    attempt: int = 1
    project_info: str = ""
    file_context: dict[str, str] = Field(default_factory=dict)  # repo path → contents
    reflection: ScopeReflection | None = None
    retry_context: RetryContext | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Subclasses set `role` (the routing key in config) and `system_prompt`,
    and implement build_messages() and parse_response().
    """

    role: str = "unknown"
    system_prompt: str = ""

    def __init__(self, router: Router):
        self.router = router

    def run(self, context: AgentContext, **kwargs) -> Any:
        messages = self.build_messages(context)
        response = self.router.complete(role=self.role, messages=messages, **kwargs)
        logger.debug(
            f"[AGENT] {self.role} answered via {response.model} "
            f"({response.tokens_used} tokens, {response.latency_ms}ms)"
        )
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> Any:
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


def render_file_context(file_context: dict[str, str]) -> str:
    if not file_context:
        return ""
    parts = ["Relevant file contents:"]
    for path, content in file_context.items():
        parts.append(f"\n--- {path} ---\n{content}")
    return "\n".join(parts)
