"""
Lucid Coder Router — Model Adapter

Every agent role (reflection, editor, repair, planner) is mapped to a
LiteLLM model string in config. The router resolves the model for a role,
meters token and dollar spend against the per-goal limits, and turns any
provider failure into LLMError.

Only transient provider errors (rate limits, timeouts, connection drops,
5xx) are retried. Anything else fails on the first attempt.
"""

from __future__ import annotations

import time
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lucidcoder.config_loader import LimitsConfig, LucidCoderConfig
from lucidcoder.errors import LLMError

TRANSIENT_ERRORS = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)

# Reasoning models that only accept their default temperature.
FIXED_TEMPERATURE_PREFIXES = ("gpt-5", "o1", "o3", "o4")


class GoalUsage(BaseModel):
    """Spend for the goal currently being automated."""

    goal_id: int | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    calls: int = 0

    def exceeds(self, limits: LimitsConfig) -> bool:
        return self.total_tokens >= limits.max_tokens_per_goal or self.cost >= limits.max_dollars_per_goal


class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class BudgetExceededError(LLMError):
    pass


def completion_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None = None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
    if not model.lower().removeprefix("openai/").startswith(FIXED_TEMPERATURE_PREFIXES):
        kwargs["temperature"] = temperature
    if response_format:
        kwargs["response_format"] = response_format
    return kwargs


class Router:
    """
    Role-based model router.

    Call `start_goal(goal_id)` before automating a goal; spend is tracked
    per goal and a call made after the goal's limits are reached raises
    BudgetExceededError without contacting the provider.
    """

    def __init__(self, config: LucidCoderConfig):
        self.config = config
        self.usage = GoalUsage()
        litellm.suppress_debug_info = True

    def start_goal(self, goal_id: int | None) -> None:
        self.usage = GoalUsage(goal_id=goal_id)

    def resolve_model(self, role: str) -> str:
        model = self.config.routing.model_dump().get(role)
        if not model:
            raise LLMError(f"No model configured for role: {role}")
        return model

    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict | None = None,
    ) -> RouterResponse:
        if self.usage.exceeds(self.config.limits):
            raise BudgetExceededError(
                f"Goal budget exhausted ({self.usage.total_tokens} tokens, ${self.usage.cost:.2f})"
            )

        model = self.resolve_model(role)
        kwargs = completion_kwargs(model, messages, temperature, max_tokens, response_format)
        try:
            return self._call(role, kwargs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"[ROUTER] {role} gave up after retries: {cause}")
            raise LLMError(f"{role} request failed after retries: {cause}") from cause
        except Exception as e:
            # Provider SDKs raise their own exception trees
            logger.error(f"[ROUTER] {role} request rejected: {e}")
            raise LLMError(f"{role} request failed: {e}") from e

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
    )
    def _call(self, role: str, kwargs: dict[str, Any]) -> RouterResponse:
        start = time.monotonic()
        logger.debug(f"[ROUTER] {role} → {kwargs['model']} ({len(kwargs['messages'])} messages)")

        response = litellm.completion(**kwargs)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        tokens, cost = self._record(response)

        logger.debug(f"[ROUTER] {role} done in {elapsed_ms}ms: {tokens} tokens, ${cost:.4f}")
        return RouterResponse(
            content=response.choices[0].message.content or "",
            model=kwargs["model"],
            tokens_used=tokens,
            cost=cost,
            latency_ms=elapsed_ms,
        )

    def _record(self, response: Any) -> tuple[int, float]:
        usage = getattr(response, "usage", None)
        prompt = getattr(usage, "prompt_tokens", 0) or 0
        completion = getattr(usage, "completion_tokens", 0) or 0
        total = getattr(usage, "total_tokens", 0) or prompt + completion

        try:
            cost = litellm.completion_cost(completion_response=response) or 0.0
        except Exception as e:
            # Unknown models have no price table entry
            logger.debug(f"[ROUTER] No cost data: {e}")
            cost = 0.0

        self.usage.prompt_tokens += prompt
        self.usage.completion_tokens += completion
        self.usage.total_tokens += total
        self.usage.cost += cost
        self.usage.calls += 1
        return total, cost
