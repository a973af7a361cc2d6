"""
Configuration loader for Lucid Coder.
Merges built-in defaults with per-project .lucidcoder/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator


DEFAULT_ATTEMPT_SEQUENCE = [1, 2]


def resolve_attempt_sequence(value: Any) -> list[int]:
    """
    Normalize an attempt sequence.

    A list keeps its positive ints (deduplicated, order preserved) and may end
    up empty, which means the stage is skipped. A single int n means [n].
    Anything else falls back to the default sequence.
    """
    if isinstance(value, bool):
        return list(DEFAULT_ATTEMPT_SEQUENCE)
    if isinstance(value, int):
        return [value] if value > 0 else list(DEFAULT_ATTEMPT_SEQUENCE)
    if isinstance(value, (list, tuple)):
        seen: list[int] = []
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int) or item <= 0:
                continue
            if item not in seen:
                seen.append(item)
        return seen
    return list(DEFAULT_ATTEMPT_SEQUENCE)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    reflection: str = "gemini/gemini-3-flash-preview"
    editor: str = "gemini/gemini-3.1-pro-preview"
    repair: str = "gemini/gemini-3-flash-preview"
    planner: str = "gemini/gemini-3.1-pro-preview"


class LimitsConfig(BaseModel):
    max_tokens_per_goal: int = 150_000
    max_dollars_per_goal: float = 5.0


class AutomationConfig(BaseModel):
    scope_reflection: bool = True
    tests_attempts: list[int] = Field(default_factory=lambda: list(DEFAULT_ATTEMPT_SEQUENCE))
    implementation_attempts: list[int] = Field(default_factory=lambda: list(DEFAULT_ATTEMPT_SEQUENCE))
    replacement_repair: bool = True
    max_file_context_chars: int = 12_000

    @field_validator("tests_attempts", "implementation_attempts", mode="before")
    @classmethod
    def _normalize_attempts(cls, value: Any) -> list[int]:
        return resolve_attempt_sequence(value)


class TestingConfig(BaseModel):
    mode: Literal["command", "simulate"] = "command"
    command: str = "python -m pytest"
    timeout_seconds: int = 600


class CommitsConfig(BaseModel):
    use_template: bool = False
    template: str = "{branch}: {summary}"


class CssOnlyConfig(BaseModel):
    extensions: list[str] = Field(default_factory=lambda: [".css"])


class BoundaryConfig(BaseModel):
    protected_paths: list[str] = Field(default_factory=list)


class WorkspaceConfig(BaseModel):
    state_dir: str = ".lucidcoder"


class LucidCoderConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    testing: TestingConfig = Field(default_factory=TestingConfig)
    commits: CommitsConfig = Field(default_factory=CommitsConfig)
    css_only: CssOnlyConfig = Field(default_factory=CssOnlyConfig)
    boundaries: BoundaryConfig = Field(default_factory=BoundaryConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(project_path: Path | None = None) -> LucidCoderConfig:
    """
    Load config by merging:
      1. Built-in defaults (lucidcoder/config.yaml)
      2. Project-level overrides (<project>/.lucidcoder/config.yaml)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if project_path:
        project_config = project_path / ".lucidcoder" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    return LucidCoderConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
