"""
Lucid Coder Goal Store

Goals are units of automation work. Each one moves through a workflow
phase (planning → testing → implementing → verifying → ready, or failed)
and a lifecycle state (draft → active → ready-to-merge → merged, or
cancelled). Both are changed only through validated transitions.

Goals may have children (a meta-goal decomposed into steps); deleting a
goal deletes its whole subtree.
"""

from __future__ import annotations

import threading
import uuid
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from lucidcoder.errors import InputValidationError, InvalidTransitionError, NotFoundError
from lucidcoder.event_bus import GOALS_UPDATED, EventBus
from lucidcoder.formatting import prompt_slug
from lucidcoder.state import utc_now

GoalPhase = Literal["planning", "testing", "implementing", "verifying", "ready", "failed"]
LifecycleState = Literal["draft", "active", "ready-to-merge", "merged", "cancelled"]

PHASE_ORDER: tuple[str, ...] = ("planning", "testing", "implementing", "verifying", "ready")
PHASES: tuple[str, ...] = PHASE_ORDER + ("failed",)

LIFECYCLE_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "merged", "cancelled"},
    "active": {"draft", "ready-to-merge", "merged", "cancelled"},
    "ready-to-merge": {"active", "merged", "cancelled"},
    "merged": set(),
    "cancelled": {"draft"},
}

ARCHIVED_STATES = ("ready-to-merge", "merged", "cancelled")


def build_goal_branch_name(prompt: str) -> str:
    """agent/<short slug>-<8 hex>, e.g. agent/navigation-bar-top-1a2b3c4d."""
    slug = prompt_slug(prompt, max_words=6)[:32].strip("-")
    return f"agent/{slug or 'goal'}-{uuid.uuid4().hex[:8]}"


def check_phase_transition(current: str, target: str) -> None:
    if target not in PHASES:
        raise InputValidationError(f"Unknown goal phase: {target}")
    if current == target:
        return
    if target == "failed":
        if current == "ready":
            raise InvalidTransitionError("A ready goal cannot be marked failed")
        return
    if current == "failed":
        if target != "planning":
            raise InvalidTransitionError(f"A failed goal can only restart at planning, not {target}")
        return
    if PHASE_ORDER.index(target) < PHASE_ORDER.index(current):
        raise InvalidTransitionError(f"Cannot move goal from {current} back to {target}")


def check_lifecycle_transition(current: str, target: str) -> None:
    if target not in LIFECYCLE_TRANSITIONS:
        raise InputValidationError(f"Unknown goal lifecycle state: {target}")
    if current == target:
        return
    if target not in LIFECYCLE_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move goal from {current} to {target}")


class Goal(BaseModel):
    id: int
    project_id: str
    prompt: str
    title: str | None = None
    branch_name: str
    phase: GoalPhase = "planning"
    lifecycle_state: LifecycleState = "draft"
    parent_goal_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class GoalSnapshot(BaseModel):
    next_id: int = 1
    goals: list[Goal] = Field(default_factory=list)


class GoalStore:
    """In-process goal registry, optionally persisted to a JSON file."""

    def __init__(self, bus: EventBus | None = None, state_file: Path | None = None):
        self.bus = bus
        self.state_file = state_file
        self._lock = threading.RLock()
        self._goals: dict[int, Goal] = {}
        self._next_id = 1
        if state_file is not None and state_file.exists():
            snapshot = GoalSnapshot.model_validate_json(state_file.read_text())
            self._goals = {g.id: g for g in snapshot.goals}
            self._next_id = max([snapshot.next_id, *[g.id + 1 for g in snapshot.goals]])

    # -----------------------------------------------------------------------
    # Create / read
    # -----------------------------------------------------------------------

    def create_goal(
        self,
        project_id: str,
        prompt: str,
        title: str | None = None,
        branch_name: str | None = None,
        parent_goal_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        lifecycle_state: str = "draft",
    ) -> Goal:
        if not project_id:
            raise InputValidationError("projectId is required")
        if not isinstance(prompt, str) or not prompt.strip():
            raise InputValidationError("prompt is required")
        if lifecycle_state not in LIFECYCLE_TRANSITIONS:
            raise InputValidationError(f"Unknown goal lifecycle state: {lifecycle_state}")

        with self._lock:
            if parent_goal_id is not None and parent_goal_id not in self._goals:
                raise NotFoundError(f"Parent goal {parent_goal_id} not found")

            goal = Goal(
                id=self._next_id,
                project_id=str(project_id),
                prompt=prompt.strip(),
                title=title.strip()[:200] if isinstance(title, str) else None,
                branch_name=branch_name or build_goal_branch_name(prompt),
                lifecycle_state=lifecycle_state,
                parent_goal_id=parent_goal_id,
                metadata=dict(metadata or {}),
            )
            self._next_id += 1
            self._goals[goal.id] = goal
            self._changed("goal.created", goal)
            logger.info(f"[GOAL] Created #{goal.id} on {goal.branch_name}")
            return goal.model_copy(deep=True)

    def create_meta_goal(
        self,
        project_id: str,
        prompt: str,
        child_prompts: list[str],
        title: str | None = None,
    ) -> tuple[Goal, list[Goal]]:
        """Create a parent goal and one child per prompt, all on the parent's branch."""
        parent = self.create_goal(project_id, prompt, title=title, metadata={"meta": True})
        children = [
            self.create_goal(project_id, child, branch_name=parent.branch_name, parent_goal_id=parent.id)
            for child in child_prompts
            if isinstance(child, str) and child.strip()
        ]
        return parent, children

    def get_goal(self, goal_id: int) -> Goal:
        with self._lock:
            return self._get(goal_id).model_copy(deep=True)

    def list_goals(self, project_id: str, include_archived: bool = True) -> list[Goal]:
        with self._lock:
            goals = [g for g in self._goals.values() if g.project_id == str(project_id)]
        if not include_archived:
            goals = [g for g in goals if g.lifecycle_state not in ARCHIVED_STATES and g.phase != "ready"]
        goals.sort(key=lambda g: (g.created_at, g.id), reverse=True)
        return [g.model_copy(deep=True) for g in goals]

    def children_of(self, goal_id: int) -> list[Goal]:
        with self._lock:
            return [g.model_copy(deep=True) for g in self._goals.values() if g.parent_goal_id == goal_id]

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    def advance_phase(self, goal_id: int, phase: str, metadata: dict[str, Any] | None = None) -> Goal:
        with self._lock:
            goal = self._get(goal_id)
            check_phase_transition(goal.phase, phase)
            goal.phase = phase
            if metadata:
                goal.metadata.update(metadata)
            goal.updated_at = utc_now()
            self._changed("goal.phase", goal)
            logger.debug(f"[GOAL] #{goal.id} phase → {phase}")
            return goal.model_copy(deep=True)

    def set_lifecycle_state(self, goal_id: int, state: str, metadata: dict[str, Any] | None = None) -> Goal:
        with self._lock:
            goal = self._get(goal_id)
            check_lifecycle_transition(goal.lifecycle_state, state)
            goal.lifecycle_state = state
            if metadata:
                goal.metadata.update(metadata)
            goal.updated_at = utc_now()
            self._changed("goal.lifecycle", goal)
            logger.debug(f"[GOAL] #{goal.id} lifecycle → {state}")
            return goal.model_copy(deep=True)

    def mark_branch_goals_merged(self, branch_name: str) -> list[int]:
        """Close out every open goal that lived on a merged branch."""
        updated = []
        with self._lock:
            for goal in self._goals.values():
                if goal.branch_name != branch_name:
                    continue
                if "merged" not in LIFECYCLE_TRANSITIONS[goal.lifecycle_state]:
                    continue
                goal.lifecycle_state = "merged"
                goal.updated_at = utc_now()
                updated.append(goal.id)
            if updated:
                self._changed("goal.merged", None, {"goal_ids": updated, "branch": branch_name})
        return updated

    # -----------------------------------------------------------------------
    # Delete
    # -----------------------------------------------------------------------

    def delete_goal(self, goal_id: int, include_children: bool = True) -> list[int]:
        """Delete a goal (and by default its descendants). Returns deleted ids."""
        with self._lock:
            self._get(goal_id)
            to_delete = [goal_id]
            if include_children:
                queue = [goal_id]
                while queue:
                    parent = queue.pop(0)
                    for child in self._goals.values():
                        if child.parent_goal_id == parent and child.id not in to_delete:
                            to_delete.append(child.id)
                            queue.append(child.id)
            else:
                for child in self._goals.values():
                    if child.parent_goal_id == goal_id:
                        child.parent_goal_id = None

            for gid in to_delete:
                del self._goals[gid]
            self._changed("goal.deleted", None, {"goal_ids": to_delete})
            logger.info(f"[GOAL] Deleted {len(to_delete)} goal(s) starting at #{goal_id}")
            return to_delete

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _get(self, goal_id: int) -> Goal:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        return goal

    def _changed(self, event: str, goal: Goal | None, extra: dict[str, Any] | None = None) -> None:
        if self.state_file is not None:
            snapshot = GoalSnapshot(next_id=self._next_id, goals=list(self._goals.values()))
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state_file.write_text(snapshot.model_dump_json(indent=2))
        if self.bus is not None:
            payload: dict[str, Any] = {"event": event, **(extra or {})}
            if goal is not None:
                payload.update({"goal_id": goal.id, "phase": goal.phase, "lifecycle_state": goal.lifecycle_state})
            self.bus.emit(GOALS_UPDATED, "goals", payload)
