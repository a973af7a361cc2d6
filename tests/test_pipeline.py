import pytest

from lucidcoder.agents.planner import GoalPlan, PlannedGoal
from lucidcoder.automation.apply import ApplyResult, EditApplier
from lucidcoder.automation.edits import Edit, Replacement
from lucidcoder.automation.pipeline import ALREADY_READY, NO_EDITS_APPLIED, GoalProcessor, plan_goal
from lucidcoder.automation.retry import EMPTY_EDITS_MESSAGES
from lucidcoder.automation.scope import ScopeReflection
from lucidcoder.config_loader import LucidCoderConfig
from lucidcoder.errors import LLMError, ReplacementUnresolvedError, ScopeViolationError
from lucidcoder.event_bus import GOAL_MESSAGE


def _edit(path="src/App.jsx"):
    return Edit(type="upsert", path=path, content="export default 1;\n")


class FakeEditsAgent:
    """Returns (or raises) queued responses, one per call, recording each context."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.contexts = []

    def run(self, context):
        self.contexts.append(context)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeApplier:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def apply_edits(self, edits, stage, prompt="", branch_name=None):
        self.calls.append((stage, [e.path for e in edits]))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, ApplyResult):
            return outcome
        return ApplyResult(applied=len(edits), paths=[e.path for e in edits])


class FakeReflectionAgent:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    def run(self, context):
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _config(tests=(1, 2), implementation=(1, 2)):
    return LucidCoderConfig(
        automation={"tests_attempts": list(tests), "implementation_attempts": list(implementation)}
    )


def _processor(config, goals, editor, applier, reflection=None, bus=None, tmp_path=None):
    return GoalProcessor(
        config,
        goals,
        edits_agent=editor,
        applier=applier,
        reflection_agent=reflection,
        project_path=tmp_path,
        bus=bus,
    )


# ---------------------------------------------------------------------------
# Instruction-only short circuit
# ---------------------------------------------------------------------------

def test_branch_only_prompt_skips_automation(goals, bus, tmp_path):
    messages = []
    bus.subscribe(lambda e: messages.append(e.payload["message"]), event_type=GOAL_MESSAGE)
    goal = goals.create_goal("demo", "Please create a branch for QA validation")
    editor, applier = FakeEditsAgent(), FakeApplier()

    result = _processor(_config(), goals, editor, applier, bus=bus, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert result.skipped_reason == "branch-only"
    assert result.to_payload()["skipped_reason"] == "branch-only"
    assert editor.contexts == []
    assert applier.calls == []
    assert goals.get_goal(goal.id).phase == "ready"
    assert messages == ["Completed (Branch setup handled automatically): Please create a branch for QA validation"]


def test_stage_only_prompt(goals, tmp_path):
    goal = goals.create_goal("demo", "Stage the updated files")
    result = _processor(_config(), goals, FakeEditsAgent(), FakeApplier(), tmp_path=tmp_path).process_goal(goal.id)
    assert result.skipped_reason == "stage-only"


def test_ready_goal_is_not_processed_again(goals, tmp_path):
    goal = goals.create_goal("demo", "Please create a branch for QA validation")
    processor = _processor(_config(), goals, FakeEditsAgent(), FakeApplier(), tmp_path=tmp_path)
    assert processor.process_goal(goal.id).success is True

    again = processor.process_goal(goal.id)

    assert again.success is False
    assert again.error == ALREADY_READY
    assert goals.get_goal(goal.id).phase == "ready"


def test_completed_goal_does_not_rerun_stages(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a footer")
    editor = FakeEditsAgent([_edit()])
    processor = _processor(_config(tests=[], implementation=[1]), goals, editor, FakeApplier(), tmp_path=tmp_path)
    assert processor.process_goal(goal.id).success is True

    result = processor.process_goal(goal.id)

    assert result.to_payload() == {"success": False, "error": ALREADY_READY, "applied": 0}
    assert len(editor.contexts) == 1


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

def test_scope_violation_is_retried_with_context(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a header")
    violation = ScopeViolationError("backend/server.js", "Edit to backend/server.js conflicts with scope guidance to avoid backend/.")
    editor = FakeEditsAgent([_edit("backend/server.js")], [_edit("src/Header.test.jsx")])
    applier = FakeApplier(violation)

    result = _processor(_config(tests=[1, 2], implementation=[]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert [c.stage for c in editor.contexts] == ["tests", "tests"]
    assert editor.contexts[0].retry_context is None
    retry = editor.contexts[1].retry_context
    assert retry.kind == "scope-violation"
    assert retry.path == "backend/server.js"
    assert retry.message == violation.message
    assert editor.contexts[1].attempt == 2
    assert goals.get_goal(goal.id).phase == "ready"


def test_empty_implementation_on_last_attempt_fails(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a footer")
    editor = FakeEditsAgent([])
    applier = FakeApplier()

    result = _processor(_config(tests=[], implementation=[1]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is False
    assert "implementation stage" in result.error
    assert applier.calls == []
    assert goals.get_goal(goal.id).phase == "failed"


def test_empty_edits_after_violation_keep_violation_details(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a header")
    violation = ScopeViolationError("backend/x.js", "Edit to backend/x.js conflicts", scope_warning="stay in frontend")
    editor = FakeEditsAgent([_edit("backend/x.js")], [], [_edit("src/Header.test.jsx")])
    applier = FakeApplier(violation)

    result = _processor(_config(tests=[1, 2, 3], implementation=[]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    retry = editor.contexts[2].retry_context
    assert retry.kind == "empty-edits"
    assert retry.message == EMPTY_EDITS_MESSAGES["tests"]
    assert retry.path == "backend/x.js"
    assert retry.scope_warning == "stay in frontend"


def test_reflection_violation_is_caught_before_apply(goals, tmp_path):
    goal = goals.create_goal("demo", "Change the header copy")
    reflection = FakeReflectionAgent(ScopeReflection(must_avoid=["backend/"], tests_needed=False))
    editor = FakeEditsAgent([_edit("backend/api.js")], [_edit("frontend/Header.jsx")])
    applier = FakeApplier()

    result = _processor(_config(tests=[1, 2], implementation=[1, 2]), goals, editor, applier, reflection, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert [c.stage for c in editor.contexts] == ["implementation", "implementation"]
    assert applier.calls == [("implementation", ["frontend/Header.jsx"])]
    assert editor.contexts[0].reflection.must_avoid == ["backend/"]


def test_final_scope_violation_is_the_error(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a header")
    violation = ScopeViolationError("backend/x.js", "Edit to backend/x.js conflicts")
    editor = FakeEditsAgent([_edit("backend/x.js")])
    applier = FakeApplier(violation)

    result = _processor(_config(tests=[1], implementation=[1]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is False
    assert result.error == "Edit to backend/x.js conflicts"


def test_replacement_failure_is_retried(goals, tmp_path):
    goal = goals.create_goal("demo", "Rename greet")
    failure = ReplacementUnresolvedError("src/a.py", "Replacement search text not found", search_snippet="def greet")
    editor = FakeEditsAgent([_edit("src/a.py")], [_edit("src/a.py")])
    applier = FakeApplier(failure)

    result = _processor(_config(tests=[], implementation=[1, 2]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    retry = editor.contexts[1].retry_context
    assert retry.kind == "replacement"
    assert retry.search_snippet == "def greet"


def test_unparseable_response_is_retried(goals, tmp_path):
    from lucidcoder.errors import EditsParseError

    goal = goals.create_goal("demo", "Add a footer")
    editor = FakeEditsAgent(EditsParseError("Could not parse edits", stage="implementation"), [_edit()])

    result = _processor(_config(tests=[], implementation=[1, 2]), goals, editor, FakeApplier(), tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert editor.contexts[1].retry_context.kind == "parse-error"


# ---------------------------------------------------------------------------
# Reflection and failures
# ---------------------------------------------------------------------------

def test_reflection_failure_is_not_fatal(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a footer")
    reflection = FakeReflectionAgent(LLMError("provider down"))
    editor = FakeEditsAgent([_edit("tests/test_footer.py")], [_edit()])

    result = _processor(_config(tests=[1], implementation=[1]), goals, editor, FakeApplier(), reflection, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert result.applied == 2
    assert reflection.calls == 1
    assert [c.stage for c in editor.contexts] == ["tests", "implementation"]


def test_failing_test_prompt_forces_tests_stage(goals, tmp_path):
    goal = goals.create_goal("demo", "Fix failing test in the login form")
    reflection = FakeReflectionAgent(ScopeReflection(tests_needed=False))
    editor = FakeEditsAgent([_edit("tests/test_login.py")], [_edit()])

    result = _processor(_config(tests=[1], implementation=[1]), goals, editor, FakeApplier(), reflection, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert editor.contexts[0].stage == "tests"


def test_no_applied_edits_fails_goal(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a footer")
    editor = FakeEditsAgent([_edit()])
    applier = FakeApplier(ApplyResult(applied=0, skipped=1))

    result = _processor(_config(tests=[], implementation=[1]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is False
    assert result.error == NO_EDITS_APPLIED


def test_unexpected_apply_error_fails_goal(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a footer")
    editor = FakeEditsAgent([_edit()], [_edit()])
    applier = FakeApplier(OSError("disk full"))

    result = _processor(_config(tests=[], implementation=[1, 2]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is False
    assert result.error == "disk full"
    assert len(editor.contexts) == 1
    assert goals.get_goal(goal.id).metadata["error"] == "disk full"


def test_failed_goal_can_be_rerun(goals, tmp_path):
    goal = goals.create_goal("demo", "Add a footer")
    _processor(_config(tests=[], implementation=[1]), goals, FakeEditsAgent([]), FakeApplier(), tmp_path=tmp_path).process_goal(goal.id)
    assert goals.get_goal(goal.id).phase == "failed"

    result = _processor(_config(tests=[], implementation=[1]), goals, FakeEditsAgent([_edit()]), FakeApplier(), tmp_path=tmp_path).process_goal(goal.id)
    assert result.success is True
    assert goals.get_goal(goal.id).phase == "ready"


def test_file_context_includes_existing_files(goals, tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "Header.jsx").write_text("export const Header = () => null;\n")
    goal = goals.create_goal("demo", "Add a header title")
    reflection = FakeReflectionAgent(ScopeReflection(must_change=["src/Header.jsx", "src/Missing.jsx"], tests_needed=False))
    editor = FakeEditsAgent([_edit("src/Header.jsx")])

    _processor(_config(tests=[], implementation=[1]), goals, editor, FakeApplier(), reflection, tmp_path=tmp_path).process_goal(goal.id)

    assert editor.contexts[0].file_context == {"src/Header.jsx": "export const Header = () => null;\n"}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class FakePlanner:
    def __init__(self, result):
        self.result = result

    def run(self, context):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_plan_goal_creates_children_in_order(goals):
    plan = GoalPlan(goals=[
        PlannedGoal(title="Model", prompt="Add the posts model"),
        PlannedGoal(title="Page", prompt="Add the posts page"),
    ])

    parent, children = plan_goal(goals, FakePlanner(plan), "demo", "Build a blog")

    assert parent.metadata["meta"] is True
    assert [c.prompt for c in children] == ["Add the posts model", "Add the posts page"]
    assert all(c.parent_goal_id == parent.id for c in children)
    assert all(c.branch_name == parent.branch_name for c in children)


def test_plan_goal_falls_back_to_single_child(goals):
    parent, children = plan_goal(goals, FakePlanner(LLMError("offline")), "demo", "Build a blog")
    assert [c.prompt for c in children] == ["Build a blog"]
    assert children[0].parent_goal_id == parent.id


# ---------------------------------------------------------------------------
# Real applier and branch workflow
# ---------------------------------------------------------------------------

def test_goal_edits_land_on_the_goal_branch(goals, workflow, tmp_path):
    goal = goals.create_goal("demo", "Add a header")
    editor = FakeEditsAgent([Edit(type="upsert", path="src/Header.jsx", content="export const Header = 1;\n")])
    applier = EditApplier(tmp_path, workflow=workflow)

    result = _processor(_config(tests=[], implementation=[1]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    branch = workflow.get_branch(goal.branch_name)
    assert branch.is_current is True
    assert branch.staged_paths == ["src/Header.jsx"]
    assert {f.source for f in branch.staged_files} == {"ai"}


def test_path_outside_project_is_retried(goals, workflow, tmp_path):
    goal = goals.create_goal("demo", "Add a header")
    editor = FakeEditsAgent(
        [Edit(type="upsert", path="../evil.js", content="x")],
        [Edit(type="upsert", path="src/Header.jsx", content="ok")],
    )
    applier = EditApplier(tmp_path, workflow=workflow)

    result = _processor(_config(tests=[], implementation=[1, 2]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is True
    assert len(editor.contexts) == 2
    retry = editor.contexts[1].retry_context
    assert retry.kind == "scope-violation"
    assert retry.path == "../evil.js"
    assert not (tmp_path.parent / "evil.js").exists()


def test_failed_batch_leaves_nothing_staged(goals, workflow, tmp_path):
    (tmp_path / "b.js").write_text("const b = 1;\n")
    goal = goals.create_goal("demo", "Add a header")
    editor = FakeEditsAgent([
        Edit(type="upsert", path="a.js", content="export const a = 1;\n"),
        Edit(type="modify", path="b.js", replacements=[Replacement(search="const b = 2;", replace="const b = 3;")]),
    ])
    applier = EditApplier(tmp_path, workflow=workflow)

    result = _processor(_config(tests=[], implementation=[1]), goals, editor, applier, tmp_path=tmp_path).process_goal(goal.id)

    assert result.success is False
    assert result.error == "Replacement search text not found"
    assert not (tmp_path / "a.js").exists()
    assert [b.name for b in workflow.overview().branches] == ["main"]
