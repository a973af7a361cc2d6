import pytest

from lucidcoder.automation.apply import EditApplier
from lucidcoder.automation.edits import Edit, Replacement
from lucidcoder.errors import ReplacementUnresolvedError, ScopeViolationError


class FakeRepairAgent:
    def __init__(self, fix=None, rewrite=None):
        self.fix = fix
        self.rewritten = rewrite
        self.calls = []

    def repair(self, context, path, contents, intended, error):
        self.calls.append(("repair", path, error))
        return self.fix

    def rewrite(self, context, path, contents, intended, error):
        self.calls.append(("rewrite", path, error))
        return self.rewritten


def _modify(path, search, replace):
    return Edit(type="modify", path=path, replacements=[Replacement(search=search, replace=replace)])


def test_upsert_modify_delete_and_stage(tmp_path, workflow):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("VALUE = 1\n")
    (tmp_path / "old.py").write_text("x\n")
    applier = EditApplier(tmp_path, workflow=workflow)

    result = applier.apply_edits(
        [
            Edit(type="upsert", path="src/new.py", content="NEW = True\n"),
            _modify("src/app.py", "VALUE = 1", "VALUE = 2"),
            Edit(type="delete", path="old.py"),
        ],
        stage="implementation",
    )

    assert result.applied == 3
    assert result.paths == ["src/new.py", "src/app.py", "old.py"]
    assert (tmp_path / "src" / "new.py").read_text() == "NEW = True\n"
    assert (tmp_path / "src" / "app.py").read_text() == "VALUE = 2\n"
    assert not (tmp_path / "old.py").exists()

    branch = workflow.current_branch()
    assert branch.staged_paths == ["src/new.py", "src/app.py", "old.py"]
    assert {f.source for f in branch.staged_files} == {"ai"}


def test_noop_edits_are_skipped(tmp_path, workflow):
    (tmp_path / "same.txt").write_text("same")
    applier = EditApplier(tmp_path, workflow=workflow)
    result = applier.apply_edits(
        [Edit(type="upsert", path="same.txt", content="same"), Edit(type="delete", path="missing.txt")],
        stage="tests",
    )
    assert result.applied == 0
    assert result.skipped == 2
    assert workflow.current_branch().name == "main"


def test_protected_paths_raise_scope_violation_before_writing(tmp_path):
    applier = EditApplier(tmp_path, protected_paths=[".lucidcoder"])
    edits = [
        Edit(type="upsert", path="ok.txt", content="fine"),
        Edit(type="upsert", path=".lucidcoder/state.json", content="{}"),
    ]
    with pytest.raises(ScopeViolationError) as excinfo:
        applier.apply_edits(edits, stage="implementation")
    assert excinfo.value.path == ".lucidcoder/state.json"
    assert not (tmp_path / "ok.txt").exists()


@pytest.mark.parametrize("path", ["../escape.txt", "src/../../escape.txt"])
def test_path_outside_project_is_scope_violation(tmp_path, path):
    applier = EditApplier(tmp_path)
    with pytest.raises(ScopeViolationError) as excinfo:
        applier.apply_edits([Edit(type="upsert", path=path, content="x")], stage="tests")
    assert excinfo.value.path == path
    assert excinfo.value.stage == "tests"
    assert not (tmp_path.parent / "escape.txt").exists()


def test_failed_edit_leaves_batch_unwritten_and_unstaged(tmp_path, workflow):
    (tmp_path / "b.js").write_text("const b = 1;\n")
    applier = EditApplier(tmp_path, workflow=workflow)
    edits = [
        Edit(type="upsert", path="a.js", content="export const a = 1;\n"),
        _modify("b.js", "const b = 2;", "const b = 3;"),
    ]

    with pytest.raises(ReplacementUnresolvedError):
        applier.apply_edits(edits, stage="implementation")

    assert not (tmp_path / "a.js").exists()
    assert (tmp_path / "b.js").read_text() == "const b = 1;\n"
    assert workflow.current_branch().name == "main"
    assert all(not b.staged_files for b in workflow.overview().working_branches)


def test_later_edit_sees_earlier_edit_to_same_file(tmp_path):
    (tmp_path / "a.py").write_text("A = 1\n")
    applier = EditApplier(tmp_path)
    result = applier.apply_edits(
        [_modify("a.py", "A = 1", "A = 2"), _modify("a.py", "A = 2", "A = 3")],
        stage="implementation",
    )
    assert result.paths == ["a.py"]
    assert (tmp_path / "a.py").read_text() == "A = 3\n"


def test_modify_missing_file(tmp_path):
    applier = EditApplier(tmp_path)
    with pytest.raises(ReplacementUnresolvedError, match="File not found: nope.py"):
        applier.apply_edits([_modify("nope.py", "a", "b")], stage="implementation")


def test_unresolved_replacement_without_repair(tmp_path):
    (tmp_path / "a.py").write_text("print('a')\n")
    applier = EditApplier(tmp_path)
    with pytest.raises(ReplacementUnresolvedError) as excinfo:
        applier.apply_edits([_modify("a.py", "print('b')", "print('c')")], stage="implementation")
    assert excinfo.value.search_snippet == "print('b')"
    assert excinfo.value.stage == "implementation"


def test_repair_agent_fixes_replacement(tmp_path):
    (tmp_path / "a.py").write_text("print('a')\n")
    repair = FakeRepairAgent(fix=_modify("a.py", "print('a')", "print('fixed')"))
    applier = EditApplier(tmp_path, repair_agent=repair)

    result = applier.apply_edits([_modify("a.py", "print('b')", "print('c')")], stage="implementation")

    assert result.applied == 1
    assert (tmp_path / "a.py").read_text() == "print('fixed')\n"
    assert [c[0] for c in repair.calls] == ["repair"]


def test_repair_falls_back_to_rewrite(tmp_path):
    (tmp_path / "a.py").write_text("print('a')\n")
    repair = FakeRepairAgent(
        fix=_modify("a.py", "still wrong", "x"),
        rewrite=Edit(type="upsert", path="a.py", content="print('rewritten')\n"),
    )
    applier = EditApplier(tmp_path, repair_agent=repair)

    applier.apply_edits([_modify("a.py", "print('b')", "print('c')")], stage="implementation")

    assert (tmp_path / "a.py").read_text() == "print('rewritten')\n"
    assert [c[0] for c in repair.calls] == ["repair", "rewrite"]
