import json

import pytest
from typer.testing import CliRunner

from lucidcoder import __codename__, __version__
from lucidcoder.cli import app

runner = CliRunner()


@pytest.fixture
def project(tmp_path):
    state_dir = tmp_path / ".lucidcoder"
    state_dir.mkdir()
    (state_dir / "config.yaml").write_text("testing:\n  mode: simulate\n")
    return tmp_path


def _invoke(project, *args):
    return runner.invoke(app, [*args, "--project", str(project)])


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"{__codename__} v{__version__}" in result.stdout


def test_init_creates_config(tmp_path):
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0
    assert (tmp_path / ".lucidcoder" / "config.yaml").exists()
    assert ".lucidcoder/*.json" in (tmp_path / ".gitignore").read_text()


def test_branch_flow(project):
    assert _invoke(project, "branch", "create", "feature-cli").exit_code == 0
    assert _invoke(project, "branch", "stage", "src/a.py").exit_code == 0

    merge = _invoke(project, "branch", "merge", "feature-cli")
    assert merge.exit_code == 1
    assert "pass tests" in merge.stdout

    assert _invoke(project, "branch", "test").exit_code == 0
    assert _invoke(project, "branch", "merge", "feature-cli").exit_code == 0

    listing = _invoke(project, "branch", "list", "--json")
    payload = json.loads(listing.stdout)
    assert payload["current"] == "main"
    assert payload["workingBranches"] == []


def test_branch_test_force_fail_exits_nonzero(project):
    _invoke(project, "branch", "create", "feature-cli")
    result = _invoke(project, "branch", "test", "--force-fail")
    assert result.exit_code == 1
    assert "Tests failed" in result.stdout


def test_delete_requires_yes(project):
    _invoke(project, "branch", "create", "feature-cli")
    result = _invoke(project, "branch", "delete", "feature-cli")
    assert result.exit_code == 2
    assert "Confirmation required" in result.stdout

    assert _invoke(project, "branch", "delete", "feature-cli", "--yes").exit_code == 0


def test_css_only_json(project):
    _invoke(project, "branch", "create", "feature-css")
    _invoke(project, "branch", "stage", "App.css")
    result = _invoke(project, "branch", "css-only", "--json")
    assert json.loads(result.stdout)["isCssOnly"] is True


def test_goal_run_instruction_only(project):
    result = _invoke(project, "goal", "run", "Please create a branch for QA validation")
    assert result.exit_code == 0
    assert "branch-only" in result.stdout

    listing = json.loads(_invoke(project, "goal", "list", "--json").stdout)
    assert listing[0]["phase"] == "ready"
    assert listing[0]["lifecycle_state"] == "active"
