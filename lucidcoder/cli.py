"""
Lucid Coder CLI — The Interface

Branch workflow:
  lucidcoder branch list|create|checkout|stage|clear|test|commit|merge|delete|css-only|log|context

Goal automation:
  lucidcoder goal run "<prompt>"    (create a goal and process it)
  lucidcoder goal plan "<prompt>"   (split a goal into child goals)
  lucidcoder goal list|delete

Plus utilities:
  - lucidcoder status        (check config + API keys)
  - lucidcoder init <path>   (bootstrap .lucidcoder in a project)
"""

from __future__ import annotations

import json
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from lucidcoder import __codename__, __tagline__, __version__
from lucidcoder.agents.editor import EditProposalAgent
from lucidcoder.agents.planner import GoalPlannerAgent
from lucidcoder.agents.reflection import ScopeReflectionAgent
from lucidcoder.agents.repair import ReplacementRepairAgent
from lucidcoder.automation.apply import EditApplier
from lucidcoder.automation.pipeline import GoalProcessor, plan_goal
from lucidcoder.branch_workflow import BranchWorkflow
from lucidcoder.config_loader import LucidCoderConfig, load_config, validate_api_keys
from lucidcoder.errors import ConfirmationRequired, LucidCoderError, NotFoundError
from lucidcoder.event_bus import EventBus
from lucidcoder.goals import GoalStore
from lucidcoder.router import Router
from lucidcoder.state import BranchOverview

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".lucidcoder" / ".env")

app = typer.Typer(
    name="lucidcoder",
    help=f"{__codename__} — {__tagline__}\nBranch workflow and goal automation for local projects.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
branch_app = typer.Typer(help="Stage, test, commit and merge workflow branches.", no_args_is_help=True)
goal_app = typer.Typer(help="Create and automate goals.", no_args_is_help=True)
app.add_typer(branch_app, name="branch")
app.add_typer(goal_app, name="goal")

console = Console()

ProjectOption = typer.Option(Path("."), "--project", "-p", help="Path to the project")
JsonOption = typer.Option(False, "--json", help="Print machine-readable JSON")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

class Session:
    """Everything one CLI invocation needs for a project."""

    def __init__(self, project: Path):
        self.project = project.resolve()
        if not self.project.exists():
            console.print(f"[red]Project not found: {self.project}[/]")
            raise typer.Exit(1)
        self.config: LucidCoderConfig = load_config(self.project)
        state_dir = self.project / self.config.workspace.state_dir
        self.bus = EventBus()
        self.goals = GoalStore(bus=self.bus, state_file=state_dir / "goals.json")
        self.workflow = BranchWorkflow(
            self.project,
            config=self.config,
            bus=self.bus,
            goals=self.goals,
            state_file=state_dir / "state.json",
        )

    def close(self) -> None:
        self.workflow.jobs.shutdown()


@contextmanager
def _session(project: Path):
    session = Session(project)
    try:
        yield session
    except ConfirmationRequired as e:
        console.print(f"[yellow]{e}. Re-run with --yes to confirm.[/]")
        raise typer.Exit(2)
    except LucidCoderError as e:
        console.print(f"[red]{e.message}[/]")
        raise typer.Exit(1)
    finally:
        session.close()


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _print_overview(overview: BranchOverview) -> None:
    table = Table(title=f"Branches (current: {overview.current})", border_style="cyan")
    table.add_column("Branch")
    table.add_column("Status")
    table.add_column("Staged")
    table.add_column("Tests")
    table.add_column("Merge blocked")

    working = {w.name: w for w in overview.working_branches}
    for summary in overview.branches:
        color = {"protected": "dim", "ready-for-merge": "green", "active": "yellow"}.get(summary.status, "white")
        marker = "* " if summary.is_current else "  "
        detail = working.get(summary.name)
        tests = detail.last_test_status if detail and detail.last_test_status else "—"
        blocked = detail.merge_blocked_reason if detail and detail.merge_blocked_reason else ""
        table.add_row(
            f"{marker}{summary.name}",
            f"[{color}]{summary.status}[/]",
            str(summary.staged_file_count),
            tests,
            blocked,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def status(
    project: Optional[Path] = typer.Option(None, "--project", "-p"),
):
    """Check Lucid Coder configuration and readiness."""
    console.print(f"[bold bright_cyan]{__codename__}[/] [dim]v{__version__} — {__tagline__}[/]\n")

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    if project:
        config = load_config(project.resolve())
        console.print("\n[bold]Routing:[/]")
        for role, model in config.routing.model_dump().items():
            console.print(f"  {role:<11} {model}")

        console.print("\n[bold]Automation:[/]")
        console.print(f"  Scope reflection:        {config.automation.scope_reflection}")
        console.print(f"  Tests attempts:          {config.automation.tests_attempts}")
        console.print(f"  Implementation attempts: {config.automation.implementation_attempts}")
        console.print(f"  Test mode:               {config.testing.mode} ({config.testing.command})")

        if config.boundaries.protected_paths:
            console.print("\n[bold]Protected paths:[/]")
            for p in config.boundaries.protected_paths:
                console.print(f"  🔒 {p}")

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "python3", "node", "npm"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)


@app.command()
def init(
    project: Optional[Path] = typer.Argument(None, help="Path to the project"),
):
    """Initialize a .lucidcoder directory in a project."""
    project = (project or Path.cwd()).resolve()
    lc_dir = project / ".lucidcoder"
    lc_dir.mkdir(parents=True, exist_ok=True)

    config_path = lc_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# Lucid Coder project-level config overrides
# These merge with the built-in defaults.

# Model per agent role:
# routing:
#   editor: "anthropic/claude-sonnet-4-20250514"

# Attempt sequences per automation stage ([] skips the stage):
# automation:
#   tests_attempts: [1, 2]
#   implementation_attempts: [1, 2, 3]

# How branches are tested:
# testing:
#   mode: command        # or "simulate"
#   command: "npm test"

# Paths edits may never touch:
# boundaries:
#   protected_paths:
#     - ".git"
#     - ".lucidcoder"
""")

    gitignore = project / ".gitignore"
    entry = ".lucidcoder/*.json"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry not in content:
            with open(gitignore, "a") as f:
                f.write(f"\n# Lucid Coder\n{entry}\n")
    else:
        gitignore.write_text(f"# Lucid Coder\n{entry}\n")

    console.print(f"[green]✅ Initialized Lucid Coder in {lc_dir}[/]")
    console.print(f"  Config:  {config_path}")


# ---------------------------------------------------------------------------
# Branch workflow
# ---------------------------------------------------------------------------

@branch_app.command("list")
def branch_list(project: Path = ProjectOption, as_json: bool = JsonOption):
    """Show branches and their merge readiness."""
    with _session(project) as s:
        overview = s.workflow.overview()
        if as_json:
            _emit_json(overview.to_payload())
        else:
            _print_overview(overview)


@branch_app.command("create")
def branch_create(
    name: Optional[str] = typer.Argument(None, help="Branch name (generated when omitted)"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    project: Path = ProjectOption,
    as_json: bool = JsonOption,
):
    """Create a working branch and make it current."""
    with _session(project) as s:
        result = s.workflow.create_branch(name, description=description)
        if as_json:
            _emit_json(result.to_payload())
            return
        console.print(f"[green]Created {result.branch.name}[/]")
        _print_overview(result.overview)


@branch_app.command("checkout")
def branch_checkout(name: str, project: Path = ProjectOption):
    """Make a branch current."""
    with _session(project) as s:
        result = s.workflow.checkout(name)
        console.print(f"[green]Switched to {result.branch.name}[/]")


@branch_app.command("stage")
def branch_stage(
    paths: List[str] = typer.Argument(..., help="Files to stage"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b"),
    source: str = typer.Option("editor", "--source", help="editor or ai"),
    project: Path = ProjectOption,
    as_json: bool = JsonOption,
):
    """Stage files on a working branch (one is created if needed)."""
    with _session(project) as s:
        results = [s.workflow.stage_file(p, source=source, branch_name=branch) for p in paths]
        last = results[-1]
        if as_json:
            _emit_json(last.to_payload())
            return
        console.print(f"[green]Staged {len(paths)} file(s) on {last.branch}[/]")
        if last.git.error:
            console.print(f"[yellow]⚠ git add failed: {last.git.error}[/]")


@branch_app.command("clear")
def branch_clear(
    path: Optional[str] = typer.Argument(None, help="File to unstage (all when omitted)"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b"),
    project: Path = ProjectOption,
):
    """Remove staged files from a branch."""
    with _session(project) as s:
        result = s.workflow.clear_staged_file(branch, path)
        console.print(f"[green]{result.branch.name}: {len(result.branch.staged_files)} file(s) still staged[/]")


@branch_app.command("test")
def branch_test(
    branch: Optional[str] = typer.Argument(None, help="Branch (current when omitted)"),
    force_fail: bool = typer.Option(False, "--force-fail", help="Record a deterministic failing run"),
    project: Path = ProjectOption,
    as_json: bool = JsonOption,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the project's tests against a branch."""
    _configure_logging(verbose)
    with _session(project) as s:
        result = s.workflow.run_tests(branch, force_fail=force_fail)
        if as_json:
            _emit_json(result.to_payload())
            return
        run = result.run
        color = "green" if run.status == "passed" else "red"
        console.print(
            f"[{color}]Tests {run.status}[/] on {run.branch}: "
            f"{run.summary.passed}/{run.summary.total} passed, {run.summary.failed} failed"
        )
        for case in run.tests:
            if case.status == "failed":
                console.print(f"  [red]✗ {case.name}[/] [dim]{case.error or ''}[/]")
        console.print(f"  Status: {result.branch.status}")
        if run.status != "passed":
            raise typer.Exit(1)


@branch_app.command("commit")
def branch_commit(
    branch: str = typer.Argument(..., help="Branch to commit"),
    message: Optional[str] = typer.Option(None, "--message", "-m"),
    project: Path = ProjectOption,
    as_json: bool = JsonOption,
):
    """Commit a branch's staged files."""
    with _session(project) as s:
        result = s.workflow.commit(branch, message=message)
        if as_json:
            _emit_json(result.to_payload())
            return
        console.print(f"[green]✅ {result.commit.short_sha} {result.commit.message}[/]")


@branch_app.command("merge")
def branch_merge(branch: str, project: Path = ProjectOption):
    """Merge a proven branch into main."""
    with _session(project) as s:
        result = s.workflow.merge(branch)
        console.print(f"[green]✅ Merged {result.merged_branch} into {result.current}[/]")


@branch_app.command("delete")
def branch_delete(
    branch: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm the deletion"),
    project: Path = ProjectOption,
):
    """Delete a working branch."""
    with _session(project) as s:
        result = s.workflow.delete_branch(branch, confirm=yes)
        console.print(f"[green]Deleted {result.deleted_branch}[/]")


@branch_app.command("css-only")
def branch_css_only(
    branch: Optional[str] = typer.Argument(None),
    project: Path = ProjectOption,
    as_json: bool = JsonOption,
):
    """Report whether a branch's changes are stylesheet-only."""
    with _session(project) as s:
        result = s.workflow.css_only_status(branch)
        if as_json:
            _emit_json(result.model_dump(by_alias=True))
            return
        verdict = "[green]CSS-only[/]" if result.is_css_only else "[yellow]not CSS-only[/]"
        console.print(f"{result.branch}: {verdict} [dim](from {result.indicator})[/]")


@branch_app.command("log")
def branch_log(
    branch: Optional[str] = typer.Argument(None),
    limit: int = typer.Option(25, "--limit", "-n"),
    project: Path = ProjectOption,
):
    """Show a branch's commit history."""
    with _session(project) as s:
        commits = s.workflow.list_commits(branch, limit=limit)
        if not commits:
            console.print("[dim]No commits yet.[/]")
            return
        table = Table(title="Commits", border_style="cyan")
        table.add_column("SHA", style="dim")
        table.add_column("Message")
        table.add_column("When", style="dim")
        for c in commits:
            table.add_row(c.short_sha, c.message, c.created_at[:19])
        console.print(table)


@branch_app.command("context")
def branch_context(
    branch: Optional[str] = typer.Argument(None),
    project: Path = ProjectOption,
):
    """Print staged changes and a suggested commit message as JSON."""
    with _session(project) as s:
        _emit_json(s.workflow.get_commit_context(branch).to_payload())


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------

@goal_app.command("run")
def goal_run(
    prompt: str = typer.Argument(..., help="What you want done"),
    tests: bool = typer.Option(True, "--tests/--no-tests", help="Default for whether tests are needed"),
    project: Path = ProjectOption,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Create a goal and run it through automation."""
    _configure_logging(verbose)
    with _session(project) as s:
        goal = s.goals.create_goal(s.workflow.project_id, prompt, lifecycle_state="active")
        try:
            s.workflow.get_branch(goal.branch_name)
            s.workflow.checkout(goal.branch_name)
        except NotFoundError:
            s.workflow.create_branch(goal.branch_name, description=prompt)

        console.print(f"[cyan]Goal #{goal.id} on {goal.branch_name}[/]")
        router = Router(s.config)
        router.start_goal(goal.id)
        result = _build_processor(s, router).process_goal(goal.id, tests_needed_default=tests)
        usage = router.usage
        if usage.calls:
            console.print(f"[dim]{usage.calls} model call(s), {usage.total_tokens} tokens, ${usage.cost:.4f}[/]")

        if result.success:
            note = f" [dim]({result.skipped_reason})[/]" if result.skipped_reason else ""
            console.print(f"[green]✅ {result.message}[/]{note}")
        else:
            console.print(f"[red]❌ {result.error}[/]")
            raise typer.Exit(1)


@goal_app.command("plan")
def goal_plan(
    prompt: str = typer.Argument(..., help="Goal to break down"),
    project: Path = ProjectOption,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Split a goal into ordered child goals with the planner."""
    _configure_logging(verbose)
    with _session(project) as s:
        parent, children = plan_goal(
            s.goals,
            GoalPlannerAgent(Router(s.config)),
            s.workflow.project_id,
            prompt,
            project_path=s.project,
        )
        table = Table(title=f"Goal #{parent.id} — {parent.branch_name}", border_style="cyan")
        table.add_column("#", style="dim")
        table.add_column("Prompt")
        for child in children:
            table.add_row(str(child.id), child.prompt)
        console.print(table)


@goal_app.command("list")
def goal_list(
    project: Path = ProjectOption,
    archived: bool = typer.Option(True, "--archived/--open", help="Include finished goals"),
    as_json: bool = JsonOption,
):
    """List goals, newest first."""
    with _session(project) as s:
        goals = s.goals.list_goals(s.workflow.project_id, include_archived=archived)
        if as_json:
            _emit_json([g.model_dump(mode="json") for g in goals])
            return
        if not goals:
            console.print("[dim]No goals yet.[/]")
            return
        table = Table(title="Goals", border_style="cyan")
        table.add_column("#", style="dim")
        table.add_column("Phase")
        table.add_column("State")
        table.add_column("Branch", style="dim")
        table.add_column("Prompt")
        for g in goals:
            color = {"ready": "green", "failed": "red"}.get(g.phase, "yellow")
            table.add_row(str(g.id), f"[{color}]{g.phase}[/]", g.lifecycle_state, g.branch_name, g.prompt[:60])
        console.print(table)


@goal_app.command("delete")
def goal_delete(goal_id: int, project: Path = ProjectOption):
    """Delete a goal and its children."""
    with _session(project) as s:
        deleted = s.goals.delete_goal(goal_id)
        console.print(f"[green]Deleted {len(deleted)} goal(s)[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_processor(s: Session, router: Router) -> GoalProcessor:
    repair = ReplacementRepairAgent(router) if s.config.automation.replacement_repair else None
    applier = EditApplier(
        s.project,
        workflow=s.workflow,
        repair_agent=repair,
        protected_paths=s.config.boundaries.protected_paths,
    )
    return GoalProcessor(
        s.config,
        s.goals,
        edits_agent=EditProposalAgent(router),
        applier=applier,
        reflection_agent=ScopeReflectionAgent(router),
        project_path=s.project,
        bus=s.bus,
    )


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
