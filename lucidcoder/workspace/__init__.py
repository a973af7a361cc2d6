"""
Lucid Coder Git Adapter

Thin wrapper over the git CLI for one project checkout. Every call goes
through `run_command`, which returns stdout/stderr/exit code and raises
WorkspaceError on failure unless allow_failure is set.

When the project is not a git repository (or git is disabled) the
adapter reports `ready == False` and callers skip git side effects.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from lucidcoder.errors import WorkspaceError

__all__ = ["GitResult", "Workspace", "WorkspaceError"]

LOG_RECORD_SEP = "\x1e"
LOG_FIELD_SEP = "\x1f"


class GitResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Workspace:
    """
    Git access for a single project directory.
    """

    def __init__(self, project_path: Path, enabled: bool = True, timeout: int = 60):
        self.project_path = Path(project_path).resolve()
        self.enabled = enabled
        self.timeout = timeout
        self._ready: bool | None = None

    @property
    def ready(self) -> bool:
        """True when git is enabled and the project is inside a work tree."""
        if self._ready is None:
            if not self.enabled or not self.project_path.exists():
                self._ready = False
            else:
                try:
                    result = self.run_command(["rev-parse", "--is-inside-work-tree"], allow_failure=True)
                    self._ready = result.ok and result.stdout.strip() == "true"
                except WorkspaceError as e:
                    logger.warning(f"[GIT] git unavailable: {e}")
                    self._ready = False
        return self._ready

    def run_command(self, args: list[str], allow_failure: bool = False) -> GitResult:
        return self._run_cmd(["git", *args], cwd=self.project_path, allow_failure=allow_failure, timeout=self.timeout)

    # -----------------------------------------------------------------------
    # Branches
    # -----------------------------------------------------------------------

    def current_branch(self) -> str:
        return self.run_command(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        result = self.run_command(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], allow_failure=True)
        return result.ok

    def ensure_branch(self, name: str, base: str = "main") -> None:
        """Check out `name`, creating it from `base` when missing."""
        if self.branch_exists(name):
            self.checkout(name)
            return
        if self.branch_exists(base):
            self.checkout(base)
        self.run_command(["checkout", "-b", name])
        logger.info(f"[GIT] Created branch {name} from {base}")

    def checkout(self, name: str) -> None:
        self.run_command(["checkout", name])

    def delete_branch(self, name: str) -> None:
        self.run_command(["branch", "-D", name])

    def head_sha(self, ref: str = "HEAD") -> str:
        return self.run_command(["rev-parse", ref]).stdout.strip()

    # -----------------------------------------------------------------------
    # Index
    # -----------------------------------------------------------------------

    def add(self, paths: list[str]) -> None:
        if paths:
            self.run_command(["add", "-A", "--", *paths])

    def unstage(self, paths: list[str]) -> GitResult:
        return self.run_command(["reset", "-q", "--", *paths], allow_failure=True)

    def staged_paths(self) -> list[str]:
        result = self.run_command(["diff", "--cached", "--name-only"], allow_failure=True)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def changed_paths(self, base: str, branch: str) -> list[str]:
        result = self.run_command(["diff", "--name-only", f"{base}..{branch}"], allow_failure=True)
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def numstat(self, path: str) -> tuple[int, int]:
        result = self.run_command(["diff", "--cached", "--numstat", "--", path], allow_failure=True)
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
                return int(parts[0]), int(parts[1])
        return 0, 0

    def staged_diff(self, path: str) -> str:
        return self.run_command(["diff", "--cached", "--", path], allow_failure=True).stdout

    # -----------------------------------------------------------------------
    # History
    # -----------------------------------------------------------------------

    def commit(self, message: str) -> str:
        self.run_command(["commit", "-m", message])
        return self.head_sha()

    def merge_no_ff(self, branch: str, message: str) -> None:
        """Merge `branch` into the checked-out branch, aborting on conflict."""
        result = self.run_command(["merge", "--no-ff", "-m", message, branch], allow_failure=True)
        if not result.ok:
            self.run_command(["merge", "--abort"], allow_failure=True)
            raise WorkspaceError(f"Merge conflict merging {branch}: {(result.stderr or result.stdout).strip()}")

    def log(self, ref: str, limit: int) -> str:
        fmt = LOG_FIELD_SEP.join(["%H", "%h", "%s", "%an", "%aI"]) + LOG_RECORD_SEP
        result = self.run_command(["log", ref, f"-n{limit}", f"--pretty=format:{fmt}"], allow_failure=True)
        return result.stdout if result.ok else ""

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path, allow_failure: bool = False, timeout: int = 60) -> GitResult:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{e}") from e
        if not allow_failure and result.returncode != 0:
            raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return GitResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)
