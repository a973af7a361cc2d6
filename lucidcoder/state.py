"""
Lucid Coder project state.

The branch workflow's working memory: branches, their staged files,
test runs and commits. Serialized field names are camelCase so the
overview payload matches what UI consumers poll.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MAIN_BRANCH = "main"

BranchStatus = Literal["protected", "active", "ready-for-merge", "merged"]
StagedSource = Literal["editor", "ai"]
TestStatus = Literal["passed", "failed"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class StagedFile(CamelModel):
    path: str
    source: StagedSource = "editor"
    timestamp: str = Field(default_factory=utc_now)


class TestSummary(CamelModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float = 0.0


class TestCase(CamelModel):
    name: str
    status: Literal["passed", "failed", "skipped"]
    duration: float = 0.0
    error: str | None = None


class TestRun(CamelModel):
    """One execution of the test command. Superseded by later runs, never edited."""

    model_config = ConfigDict(frozen=True)

    id: str
    branch: str
    status: TestStatus
    summary: TestSummary
    tests: list[TestCase] = Field(default_factory=list)
    completed_at: str = Field(default_factory=utc_now)
    staging_revision: int = 0
    simulated: bool = False
    job_id: str | None = None


class CommitRecord(CamelModel):
    sha: str
    short_sha: str
    message: str
    branch: str
    files: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)


class Branch(CamelModel):
    name: str
    description: str = ""
    status: BranchStatus = "active"
    is_current: bool = False
    staged_files: list[StagedFile] = Field(default_factory=list)
    last_test_status: TestStatus | None = None
    last_test_summary: TestSummary | None = None
    last_test_completed_at: str | None = None
    merge_blocked_reason: str | None = None
    ahead: int = 0
    behind: int = 0
    staging_revision: int = 0
    test_runs: list[TestRun] = Field(default_factory=list)
    commits: list[CommitRecord] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)

    @property
    def is_main(self) -> bool:
        return self.name == MAIN_BRANCH

    @property
    def staged_paths(self) -> list[str]:
        return [f.path for f in self.staged_files]

    @property
    def last_test_run(self) -> TestRun | None:
        return self.test_runs[-1] if self.test_runs else None


# ---------------------------------------------------------------------------
# Overview projection
# ---------------------------------------------------------------------------

class BranchSummary(CamelModel):
    name: str
    status: BranchStatus
    is_current: bool
    staged_file_count: int
    ahead: int = 0
    behind: int = 0


class WorkingBranch(CamelModel):
    name: str
    description: str
    status: BranchStatus
    merge_blocked_reason: str | None
    last_test_status: TestStatus | None
    last_test_summary: TestSummary | None
    last_test_completed_at: str | None
    staged_files: list[StagedFile]


class BranchOverview(CamelModel):
    branches: list[BranchSummary]
    current: str
    working_branches: list[WorkingBranch]

    def working_branch(self, name: str) -> WorkingBranch | None:
        for branch in self.working_branches:
            if branch.name == name:
                return branch
        return None


class ProjectState(CamelModel):
    """Everything the branch workflow owns for one project."""

    project_id: str
    branches: list[Branch] = Field(default_factory=list)

    def persist(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2, by_alias=True))

    @classmethod
    def load(cls, path: Path, project_id: str) -> "ProjectState":
        if not path.exists():
            return cls(project_id=project_id)
        return cls.model_validate_json(path.read_text())
