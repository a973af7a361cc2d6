"""
CSS-only change detection.

A branch whose whole change set is stylesheets may be committed without
a passing test run. The change set is the branch's staged files, or,
when nothing is staged, what git reports for the branch.
"""

from __future__ import annotations

from typing import Iterable, Literal

from loguru import logger

from lucidcoder.errors import WorkspaceError
from lucidcoder.formatting import normalize_repo_path
from lucidcoder.state import MAIN_BRANCH, Branch, CamelModel
from lucidcoder.workspace import Workspace

CssIndicator = Literal["staged", "git-diff", "none"]


class CssOnlyStatus(CamelModel):
    branch: str
    is_css_only: bool
    indicator: CssIndicator
    paths: list[str] = []


def is_css_only_paths(paths: Iterable[str], extensions: Iterable[str] = (".css",)) -> bool:
    """True when there is at least one path and every path is a stylesheet."""
    suffixes = tuple(ext.lower() for ext in extensions)
    normalized = [normalize_repo_path(p).lower() for p in paths]
    normalized = [p for p in normalized if p]
    if not normalized:
        return False
    return all(p.endswith(suffixes) for p in normalized)


class CssOnlyDetector:
    def __init__(self, workspace: Workspace | None = None, extensions: Iterable[str] = (".css",)):
        self.workspace = workspace
        self.extensions = tuple(extensions)

    def classify(self, branch: Branch) -> CssOnlyStatus:
        if branch.staged_files:
            paths = branch.staged_paths
            return CssOnlyStatus(
                branch=branch.name,
                is_css_only=is_css_only_paths(paths, self.extensions),
                indicator="staged",
                paths=paths,
            )

        paths = self._git_paths(branch)
        if paths:
            return CssOnlyStatus(
                branch=branch.name,
                is_css_only=is_css_only_paths(paths, self.extensions),
                indicator="git-diff",
                paths=paths,
            )

        return CssOnlyStatus(branch=branch.name, is_css_only=False, indicator="none")

    def _git_paths(self, branch: Branch) -> list[str]:
        if self.workspace is None or not self.workspace.ready:
            return []
        try:
            if branch.is_current:
                staged = self.workspace.staged_paths()
                if staged:
                    return staged
            if branch.name == MAIN_BRANCH:
                return []
            return self.workspace.changed_paths(MAIN_BRANCH, branch.name)
        except WorkspaceError as e:
            logger.warning(f"[CSS] Could not read git changes for {branch.name}: {e}")
            return []
