"""Decide whether a push should trigger a prebuild."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Optional

from devplane.projects.prebuild_settings import BranchStrategy, get_prebuild_settings
from devplane.workspaces.config import ConfigOrigin, WorkspaceConfig, has_prebuild_task
from devplane.workspaces.context import CommitContext

if TYPE_CHECKING:
    from devplane.projects.models import Project


@dataclass(frozen=True, slots=True)
class PrebuildPrecondition:
    should_run: bool
    reason: str


_NO_DOT = r"(?!\.)"
_SEGMENT = _NO_DOT + r"[^/]*"


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a branch glob with minimatch semantics.

    ``*`` stays within one segment, a ``**`` segment spans any number of
    segments, and wildcards never match a leading ``.`` of a segment.
    """

    parts: list[str] = []
    index = 0
    while index < len(pattern):
        segment_start = index == 0 or pattern[index - 1] == "/"
        if segment_start and pattern.startswith("**/", index):
            parts.append(f"(?:{_SEGMENT}/)*")
            index += 3
        elif segment_start and pattern.startswith("**", index) and index + 2 == len(pattern):
            parts.append(f"(?:{_SEGMENT}(?:/{_SEGMENT})*)?")
            index += 2
        elif pattern[index] == "*":
            while index < len(pattern) and pattern[index] == "*":
                index += 1
            parts.append((_NO_DOT if segment_start else "") + "[^/]*")
        elif pattern[index] == "?":
            parts.append((_NO_DOT if segment_start else "") + "[^/]")
            index += 1
        else:
            parts.append(re.escape(pattern[index]))
            index += 1
    return re.compile("".join(parts))


def branch_matches(branch: str, pattern_list: str) -> bool:
    for pattern in pattern_list.split(","):
        pattern = pattern.strip()
        if not pattern:
            continue
        if glob_to_regex(f"**/{pattern}").fullmatch(branch):
            return True
    return False


def check_prebuild_precondition(
    config: Optional[WorkspaceConfig],
    project: Optional["Project"],
    context: CommitContext,
) -> PrebuildPrecondition:
    """Evaluate the trigger rules in order; the first rule that applies decides."""

    if config is None or config.origin != ConfigOrigin.REPO:
        return PrebuildPrecondition(False, "no-gitpod-config-in-repo")

    if not has_prebuild_task(config):
        return PrebuildPrecondition(False, "no-tasks-in-gitpod-config")

    prebuild_settings = get_prebuild_settings(project)
    if not prebuild_settings.enable:
        return PrebuildPrecondition(False, "prebuilds-not-enabled")

    strategy = prebuild_settings.branch_strategy
    if strategy == BranchStrategy.ALL_BRANCHES.value:
        return PrebuildPrecondition(True, "all-branches-selected")

    if strategy == BranchStrategy.DEFAULT_BRANCH.value:
        default_branch = context.repository.default_branch
        if not default_branch:
            return PrebuildPrecondition(False, "default-branch-missing-in-commit-context")
        if context.ref == default_branch:
            return PrebuildPrecondition(True, "default-branch-matched")
        return PrebuildPrecondition(False, "default-branch-unmatched")

    if strategy in (
        BranchStrategy.MATCHED_BRANCHES.value,
        BranchStrategy.SELECTED_BRANCHES.value,
    ):
        if not context.ref:
            return PrebuildPrecondition(False, "branch-name-missing-in-commit-context")
        pattern = (prebuild_settings.branch_matching_pattern or "").strip()
        if not pattern:
            return PrebuildPrecondition(True, "all-branches-selected")
        if branch_matches(context.ref, pattern):
            return PrebuildPrecondition(True, "branch-matched")
        return PrebuildPrecondition(False, "branch-unmatched")

    return PrebuildPrecondition(False, "unknown-strategy")


__all__ = [
    "PrebuildPrecondition",
    "branch_matches",
    "check_prebuild_precondition",
    "glob_to_regex",
]
