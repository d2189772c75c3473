"""Unit tests for the push-to-prebuild trigger rules."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from devplane.prebuilds.precondition import (
    branch_matches,
    check_prebuild_precondition,
    glob_to_regex,
)
from devplane.workspaces.config import ConfigOrigin, WorkspaceConfig
from devplane.workspaces.context import CommitContext, Repository

REPO_CONFIG = WorkspaceConfig(origin=ConfigOrigin.REPO, tasks=({"init": "make"},))


def _context(ref: str | None = "main", default_branch: str | None = "main") -> CommitContext:
    return CommitContext(
        repository=Repository(
            host="github.com",
            owner="acme",
            name="app",
            clone_url="https://github.com/acme/app.git",
            default_branch=default_branch,
        ),
        revision="abc123",
        ref=ref,
    )


def _project(prebuilds: dict | None = None, **flat) -> SimpleNamespace:
    settings = dict(flat)
    if prebuilds is not None:
        settings["prebuilds"] = prebuilds
    return SimpleNamespace(id="p1", settings=settings)


def test_missing_or_derived_config_is_rejected() -> None:
    project = _project({"enable": True, "branchStrategy": "all-branches"})
    derived = WorkspaceConfig(origin=ConfigOrigin.DERIVED, tasks=({"init": "make"},))

    assert check_prebuild_precondition(None, project, _context()).reason == (
        "no-gitpod-config-in-repo"
    )
    assert check_prebuild_precondition(derived, project, _context()).reason == (
        "no-gitpod-config-in-repo"
    )


def test_config_without_prebuild_tasks_is_rejected() -> None:
    config = WorkspaceConfig(origin=ConfigOrigin.REPO, tasks=({"command": "serve"},))
    result = check_prebuild_precondition(
        config, _project({"enable": True}), _context()
    )

    assert result.should_run is False
    assert result.reason == "no-tasks-in-gitpod-config"


def test_disabled_prebuilds_are_rejected() -> None:
    result = check_prebuild_precondition(
        REPO_CONFIG, _project({"enable": False}), _context()
    )
    assert (result.should_run, result.reason) == (False, "prebuilds-not-enabled")


def test_project_without_settings_is_not_enabled() -> None:
    result = check_prebuild_precondition(REPO_CONFIG, _project(), _context())
    assert result.reason == "prebuilds-not-enabled"


def test_all_branches_strategy_runs() -> None:
    result = check_prebuild_precondition(
        REPO_CONFIG,
        _project({"enable": True, "branchStrategy": "all-branches"}),
        _context(ref="feature/x"),
    )
    assert (result.should_run, result.reason) == (True, "all-branches-selected")


@pytest.mark.parametrize(
    ("ref", "default_branch", "expected"),
    [
        ("main", "main", (True, "default-branch-matched")),
        ("dev", "main", (False, "default-branch-unmatched")),
        ("main", None, (False, "default-branch-missing-in-commit-context")),
    ],
)
def test_default_branch_strategy(ref, default_branch, expected) -> None:
    result = check_prebuild_precondition(
        REPO_CONFIG,
        _project({"enable": True, "branchStrategy": "default-branch"}),
        _context(ref=ref, default_branch=default_branch),
    )
    assert (result.should_run, result.reason) == expected


def test_matched_branches_strategy() -> None:
    project = _project(
        {
            "enable": True,
            "branchStrategy": "matched-branches",
            "branchMatchingPattern": "main, release/*",
        }
    )

    assert check_prebuild_precondition(
        REPO_CONFIG, project, _context(ref="release/1.0")
    ).reason == "branch-matched"
    assert check_prebuild_precondition(
        REPO_CONFIG, project, _context(ref="feature/x")
    ).reason == "branch-unmatched"
    assert check_prebuild_precondition(
        REPO_CONFIG, project, _context(ref=None)
    ).reason == "branch-name-missing-in-commit-context"


def test_matched_branches_with_empty_pattern_selects_all() -> None:
    project = _project(
        {"enable": True, "branchStrategy": "matched-branches", "branchMatchingPattern": " "}
    )
    result = check_prebuild_precondition(REPO_CONFIG, project, _context(ref="any"))
    assert (result.should_run, result.reason) == (True, "all-branches-selected")


def test_unknown_strategy_is_reported() -> None:
    result = check_prebuild_precondition(
        REPO_CONFIG,
        _project({"enable": True, "branchStrategy": "on-tuesdays"}),
        _context(),
    )
    assert (result.should_run, result.reason) == (False, "unknown-strategy")


def test_legacy_flat_settings_are_migrated() -> None:
    default_only = _project(enablePrebuilds=True, prebuildDefaultBranchOnly=True)
    pattern = _project(enablePrebuilds=True, prebuildBranchPattern="feat/*")

    assert check_prebuild_precondition(
        REPO_CONFIG, default_only, _context(ref="dev")
    ).reason == "default-branch-unmatched"
    assert check_prebuild_precondition(
        REPO_CONFIG, pattern, _context(ref="feat/login")
    ).reason == "branch-matched"


@pytest.mark.parametrize(
    ("branch", "patterns", "expected"),
    [
        ("main", "main", True),
        ("feature/login", "feature/*", True),
        ("feature/a/b", "feature/*", False),
        ("feature/a/b", "feature/**", True),
        ("team/feature/login", "feature/*", True),
        ("mainline", "main", False),
        ("v1", "v?", True),
        ("hotfix", "release/*, hotfix", True),
        ("anything", " , ", False),
        (".hidden", "*", False),
        ("feature/.wip", "feature/*", False),
        (".github/main", "main", False),
        ("feature/.wip/x", "feature/**", False),
        (".hidden", ".*", True),
        ("feature/.wip", "feature/.wip", True),
        ("feature/v.2", "feature/v*", True),
    ],
)
def test_branch_matches(branch, patterns, expected) -> None:
    assert branch_matches(branch, patterns) is expected


def test_glob_escapes_regex_characters() -> None:
    assert glob_to_regex("release-1.0").fullmatch("release-1.0")
    assert not glob_to_regex("release-1.0").fullmatch("release-1x0")
