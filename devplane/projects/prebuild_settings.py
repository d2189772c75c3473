"""Typed view over a project's stored prebuild settings."""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

if TYPE_CHECKING:
    from devplane.projects.models import Project

logger = logging.getLogger(__name__)


class BranchStrategy(str, enum.Enum):
    DEFAULT_BRANCH = "default-branch"
    ALL_BRANCHES = "all-branches"
    MATCHED_BRANCHES = "matched-branches"
    # Older clients stored this name for the pattern strategy.
    SELECTED_BRANCHES = "selected-branches"


class TriggerStrategy(str, enum.Enum):
    WEBHOOK_BASED = "webhook-based"
    ACTIVITY_BASED = "activity-based"


class PrebuildSettings(BaseModel):
    """The ``prebuilds`` section of project settings.

    ``branch_strategy`` is kept as a plain string so unknown values survive and
    are reported by the precondition check instead of failing validation.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    enable: bool = Field(False, alias="enable")
    branch_strategy: str = Field(
        BranchStrategy.ALL_BRANCHES.value, alias="branchStrategy"
    )
    branch_matching_pattern: Optional[str] = Field(None, alias="branchMatchingPattern")
    prebuild_interval: Optional[int] = Field(None, alias="prebuildInterval")
    workspace_class: Optional[str] = Field(None, alias="workspaceClass")
    trigger_strategy: Optional[str] = Field(None, alias="triggerStrategy")


class ProjectSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    prebuilds: Optional[PrebuildSettings] = Field(None, alias="prebuilds")
    keep_outdated_prebuilds_running: bool = Field(
        False, alias="keepOutdatedPrebuildsRunning"
    )
    use_incremental_prebuilds: bool = Field(False, alias="useIncrementalPrebuilds")

    # Legacy flat keys, folded into ``prebuilds`` on read.
    enable_prebuilds: Optional[bool] = Field(None, alias="enablePrebuilds")
    prebuild_default_branch_only: Optional[bool] = Field(
        None, alias="prebuildDefaultBranchOnly"
    )
    prebuild_branch_pattern: Optional[str] = Field(None, alias="prebuildBranchPattern")
    prebuild_every_nth_commit: Optional[int] = Field(
        None, alias="prebuildEveryNthCommit"
    )


def get_project_settings(project: Optional["Project"]) -> ProjectSettings:
    raw: Any = project.settings if project is not None else None
    if not raw:
        return ProjectSettings()
    try:
        return ProjectSettings.model_validate(dict(raw))
    except ValidationError:
        logger.warning(
            "Ignoring unreadable project settings",
            extra={"project_id": str(getattr(project, "id", ""))},
        )
        return ProjectSettings()


def get_prebuild_settings(project: Optional["Project"]) -> PrebuildSettings:
    """Return effective prebuild settings, migrating legacy flat keys."""

    project_settings = get_project_settings(project)
    if project_settings.prebuilds is not None:
        return project_settings.prebuilds

    if not project_settings.enable_prebuilds:
        return PrebuildSettings(enable=False)

    if project_settings.prebuild_default_branch_only:
        strategy = BranchStrategy.DEFAULT_BRANCH
    elif (project_settings.prebuild_branch_pattern or "").strip():
        strategy = BranchStrategy.MATCHED_BRANCHES
    else:
        strategy = BranchStrategy.ALL_BRANCHES
    return PrebuildSettings(
        enable=True,
        branch_strategy=strategy.value,
        branch_matching_pattern=project_settings.prebuild_branch_pattern,
        prebuild_interval=project_settings.prebuild_every_nth_commit,
    )


def get_prebuild_every_nth_commit(project: Optional["Project"]) -> int:
    """Commits between prebuilds; ``0`` means every commit gets one."""

    return max(0, get_project_settings(project).prebuild_every_nth_commit or 0)


__all__ = [
    "BranchStrategy",
    "PrebuildSettings",
    "ProjectSettings",
    "TriggerStrategy",
    "get_prebuild_every_nth_commit",
    "get_prebuild_settings",
    "get_project_settings",
]
