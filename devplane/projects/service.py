"""Project-level queries used by prebuild triggers and the REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from api_service.db.models import utcnow
from devplane.errors import ApplicationError, ErrorCode
from devplane.hosts.base import HostContextProvider
from devplane.hosts.repo_url import parse_repo_url
from devplane.prebuilds.models import PrebuildInfo, PrebuildState, PrebuiltWorkspace
from devplane.projects.models import Project
from devplane.projects.prebuild_settings import TriggerStrategy, get_prebuild_settings
from devplane.projects.repositories import ProjectRepository
from devplane.telemetry import trace_span
from devplane.workspaces.repositories import WorkspaceRepository

if TYPE_CHECKING:
    from api_service.db.models import User

logger = logging.getLogger(__name__)

DEFAULT_PREBUILD_LIST_LIMIT = 30


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True, slots=True)
class PrebuildWithStatus:
    prebuild: PrebuiltWorkspace
    info: Optional[PrebuildInfo]
    status: PrebuildState
    error: Optional[str]


@dataclass(frozen=True, slots=True)
class BranchDetails:
    name: str
    url: Optional[str]
    is_default: bool
    change_author: str
    change_author_avatar: Optional[str]
    change_date: Optional[str]
    change_hash: str
    change_title: str


class ProjectsService:
    def __init__(
        self,
        projects: ProjectRepository,
        workspaces: WorkspaceRepository,
        hosts: HostContextProvider,
        *,
        inactivity_period_days: int = 7,
    ) -> None:
        self._projects = projects
        self._workspaces = workspaces
        self._hosts = hosts
        self._inactivity_period = timedelta(days=inactivity_period_days)

    async def is_project_considered_inactive(self, project_id: UUID) -> bool:
        """A project is inactive when nobody started a workspace for it lately.

        Projects that never had a workspace started are considered active.
        """

        usage = await self._projects.get_usage(project_id)
        if usage is None or usage.last_workspace_start is None:
            return False
        return utcnow() - _as_utc(usage.last_workspace_start) > self._inactivity_period

    async def revert_activity_based_trigger(self, project: Project) -> bool:
        """Switch a project still on the activity trigger back to webhooks."""

        prebuild_settings = get_prebuild_settings(project)
        if prebuild_settings.trigger_strategy != TriggerStrategy.ACTIVITY_BASED.value:
            return False
        settings = dict(project.settings or {})
        prebuilds = prebuild_settings.model_dump(by_alias=True, exclude_none=True)
        prebuilds["triggerStrategy"] = TriggerStrategy.WEBHOOK_BASED.value
        settings["prebuilds"] = prebuilds
        await self._projects.update_settings(project, settings)
        logger.info(
            "Reverted project to webhook-based prebuild trigger",
            extra={"project_id": str(project.id)},
        )
        return True

    async def find_prebuilds(
        self,
        project_id: UUID,
        *,
        prebuild_id: Optional[UUID] = None,
        branch: Optional[str] = None,
        limit: int = DEFAULT_PREBUILD_LIST_LIMIT,
        latest: bool = False,
    ) -> list[PrebuildWithStatus]:
        """List prebuilds of a project, newest first, with their status and error."""

        with trace_span("projects.find_prebuilds", project_id=str(project_id)):
            if prebuild_id is not None:
                prebuild = await self._workspaces.find_prebuilt_workspace_by_id(prebuild_id)
                if prebuild is None or prebuild.project_id != project_id:
                    return []
                info = await self._workspaces.find_prebuild_info(prebuild.id)
                return [self._with_status(prebuild, info)]

            rows = await self._workspaces.find_prebuilt_workspaces_by_project(
                project_id, branch=branch, limit=1 if latest else limit
            )
            return [self._with_status(row.prebuild, row.info) for row in rows]

    @staticmethod
    def _with_status(
        prebuild: PrebuiltWorkspace, info: Optional[PrebuildInfo]
    ) -> PrebuildWithStatus:
        return PrebuildWithStatus(
            prebuild=prebuild,
            info=info,
            status=PrebuildState(prebuild.state),
            error=prebuild.error,
        )

    async def get_branch_details(
        self,
        user: Optional["User"],
        project: Project,
        branch_name: Optional[str] = None,
    ) -> list[BranchDetails]:
        """Describe the project's branches, most recently changed first."""

        parsed = parse_repo_url(project.clone_url)
        if parsed is None:
            raise ApplicationError(
                ErrorCode.BAD_REQUEST, f"Cannot parse clone URL {project.clone_url}"
            )
        provider = self._hosts.get_repository_provider(parsed.host)
        if provider is None:
            raise ApplicationError(
                ErrorCode.NOT_FOUND, f"No repository provider for host {parsed.host}"
            )
        with trace_span("projects.get_branch_details", project_id=str(project.id)):
            repository = await provider.get_repo(user, parsed.owner, parsed.repo)
            if branch_name:
                branch = await provider.get_branch(
                    user, parsed.owner, parsed.repo, branch_name
                )
                branches = [branch] if branch is not None else []
            else:
                branches = await provider.get_branches(user, parsed.owner, parsed.repo)

            details = [
                BranchDetails(
                    name=branch.name,
                    url=branch.html_url,
                    is_default=branch.name == repository.default_branch,
                    change_author=branch.head_commit.author,
                    change_author_avatar=branch.head_commit.author_avatar_url,
                    change_date=branch.head_commit.author_date,
                    change_hash=branch.head_commit.sha,
                    change_title=branch.head_commit.commit_message,
                )
                for branch in branches
            ]
            details.sort(key=lambda item: item.change_date or "", reverse=True)
            return details


__all__ = [
    "BranchDetails",
    "DEFAULT_PREBUILD_LIST_LIMIT",
    "PrebuildWithStatus",
    "ProjectsService",
]
