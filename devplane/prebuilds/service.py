"""Permission-checked prebuild operations backing the REST API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from devplane.auth.authorizer import Authorizer, ProjectPermission
from devplane.errors import ApplicationError, ErrorCode
from devplane.hosts.context_parser import ContextParser
from devplane.prebuilds.manager import PrebuildManager, StartPrebuildResult
from devplane.prebuilds.models import PrebuiltWorkspace
from devplane.prebuilds.status import PrebuildStatusUpdater, StatusReportResult
from devplane.projects.models import Project
from devplane.projects.repositories import ProjectRepository
from devplane.projects.service import (
    DEFAULT_PREBUILD_LIST_LIMIT,
    PrebuildWithStatus,
    ProjectsService,
)
from devplane.workspaces.models import WorkspaceInstancePhase
from devplane.workspaces.repositories import WorkspaceRepository

if TYPE_CHECKING:
    from api_service.db.models import User

logger = logging.getLogger(__name__)


class PrebuildService:
    """Each mutating call commits the shared session once it succeeded."""

    def __init__(
        self,
        *,
        manager: PrebuildManager,
        projects: ProjectRepository,
        projects_service: ProjectsService,
        workspaces: WorkspaceRepository,
        authorizer: Authorizer,
        context_parser: ContextParser,
        status_updater: PrebuildStatusUpdater,
    ) -> None:
        self._manager = manager
        self._projects = projects
        self._projects_service = projects_service
        self._workspaces = workspaces
        self._authorizer = authorizer
        self._context_parser = context_parser
        self._status_updater = status_updater

    async def _project(
        self, user: "User", project_id: UUID, permission: ProjectPermission
    ) -> Project:
        project = await self._projects.get_project(project_id)
        if project is None:
            raise ApplicationError(ErrorCode.NOT_FOUND, f"Project {project_id} not found.")
        await self._authorizer.check_project_permission(user, permission, project)
        return project

    async def _prebuild(
        self, user: "User", prebuild_id: UUID, permission: ProjectPermission
    ) -> tuple[PrebuiltWorkspace, Optional[Project]]:
        prebuild = await self._workspaces.find_prebuilt_workspace_by_id(prebuild_id)
        if prebuild is None:
            raise ApplicationError(ErrorCode.NOT_FOUND, f"Prebuild {prebuild_id} not found.")
        if prebuild.project_id is not None:
            project = await self._project(user, prebuild.project_id, permission)
            return prebuild, project
        workspace = await self._workspaces.find_by_id(prebuild.build_workspace_id)
        if workspace is None or workspace.owner_id != user.id:
            raise ApplicationError(ErrorCode.NOT_FOUND, f"Prebuild {prebuild_id} not found.")
        return prebuild, None

    async def list_prebuilds(
        self,
        user: "User",
        project_id: UUID,
        *,
        branch: Optional[str] = None,
        limit: int = DEFAULT_PREBUILD_LIST_LIMIT,
        latest: bool = False,
    ) -> list[PrebuildWithStatus]:
        await self._project(user, project_id, ProjectPermission.READ_PREBUILD)
        return await self._projects_service.find_prebuilds(
            project_id, branch=branch, limit=limit, latest=latest
        )

    async def get_prebuild(self, user: "User", prebuild_id: UUID) -> PrebuildWithStatus:
        prebuild, _ = await self._prebuild(user, prebuild_id, ProjectPermission.READ_PREBUILD)
        info = await self._workspaces.find_prebuild_info(prebuild.id)
        return PrebuildWithStatus(
            prebuild=prebuild, info=info, status=prebuild.state, error=prebuild.error
        )

    async def trigger_prebuild(
        self,
        user: "User",
        project_id: UUID,
        *,
        branch: Optional[str] = None,
        force: bool = False,
    ) -> StartPrebuildResult:
        """Start a prebuild for ``branch`` (the default branch when omitted)."""

        project = await self._project(user, project_id, ProjectPermission.WRITE_PREBUILD)
        details = await self._projects_service.get_branch_details(user, project, branch)
        if branch:
            selected = details[0] if details else None
        else:
            selected = next((item for item in details if item.is_default), None)
        if selected is None or not selected.url:
            raise ApplicationError(
                ErrorCode.NOT_FOUND,
                f"Branch '{branch or 'default'}' not found for project {project.id}.",
            )
        context = await self._context_parser.handle(user, selected.url)
        config = await self._manager.fetch_config(user, context, project.team_id)
        context = await self._context_parser.with_additional_repositories(
            user, context, config
        )
        result = await self._manager.start_prebuild(
            user, context, project, force_prebuild=force
        )
        await self._workspaces.commit()
        logger.info(
            "Prebuild triggered via API",
            extra={
                "project_id": str(project.id),
                "prebuild_id": str(result.prebuild_id),
                "done": result.done,
            },
        )
        return result

    async def retrigger_prebuild(
        self, user: "User", prebuild_id: UUID
    ) -> StartPrebuildResult:
        prebuild, project = await self._prebuild(
            user, prebuild_id, ProjectPermission.WRITE_PREBUILD
        )
        result = await self._manager.retrigger_prebuild(
            user, project, prebuild.build_workspace_id
        )
        await self._workspaces.commit()
        return result

    async def cancel_prebuild(self, user: "User", prebuild_id: UUID) -> PrebuiltWorkspace:
        await self._prebuild(user, prebuild_id, ProjectPermission.WRITE_PREBUILD)
        prebuild = await self._manager.cancel_prebuild(user, prebuild_id)
        await self._workspaces.commit()
        return prebuild

    async def report_instance_status(
        self,
        instance_id: UUID,
        *,
        phase: WorkspaceInstancePhase,
        status_version: int,
        failed_reason: Optional[str] = None,
        timed_out: bool = False,
    ) -> StatusReportResult:
        result = await self._status_updater.apply_instance_report(
            instance_id,
            phase=phase,
            status_version=status_version,
            failed_reason=failed_reason,
            timed_out=timed_out,
        )
        if result is None:
            raise ApplicationError(
                ErrorCode.NOT_FOUND, f"Workspace instance {instance_id} not found."
            )
        await self._workspaces.commit()
        return result


__all__ = ["PrebuildService"]
