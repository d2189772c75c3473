"""Project permission checks based on organization membership."""

from __future__ import annotations

import enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.models import TeamMember, TeamMemberRole, User
from devplane.errors import ApplicationError, ErrorCode
from devplane.projects.models import Project


class ProjectPermission(str, enum.Enum):
    READ_INFO = "read_info"
    READ_PREBUILD = "read_prebuild"
    WRITE_PREBUILD = "write_prebuild"
    WRITE_INFO = "write_info"
    DELETE = "delete"


_MEMBER_PERMISSIONS = frozenset(
    {
        ProjectPermission.READ_INFO,
        ProjectPermission.READ_PREBUILD,
        ProjectPermission.WRITE_PREBUILD,
    }
)


class Authorizer:
    """Owners of a project's organization may do anything, members may build.

    Personal projects (no organization) only grant access to their user.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _role(self, user: User, project: Project) -> Optional[TeamMemberRole]:
        if project.team_id is None:
            return TeamMemberRole.OWNER if project.user_id == user.id else None
        stmt = select(TeamMember.role).where(
            TeamMember.team_id == project.team_id,
            TeamMember.user_id == user.id,
        )
        result = await self._session.execute(stmt)
        role = result.scalar_one_or_none()
        return TeamMemberRole(role) if role is not None else None

    async def has_project_permission(
        self, user: User, permission: ProjectPermission, project: Project
    ) -> bool:
        role = await self._role(user, project)
        if role is None:
            return False
        if role == TeamMemberRole.OWNER:
            return True
        return permission in _MEMBER_PERMISSIONS

    async def check_project_permission(
        self, user: User, permission: ProjectPermission, project: Project
    ) -> None:
        """Raise ``NOT_FOUND`` for outsiders and ``PERMISSION_DENIED`` for members lacking ``permission``."""

        if await self.has_project_permission(user, permission, project):
            return
        if permission == ProjectPermission.READ_INFO or not await self.has_project_permission(
            user, ProjectPermission.READ_INFO, project
        ):
            raise ApplicationError(ErrorCode.NOT_FOUND, f"Project {project.id} not found.")
        raise ApplicationError(
            ErrorCode.PERMISSION_DENIED,
            f"You do not have {permission.value} on project {project.id}",
        )


__all__ = ["Authorizer", "ProjectPermission"]
